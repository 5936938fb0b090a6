"""
Bonding Engine
===============

Decides whether an account has enough atoms at a tier and, if so, bonds
exactly `threshold` atoms from each of the K lanes into one candidate
record for the next tier:

    snapshot lanes -> threshold check -> FIFO selection -> aggregate
        -> validate against contract -> promote

Attempts for the same (account, tier) are serialized; two triggers racing
for the same account produce one promotion and one InsufficientAtoms.
Every attempt ends in a BondResult, never an exception (configuration
errors such as an unknown tier excepted).

Usage:
    engine = BondingEngine(config, store)
    result = engine.try_bond("addr1", "bit")
    if result.bonded:
        print(result.record.frequency)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .atoms import Atom, BondedRecord, as_number
from .config import PipelineConfig, TierConfig
from .contracts import BondingContract, ContractRegistry
from .errors import StorageError
from .ledger_store import LedgerStore
from .locks import KeyedLockTable
from .promoter import LedgerPromoter
from .results import BondResult, BondState, BondStatus, InsufficientAtoms
from .validator import IntegrityValidator

logger = logging.getLogger(__name__)

StateListener = Callable[[str, str, BondState], None]


# =============================================================================
# Pure helpers
# =============================================================================

def select_oldest(atoms: Sequence[Atom], count: int) -> List[Atom]:
    """Oldest `count` atoms by sequenceIndex; file position breaks ties."""
    ordered = sorted(
        enumerate(atoms),
        key=lambda pair: (
            pair[1].sequence_index is None,
            pair[1].sequence_index if pair[1].sequence_index is not None else 0,
            pair[0],
        ),
    )
    return [atom for _, atom in ordered[:count]]


def aggregate_frequency(atoms: Sequence[Atom]) -> str:
    """Mean of the valid numeric frequencies as a two-decimal string.

    Non-numeric, NaN and infinite values are ignored; "0.00" when nothing
    valid remains. Numeric strings such as "12.50" also count, deliberately
    looser than a number-only rule, because bonded records store their
    aggregate as a string and must keep cascading up the tiers.
    """
    values = np.array(
        [as_number(atom.frequency) for atom in atoms if as_number(atom.frequency) is not None],
        dtype=float,
    )
    if values.size == 0:
        return "0.00"
    return f"{float(values.mean()):.2f}"


def _audit_copy(atom: Atom) -> Atom:
    # Constituents keep their own digest/indices but not their nested atoms
    if atom.atoms_used:
        return replace(atom, atoms_used=())
    return atom


# =============================================================================
# Engine
# =============================================================================

class BondingEngine:
    """Threshold check, selection, aggregation, validation and hand-off."""

    def __init__(
        self,
        config: PipelineConfig,
        store: LedgerStore,
        validator: Optional[IntegrityValidator] = None,
        promoter: Optional[LedgerPromoter] = None,
        contracts: Optional[ContractRegistry] = None,
        state_listener: Optional[StateListener] = None,
    ):
        self.config = config
        self.store = store
        self.validator = validator or IntegrityValidator(config)
        self.promoter = promoter or LedgerPromoter(config, store)
        self.contracts = contracts or ContractRegistry.from_config(config)
        self.state_listener = state_listener

        self._locks = KeyedLockTable()
        self._states: Dict[Tuple[str, str], BondState] = {}
        self._states_lock = threading.Lock()

    # =========================================================================
    # State tracking
    # =========================================================================

    def state(self, account: str, tier: str) -> BondState:
        with self._states_lock:
            return self._states.get((account, tier), BondState.IDLE)

    def _set_state(self, account: str, tier: str, state: BondState) -> None:
        with self._states_lock:
            if state == BondState.IDLE:
                self._states.pop((account, tier), None)
            else:
                self._states[(account, tier)] = state
        if self.state_listener is not None:
            try:
                self.state_listener(account, tier, state)
            except Exception as e:
                logger.warning(f"State listener error: {e}")

    # =========================================================================
    # Bonding
    # =========================================================================

    def try_bond(self, account: str, tier: str) -> BondResult:
        """Bond one batch for (account, tier) if every lane has enough atoms."""
        tier_config = self.config.tier(tier)
        next_tier = self.config.require_next_tier(tier)

        with self._locks.hold((account, tier)):
            try:
                return self._attempt(account, tier_config, next_tier)
            finally:
                self._set_state(account, tier, BondState.IDLE)

    def _attempt(self, account: str, tier: TierConfig, next_tier: TierConfig) -> BondResult:
        self._set_state(account, tier.name, BondState.CHECKING)
        threshold = tier.threshold

        try:
            lanes = self.store.snapshot(account, tier.name)
        except StorageError as e:
            logger.error(f"Could not read {tier.name} ledgers for {account}: {e}")
            return BondResult(BondStatus.STORAGE_ERROR, account, tier.name, error=e)

        counts = {lane: len(atoms) for lane, atoms in lanes.items()}
        if any(count < threshold for count in counts.values()):
            self._set_state(account, tier.name, BondState.INSUFFICIENT)
            insufficient = InsufficientAtoms(threshold=threshold, lane_counts=counts)
            logger.debug(f"Not enough {tier.name} atoms for {account}: {insufficient}")
            return BondResult(BondStatus.INSUFFICIENT, account, tier.name, insufficient=insufficient)

        self._set_state(account, tier.name, BondState.BONDING)
        contract = self.contracts.get(tier.name) or BondingContract.default_for(
            tier.name, expected_type=next_tier.name
        )
        selected = {lane: select_oldest(lanes[lane], threshold) for lane in self.config.lanes}
        try:
            candidate = self.build_candidate(account, tier, next_tier, selected, contract)
        except StorageError as e:
            logger.error(f"Could not assign {next_tier.name} index for {account}: {e}")
            return BondResult(BondStatus.STORAGE_ERROR, account, tier.name, error=e)

        self._set_state(account, tier.name, BondState.VALIDATING)
        error = self.validator.validate(candidate.to_dict(), contract, threshold)
        if error is not None:
            logger.warning(f"Rejected {next_tier.name} candidate for {account}: {error}")
            return BondResult(BondStatus.INVALID, account, tier.name, record=candidate, error=error)

        self._set_state(account, tier.name, BondState.PROMOTING)
        promotion = self.promoter.promote(account, tier.name, candidate)
        if promotion.error is not None:
            status = (
                BondStatus.STORAGE_ERROR
                if isinstance(promotion.error, StorageError)
                else BondStatus.CONSISTENCY_ERROR
            )
            return BondResult(status, account, tier.name, record=candidate, error=promotion.error)

        return BondResult(
            BondStatus.BONDED, account, tier.name, record=candidate, resumed=promotion.duplicate
        )

    def build_candidate(
        self,
        account: str,
        tier: TierConfig,
        next_tier: TierConfig,
        selected: Dict[str, List[Atom]],
        contract: BondingContract,
    ) -> BondedRecord:
        """Assemble the bonded record from the selected atoms of every lane."""
        lanes = self.config.lanes
        constituents = [_audit_copy(atom) for lane in lanes for atom in selected[lane]]
        representative = selected[lanes[0]][0]

        indices = {
            f"{tier.name}Indices": [
                atom.index if atom.index is not None else atom.sequence_index
                for atom in constituents
            ],
            "sequenceIndices": {
                lane: [atom.sequence_index for atom in selected[lane]] for lane in lanes
            },
        }

        record = BondedRecord(
            tier=next_tier.name,
            source_tier=tier.name,
            index=-1,
            frequency=aggregate_frequency(constituents),
            timestamp=representative.timestamp,
            iv=representative.iv,
            auth_tag=representative.auth_tag,
            atomic_weight=tier.threshold * self.config.lane_count,
            atoms_used=constituents,
            indices=indices,
            digest=BondedRecord.compute_digest(constituents, contract.hash_algorithm or "sha256"),
        )
        record.index = self._promotion_index(account, next_tier.name, record)
        record.indices[f"{next_tier.name}Index"] = record.index
        return record

    def _promotion_index(self, account: str, next_tier: str, candidate: BondedRecord) -> int:
        # A batch already written upward keeps its index; a fresh one takes the next free index
        highest = -1
        for lane in self.config.lanes:
            for atom in self.store.load(account, next_tier, lane):
                if atom.index is None:
                    continue
                if candidate.is_same_batch(atom):
                    return atom.index
                highest = max(highest, atom.index)

        cursor = self.store.load_cursor(account, next_tier)
        return max([highest, *cursor.last_promoted.values()]) + 1
