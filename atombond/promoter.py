"""
Ledger Promoter
================

Commits a validated bonded record:

1. build  - append one lane-tagged copy to each of the next tier's K lanes
2. trim   - remove the consumed atoms from each current-tier lane
3. audit  - report the promotion to the audit sink

Build always finishes before trim starts, so a crash in between leaves a
duplicate rather than losing atoms. The next tier never takes the same batch
twice: a lane that already holds a copy of the batch (same digest or same
sequence indices) is skipped, and a candidate every lane already holds is an
interrupted promotion whose trim is completed now. A lane holding the index
for a different batch is a consistency error and nothing is written.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, List, Optional, Tuple

from .atoms import BondedRecord
from .audit import AuditSink, LoggingAuditSink
from .config import PipelineConfig
from .errors import AuditError, ConsistencyError, StorageError
from .ledger_store import LedgerStore
from .results import PromotionResult

logger = logging.getLogger(__name__)


class LedgerPromoter:
    """Moves a bonded record up one tier."""

    def __init__(
        self,
        config: PipelineConfig,
        store: LedgerStore,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.config = config
        self.store = store
        self.audit_sink = audit_sink or LoggingAuditSink()

    def promote(self, account: str, tier: str, candidate: BondedRecord) -> PromotionResult:
        next_tier = self.config.require_next_tier(tier).name
        if candidate.tier != next_tier:
            error = ConsistencyError(
                f"Candidate tagged {candidate.tier!r} cannot be promoted from {tier!r} into {next_tier!r}"
            )
            logger.error(str(error))
            return PromotionResult(committed=False, error=error)

        # Step 1: build
        try:
            appended, skipped = self._build(account, next_tier, candidate)
        except (StorageError, ConsistencyError) as e:
            logger.error(f"Build of {next_tier} #{candidate.index} for {account} failed: {e}")
            return PromotionResult(committed=False, error=e)

        if not appended:
            logger.critical(
                f"{next_tier} #{candidate.index} already present for {account} in every lane; "
                f"completing interrupted promotion from {tier}"
            )
        elif skipped:
            logger.warning(
                f"{next_tier} #{candidate.index} for {account} already present in lanes "
                f"{', '.join(skipped)}; appended to {', '.join(appended)}"
            )

        # Step 2: trim
        try:
            trimmed = self._trim(account, tier, candidate)
        except StorageError as e:
            error = ConsistencyError(
                f"{next_tier} #{candidate.index} written for {account} but trimming {tier} failed: {e}"
            )
            logger.critical(str(error))
            return PromotionResult(
                committed=False, appended_lanes=appended, skipped_lanes=skipped, error=error
            )

        # Step 3: audit
        try:
            self.audit_sink.record_promotion(account, tier, candidate)
        except Exception as e:
            error = AuditError(
                f"Audit sink rejected {next_tier} #{candidate.index} for {account}: {e}"
            )
            logger.critical(str(error))
            return PromotionResult(
                committed=False,
                appended_lanes=appended,
                skipped_lanes=skipped,
                trimmed=trimmed,
                error=error,
            )

        logger.info(
            f"Promoted {account} {tier} -> {next_tier} #{candidate.index} "
            f"(frequency {candidate.frequency}, {len(candidate.atoms_used)} atoms)"
        )
        return PromotionResult(
            committed=True, appended_lanes=appended, skipped_lanes=skipped, trimmed=trimmed
        )

    def _build(self, account: str, next_tier: str, candidate: BondedRecord) -> Tuple[List[str], List[str]]:
        appended: List[str] = []
        skipped: List[str] = []

        with self.store.lock(account, next_tier):
            self.store.ensure_account(account, next_tier)

            pending: List[str] = []
            for lane in self.config.lanes:
                existing = self.store.load(account, next_tier, lane)
                if any(candidate.is_same_batch(atom) for atom in existing):
                    skipped.append(lane)
                elif any(atom.index == candidate.index for atom in existing):
                    raise ConsistencyError(
                        f"{next_tier}/{account}/{lane} already holds #{candidate.index} "
                        "for a different batch"
                    )
                else:
                    pending.append(lane)

            for lane in pending:
                self.store.append(account, next_tier, lane, [candidate.to_atom(lane)])
                cursor = self.store.load_cursor(account, next_tier)
                cursor.last_promoted[lane] = max(cursor.last_promoted.get(lane, -1), candidate.index)
                self.store.save_cursor(account, next_tier, cursor)
                appended.append(lane)

        return appended, skipped

    def _trim(self, account: str, tier: str, candidate: BondedRecord) -> Dict[str, int]:
        consumed = candidate.constituents_by_lane()
        trimmed: Dict[str, int] = {}

        with self.store.lock(account, tier):
            for lane in self.config.lanes:
                expected = len(consumed.get(lane, []))
                pending = Counter(atom.identity() for atom in consumed.get(lane, []))
                atoms = self.store.load(account, tier, lane)

                remaining = []
                for atom in atoms:
                    key = atom.identity()
                    if pending[key] > 0:
                        pending[key] -= 1
                    else:
                        remaining.append(atom)

                removed = len(atoms) - len(remaining)
                if removed:
                    self.store.save(account, tier, lane, remaining)
                if removed != expected:
                    logger.warning(
                        f"Trim of {tier}/{account}/{lane} removed {removed} of "
                        f"{expected} consumed atoms"
                    )
                trimmed[lane] = removed

        return trimmed
