"""
Hierarchy Orchestrator
=======================

Wires the tier hierarchy together and schedules bonding checks.

Triggers:
- pull: one ThresholdWatcher per bondable tier (file activity)
- push: a successful promotion at tier i requests a check at tier i+1
        for the same account, and a recheck of tier i to drain surplus atoms

Checks run on a thread pool. Requests for an (account, tier) that is already
queued are coalesced; a request arriving while the check runs schedules
exactly one rerun. The engine's per-key lock makes the final guarantee: no
two attempts for the same (account, tier) ever overlap.

Usage:
    orchestrator = HierarchyOrchestrator(config)
    orchestrator.start()          # watchers + worker pool
    ...
    orchestrator.stop()
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Tuple

from .audit import AuditSink, JsonlAuditSink, LoggingAuditSink
from .config import PipelineConfig
from .contracts import ContractRegistry
from .engine import BondingEngine
from .ledger_store import FileLedgerStore, LedgerStore
from .promoter import LedgerPromoter
from .results import BondResult, BondStatus
from .validator import IntegrityValidator
from .watcher import ThresholdWatcher

logger = logging.getLogger(__name__)

_QUEUED = "queued"
_RUNNING = "running"
_RERUN = "rerun"

ResultListener = Callable[[BondResult], None]


class HierarchyOrchestrator:
    """Runs the bit -> byte -> kb -> ... cascade for every account."""

    def __init__(
        self,
        config: PipelineConfig,
        store: Optional[LedgerStore] = None,
        engine: Optional[BondingEngine] = None,
        audit_sink: Optional[AuditSink] = None,
        enable_watchers: bool = True,
    ):
        self.config = config
        self.store = store or FileLedgerStore(config)

        if engine is None:
            if audit_sink is None:
                audit_sink = JsonlAuditSink(config.audit_log) if config.audit_log else LoggingAuditSink()
            engine = BondingEngine(
                config,
                self.store,
                validator=IntegrityValidator(config),
                promoter=LedgerPromoter(config, self.store, audit_sink),
                contracts=ContractRegistry.from_config(config),
            )
        self.engine = engine
        self.enable_watchers = enable_watchers

        self._bondable = {tier.name for tier in config.bondable_tiers}
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._inflight: Dict[Tuple[str, str], str] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        self._listeners: List[ResultListener] = []

        self.watchers: List[ThresholdWatcher] = []
        self.stats: Dict[str, int] = {
            "checks": 0,
            "coalesced": 0,
            "bonded": 0,
            "insufficient": 0,
            "failed": 0,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the worker pool and (optionally) the tier watchers."""
        with self._lock:
            if self._executor is not None:
                logger.warning("Orchestrator already running")
                return
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.workers, thread_name_prefix="bond"
            )

        self.sync_account_folders()

        if self.enable_watchers:
            for tier in self.config.bondable_tiers:
                watcher = ThresholdWatcher(self.config, tier.name, self.request_check)
                watcher.start()
                self.watchers.append(watcher)

        logger.info(
            f"Orchestrator started: tiers {' -> '.join(self.config.tier_names)}, "
            f"{self.config.lane_count} lanes, {self.config.workers} workers"
        )

    def stop(self, wait: bool = True) -> None:
        """Stop watchers first, then drain or abandon queued checks."""
        for watcher in self.watchers:
            watcher.stop()
        self.watchers = []

        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
        logger.info(f"Orchestrator stopped ({self.stats})")

    def __enter__(self) -> HierarchyOrchestrator:
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()

    def add_listener(self, listener: ResultListener) -> None:
        """Receive every BondResult produced by scheduled checks."""
        self._listeners.append(listener)

    # =========================================================================
    # Scheduling
    # =========================================================================

    def request_check(self, account: str, tier: str) -> bool:
        """Queue a bonding check; never blocks on a running attempt.

        Returns True when a new check was queued, False when the request was
        coalesced into an existing one or the tier cannot be bonded.
        """
        if tier not in self._bondable:
            logger.debug(f"Ignoring check for non-bondable tier {tier!r}")
            return False
        with self._lock:
            return self._schedule_locked(account, tier)

    def _schedule_locked(self, account: str, tier: str) -> bool:
        key = (account, tier)
        state = self._inflight.get(key)
        if state == _RUNNING:
            self._inflight[key] = _RERUN
            self.stats["coalesced"] += 1
            return False
        if state is not None:
            self.stats["coalesced"] += 1
            return False

        if self._executor is None:
            logger.warning(f"Orchestrator not running; dropping check for {tier}/{account}")
            return False

        self._inflight[key] = _QUEUED
        try:
            self._executor.submit(self._run_check, account, tier)
        except RuntimeError as e:
            del self._inflight[key]
            self._idle.notify_all()
            logger.warning(f"Could not schedule check for {tier}/{account}: {e}")
            return False
        return True

    def _run_check(self, account: str, tier: str) -> None:
        key = (account, tier)
        with self._lock:
            self._inflight[key] = _RUNNING
            self.stats["checks"] += 1

        result: Optional[BondResult] = None
        try:
            result = self.engine.try_bond(account, tier)
        except Exception as e:
            logger.exception(f"Bonding check crashed for {tier}/{account}: {e}")

        if result is not None:
            self._record(result)

        with self._lock:
            rerun = self._inflight.pop(key, None) == _RERUN
            if result is not None and result.bonded:
                # Drain surplus atoms at this tier, then push upward
                rerun = True
                next_tier = self.config.next_tier(tier)
                if next_tier is not None and next_tier.name in self._bondable:
                    self._schedule_locked(account, next_tier.name)
            if rerun:
                self._schedule_locked(account, tier)
            self._idle.notify_all()

    def _record(self, result: BondResult) -> None:
        with self._lock:
            if result.status == BondStatus.BONDED:
                self.stats["bonded"] += 1
            elif result.status == BondStatus.INSUFFICIENT:
                self.stats["insufficient"] += 1
            else:
                self.stats["failed"] += 1

        if result.status not in (BondStatus.BONDED, BondStatus.INSUFFICIENT):
            logger.warning(f"Check {result.tier}/{result.account} ended {result.status.value}: {result.message}")

        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception as e:
                logger.warning(f"Result listener error: {e}")

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no check is queued or running."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._inflight, timeout=timeout)

    # =========================================================================
    # Sweeps and manual triggers
    # =========================================================================

    def sync_account_folders(self) -> int:
        """Mirror every account folder into the tier above it."""
        created = 0
        for tier in self.config.bondable_tiers:
            next_tier = self.config.require_next_tier(tier.name)
            existing = set(self.store.list_accounts(next_tier.name))
            for account in self.store.list_accounts(tier.name):
                if account not in existing:
                    self.store.ensure_account(account, next_tier.name)
                    created += 1
        if created:
            logger.info(f"Created {created} missing account folders")
        return created

    def sweep(self) -> int:
        """Request a check for every known account at every bondable tier."""
        queued = 0
        for tier in self.config.bondable_tiers:
            for account in self.store.list_accounts(tier.name):
                if self.request_check(account, tier.name):
                    queued += 1
        return queued

    def bond_cascade(self, account: str, tier: str) -> List[BondResult]:
        """Synchronously bond `tier` until exhausted, then climb while bonds happen."""
        results: List[BondResult] = []
        current = self.config.tier(tier)

        while current.name in self._bondable:
            bonded_here = 0
            while True:
                result = self.engine.try_bond(account, current.name)
                results.append(result)
                if not result.bonded:
                    break
                bonded_here += 1

            if result.status != BondStatus.INSUFFICIENT or bonded_here == 0:
                break
            current = self.config.require_next_tier(current.name)

        return results

    def status(self) -> Dict[str, Any]:
        """Lane counts per tier/account plus in-flight checks."""
        tiers: Dict[str, Dict[str, Dict[str, int]]] = {}
        for name in self.config.tier_names:
            tiers[name] = {
                account: self.store.lane_counts(account, name)
                for account in self.store.list_accounts(name)
            }
        with self._lock:
            inflight = {f"{tier}/{account}": state for (account, tier), state in self._inflight.items()}
            stats = dict(self.stats)
        return {"tiers": tiers, "inflight": inflight, "stats": stats}
