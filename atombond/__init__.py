"""
atombond
=========

Hierarchical atom-bonding pipeline.

Per-account ledgers of small records ("atoms") are kept in K parallel lanes
per tier. Once every lane holds `threshold` atoms, the oldest `threshold`
of each lane are bonded into one record that is appended to the next tier,
cascading bit -> byte -> kb -> mb -> gb -> tb.

Components:
- LedgerStore: durable per-(account, tier, lane) ledgers
- IntegrityValidator: checks candidates against tier contracts
- BondingEngine: threshold check, FIFO selection, aggregation
- LedgerPromoter: build-then-trim promotion with duplicate guard
- ThresholdWatcher: debounced checks from ledger activity
- HierarchyOrchestrator: cascade between tiers

Usage:
    from atombond import PipelineConfig, FileLedgerStore, BondingEngine, Atom

    config = PipelineConfig.default("ledgers")
    store = FileLedgerStore(config)
    for lane in config.lanes:
        store.append("addr1", "bit", lane, [Atom.create(f) for f in range(8)])

    engine = BondingEngine(config, store)
    result = engine.try_bond("addr1", "bit")
"""

from .atoms import Atom, BondedRecord
from .audit import AuditSink, JsonlAuditSink, LoggingAuditSink, PromotionAudit
from .config import PipelineConfig, TierConfig
from .contracts import BondingContract, ContractRegistry, NumericRange
from .engine import BondingEngine, aggregate_frequency, select_oldest
from .errors import (
    AuditError,
    BondingError,
    ConfigError,
    ConsistencyError,
    StorageError,
    ValidationError,
)
from .ledger_store import FileLedgerStore, InMemoryLedgerStore, LedgerCursor, LedgerStore
from .orchestrator import HierarchyOrchestrator
from .promoter import LedgerPromoter
from .results import BondResult, BondState, BondStatus, InsufficientAtoms, PromotionResult
from .validator import IntegrityValidator, NumericRangeCheck, PolicyCheck
from .watcher import ChangeEvent, ChangeKind, Debouncer, Subscription, ThresholdWatcher, watch

__version__ = "0.1.0"

__all__ = [
    "Atom",
    "BondedRecord",
    "AuditSink",
    "JsonlAuditSink",
    "LoggingAuditSink",
    "PromotionAudit",
    "PipelineConfig",
    "TierConfig",
    "BondingContract",
    "ContractRegistry",
    "NumericRange",
    "BondingEngine",
    "aggregate_frequency",
    "select_oldest",
    "AuditError",
    "BondingError",
    "ConfigError",
    "ConsistencyError",
    "StorageError",
    "ValidationError",
    "FileLedgerStore",
    "InMemoryLedgerStore",
    "LedgerCursor",
    "LedgerStore",
    "HierarchyOrchestrator",
    "LedgerPromoter",
    "BondResult",
    "BondState",
    "BondStatus",
    "InsufficientAtoms",
    "PromotionResult",
    "IntegrityValidator",
    "NumericRangeCheck",
    "PolicyCheck",
    "ChangeEvent",
    "ChangeKind",
    "Debouncer",
    "Subscription",
    "ThresholdWatcher",
    "watch",
]
