"""Promotion audit sinks.

The ledger promoter reports every committed promotion to an audit sink
(`record_promotion`). The signing/consensus subsystem is expected to provide
its own sink; the ones here log or append JSONL records for local runs.
Any exception raised by a sink fails the promotion.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

from .atoms import BondedRecord

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    """External recordPromotion contract."""

    def record_promotion(self, account: str, tier: str, record: BondedRecord) -> Any:
        ...


class PromotionAudit(BaseModel):
    """One line of the JSONL audit log."""

    transaction_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    account: str
    source_tier: str
    target_tier: str
    index: int
    frequency: str
    atomic_weight: int
    atom_count: int
    digest: Optional[str] = None

    @classmethod
    def from_record(cls, account: str, tier: str, record: BondedRecord) -> PromotionAudit:
        return cls(
            account=account,
            source_tier=tier,
            target_tier=record.tier,
            index=record.index,
            frequency=record.frequency,
            atomic_weight=record.atomic_weight,
            atom_count=len(record.atoms_used),
            digest=record.digest,
        )


class LoggingAuditSink:
    """Logs promotions; used when no audit log is configured."""

    def record_promotion(self, account: str, tier: str, record: BondedRecord) -> PromotionAudit:
        audit = PromotionAudit.from_record(account, tier, record)
        logger.info(
            f"Promotion recorded: {account} {tier}->{record.tier} #{record.index} "
            f"(tx {audit.transaction_id})"
        )
        return audit


class JsonlAuditSink:
    """Appends one JSON line per promotion."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def record_promotion(self, account: str, tier: str, record: BondedRecord) -> PromotionAudit:
        audit = PromotionAudit.from_record(account, tier, record)
        with self._lock:
            # Directory is created on first write
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(audit.model_dump_json() + "\n")
        logger.debug(f"Audit line written for {account} {record.tier} #{record.index}")
        return audit
