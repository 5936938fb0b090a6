"""
Typed results passed across component boundaries.

The engine never lets an exception escape a bonding attempt; instead every
attempt ends in exactly one BondResult so callers (watchers, the cascade,
the CLI) can act on the outcome without guessing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .atoms import BondedRecord
from .errors import BondingError


class BondStatus(str, Enum):
    """Outcome of one try_bond call."""
    BONDED = "bonded"                 # Candidate promoted
    INSUFFICIENT = "insufficient"     # Not yet: some lane below threshold
    INVALID = "invalid"               # Contract rejected the candidate
    STORAGE_ERROR = "storage_error"   # Ledger I/O failed after retries
    CONSISTENCY_ERROR = "consistency_error"


class BondState(str, Enum):
    """Per-(account, tier) state machine."""
    IDLE = "idle"
    CHECKING = "checking"
    BONDING = "bonding"
    VALIDATING = "validating"
    PROMOTING = "promoting"
    INSUFFICIENT = "insufficient"


@dataclass
class InsufficientAtoms:
    """Lane counts observed when a bond could not be formed yet."""
    threshold: int
    lane_counts: Dict[str, int]

    @property
    def short_lanes(self) -> List[str]:
        return [lane for lane, count in self.lane_counts.items() if count < self.threshold]

    def __str__(self) -> str:
        return (
            f"need {self.threshold} atoms per lane, have "
            + ", ".join(f"{lane}={count}" for lane, count in self.lane_counts.items())
        )


@dataclass
class BondResult:
    """Result of a single bonding attempt."""
    status: BondStatus
    account: str
    tier: str
    record: Optional[BondedRecord] = None
    insufficient: Optional[InsufficientAtoms] = None
    error: Optional[BondingError] = None
    resumed: bool = False  # Completed an interrupted earlier promotion

    @property
    def bonded(self) -> bool:
        return self.status == BondStatus.BONDED

    @property
    def message(self) -> str:
        if self.status == BondStatus.BONDED and self.record is not None:
            return f"bonded {self.record.tier} #{self.record.index} (frequency {self.record.frequency})"
        if self.status == BondStatus.INSUFFICIENT and self.insufficient is not None:
            return f"insufficient atoms: {self.insufficient}"
        if self.error is not None:
            return str(self.error)
        return self.status.value

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "status": self.status.value,
            "account": self.account,
            "tier": self.tier,
            "message": self.message,
        }
        if self.record is not None:
            data["record"] = self.record.to_dict()
        if self.insufficient is not None:
            data["laneCounts"] = self.insufficient.lane_counts
            data["threshold"] = self.insufficient.threshold
        if self.error is not None:
            data["error"] = {"kind": self.error.kind, "message": str(self.error)}
        if self.resumed:
            data["resumed"] = True
        return data


@dataclass
class PromotionResult:
    """Result of LedgerPromoter.promote()."""
    committed: bool
    appended_lanes: List[str] = field(default_factory=list)
    skipped_lanes: List[str] = field(default_factory=list)
    trimmed: Dict[str, int] = field(default_factory=dict)
    error: Optional[BondingError] = None

    @property
    def duplicate(self) -> bool:
        """Every next-tier lane already held a copy of this batch."""
        return not self.appended_lanes and bool(self.skipped_lanes)
