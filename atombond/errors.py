"""
Error taxonomy for the bonding pipeline.

- InsufficientAtoms is not an exception: it is an ordinary BondResult status.
- ValidationError is returned (not raised) by the IntegrityValidator so the
  engine can decide exactly once what to do with a rejected candidate.
- StorageError and ConsistencyError are raised inside the storage/promotion
  layer and converted to typed results at the engine boundary.
"""

from __future__ import annotations

from typing import Optional


class BondingError(Exception):
    """Base class for all pipeline errors."""

    kind = "error"


class ConfigError(BondingError, ValueError):
    """Raised for invalid configuration (unknown tier, bad thresholds...)."""

    kind = "config"


class StorageError(BondingError):
    """Ledger I/O failed after all retries."""

    kind = "storage"

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class ValidationError(BondingError):
    """A bonded candidate was rejected by its tier contract."""

    kind = "validation"

    def __init__(self, rule: str, reason: str):
        super().__init__(f"[{rule}] {reason}")
        self.rule = rule
        self.reason = reason


class ConsistencyError(BondingError):
    """Promotion left the tiers out of step (build without trim, or vice versa)."""

    kind = "consistency"


class AuditError(ConsistencyError):
    """The promotion audit sink rejected a committed promotion."""

    kind = "audit"
