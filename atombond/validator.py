"""
Integrity Validator
====================

Checks a candidate bonded record against its tier contract before anything
is written. Rules run in a fixed order and stop at the first failure:

1. structural   - required fields present with the declared type,
                  expected tier tag, digest (when a hash algorithm is declared)
2. cardinality  - exactly `threshold` constituents from every lane
3. policy       - pluggable PolicyCheck objects (numeric ranges by default)

The validator works on the wire form (a dict) and never mutates it.
"""

from __future__ import annotations

import hashlib
import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .atoms import as_number, canonical_json
from .config import PipelineConfig
from .contracts import BondingContract
from .errors import ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# Policy checks
# =============================================================================

class PolicyCheck(Protocol):
    """A tier-specific rule; returns a failure reason or None."""

    name: str

    def check(self, candidate: Dict[str, Any], contract: BondingContract) -> Optional[str]:
        ...


class NumericRangeCheck:
    """Enforces the contract's declared numericRanges."""

    name = "numeric_range"

    def check(self, candidate: Dict[str, Any], contract: BondingContract) -> Optional[str]:
        for rule in contract.numeric_ranges:
            value = as_number(candidate.get(rule.field_name))
            if value is None:
                return f"{rule.field_name} is not numeric: {candidate.get(rule.field_name)!r}"
            if rule.min is not None and value < rule.min:
                return f"{rule.field_name}={value} below minimum {rule.min}"
            if rule.max is not None and value > rule.max:
                return f"{rule.field_name}={value} above maximum {rule.max}"
        return None


def _matches_type(value: Any, kind: str) -> bool:
    if kind == "any":
        return True
    if kind == "string":
        return isinstance(value, str)
    if kind == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if kind == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if kind == "numeric":
        return as_number(value) is not None
    if kind == "array":
        return isinstance(value, list)
    if kind == "object":
        return isinstance(value, dict)
    return False


# =============================================================================
# Validator
# =============================================================================

class IntegrityValidator:
    """Validates bonded candidates; contracts are passed in per call."""

    def __init__(
        self,
        config: PipelineConfig,
        policies: Optional[Sequence[PolicyCheck]] = None,
    ):
        self.config = config
        self.policies: List[PolicyCheck] = list(policies) if policies is not None else [NumericRangeCheck()]

    def validate(
        self,
        candidate: Dict[str, Any],
        contract: BondingContract,
        threshold: int,
    ) -> Optional[ValidationError]:
        """Return None when the candidate passes, else the first failure."""
        for rule, check in (
            ("structural", lambda: self._check_structure(candidate, contract)),
            ("cardinality", lambda: self._check_cardinality(candidate, threshold)),
        ):
            reason = check()
            if reason:
                return ValidationError(rule, reason)

        for policy in self.policies:
            reason = policy.check(candidate, contract)
            if reason:
                return ValidationError(f"policy:{policy.name}", reason)

        return None

    def _check_structure(self, candidate: Dict[str, Any], contract: BondingContract) -> Optional[str]:
        if not isinstance(candidate, dict):
            return f"candidate must be an object, got {type(candidate).__name__}"

        missing = [name for name in contract.required_fields if name not in candidate]
        if missing:
            return f"missing fields: {', '.join(missing)}"

        for name, kind in contract.required_fields.items():
            if not _matches_type(candidate[name], kind):
                return f"field {name} should be {kind}, got {type(candidate[name]).__name__}"

        if contract.expected_type and candidate.get("type") != contract.expected_type:
            return f"expected type {contract.expected_type!r}, got {candidate.get('type')!r}"

        if contract.hash_algorithm:
            atoms_used = candidate.get("atomsUsed")
            if not isinstance(atoms_used, list):
                return "atomsUsed must be an array to verify the digest"
            expected = hashlib.new(
                contract.hash_algorithm, canonical_json(atoms_used).encode()
            ).hexdigest()
            if candidate.get("digest") != expected:
                return f"{contract.hash_algorithm} digest mismatch"

        return None

    def _check_cardinality(self, candidate: Dict[str, Any], threshold: int) -> Optional[str]:
        atoms_used = candidate.get("atomsUsed")
        if not isinstance(atoms_used, list):
            return "atomsUsed must be an array"

        expected_total = threshold * self.config.lane_count
        if len(atoms_used) != expected_total:
            return f"expected {expected_total} constituents, got {len(atoms_used)}"

        if candidate.get("atomicWeight") != expected_total:
            return f"atomicWeight should be {expected_total}, got {candidate.get('atomicWeight')!r}"

        per_lane = Counter(a.get("lane") if isinstance(a, dict) else None for a in atoms_used)
        for lane in self.config.lanes:
            if per_lane.get(lane, 0) != threshold:
                return f"lane {lane} contributed {per_lane.get(lane, 0)} constituents, expected {threshold}"

        return None
