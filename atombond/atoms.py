"""
Atom Types
===========

An Atom is the smallest record at a tier: a frequency plus opaque crypto
metadata, tagged with its lane and a monotonic sequence index. A
BondedRecord is the Atom one tier up, built from `threshold` atoms of every
lane.

Wire format (one JSON array per ledger file):
    {"frequency": 12.5, "timestamp": "...", "iv": "...", "authTag": "...",
     "lane": "proton", "sequenceIndex": 7}

Bonded records add:
    {"type": "byte", "index": 0, "atomicWeight": 24, "atomsUsed": [...],
     "indices": {...}, "digest": "..."}
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

# Wire key -> attribute name
_WIRE_FIELDS = {
    "frequency": "frequency",
    "timestamp": "timestamp",
    "iv": "iv",
    "authTag": "auth_tag",
    "lane": "lane",
    "sequenceIndex": "sequence_index",
    "type": "tier",
    "index": "index",
    "atomicWeight": "atomic_weight",
    "atomsUsed": "atoms_used",
    "indices": "indices",
    "digest": "digest",
}

# Always written, even when None
_CORE_KEYS = ("frequency", "timestamp", "iv", "authTag")


def canonical_json(data: Any) -> str:
    """Stable JSON encoding used for digests and identities."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def as_number(value: Any) -> Optional[float]:
    """Numeric value of a frequency-like field, or None.

    Numbers and numeric strings count (bonded records store their aggregate
    frequency as a two-decimal string); booleans, NaN and infinities do not.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


@dataclass(frozen=True)
class Atom:
    """A single immutable ledger entry."""
    frequency: Any = None
    timestamp: Optional[str] = None
    iv: Optional[str] = None
    auth_tag: Optional[str] = None
    lane: Optional[str] = None
    sequence_index: Optional[int] = None

    # Present only on atoms that are themselves bonded records
    tier: Optional[str] = None
    index: Optional[int] = None
    atomic_weight: Optional[int] = None
    atoms_used: Tuple[Dict[str, Any], ...] = ()
    indices: Dict[str, Any] = field(default_factory=dict)
    digest: Optional[str] = None

    # Unknown keys are carried through untouched
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_bonded(self) -> bool:
        return self.index is not None

    def with_lane(self, lane: str) -> Atom:
        return replace(self, lane=lane)

    def with_sequence(self, sequence_index: int) -> Atom:
        return replace(self, sequence_index=sequence_index)

    def identity(self) -> Tuple[str, Any]:
        """Key used to recognise this atom when trimming a ledger.

        Nested atomsUsed are left out so a constituent copy inside a bonded
        record still matches the ledger entry it was taken from.
        """
        if self.sequence_index is not None:
            return ("seq", self.sequence_index)
        data = self.to_dict()
        data.pop("atomsUsed", None)
        return ("digest", hashlib.sha1(canonical_json(data).encode()).hexdigest())

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for ledger storage."""
        data: Dict[str, Any] = dict(self.extra)
        for key, attr in _WIRE_FIELDS.items():
            value = getattr(self, attr)
            if key in _CORE_KEYS:
                data[key] = value
            elif value is None or (key in ("atomsUsed", "indices") and not value):
                continue
            elif key == "atomsUsed":
                data[key] = [dict(a) for a in value]
            else:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], lane: Optional[str] = None) -> Atom:
        """Deserialize from ledger storage.

        Raises ValueError for entries that are not JSON objects.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Atom entry must be an object, got {type(data).__name__}")

        kwargs: Dict[str, Any] = {}
        extra = {}
        for key, value in data.items():
            attr = _WIRE_FIELDS.get(key)
            if attr is None:
                extra[key] = value
            else:
                kwargs[attr] = value

        kwargs["sequence_index"] = _as_int(kwargs.get("sequence_index"))
        kwargs["index"] = _as_int(kwargs.get("index"))
        kwargs["atomic_weight"] = _as_int(kwargs.get("atomic_weight"))
        atoms_used = kwargs.get("atoms_used") or []
        kwargs["atoms_used"] = tuple(a for a in atoms_used if isinstance(a, dict))
        if not isinstance(kwargs.get("indices"), dict):
            kwargs["indices"] = {}
        if lane is not None:
            kwargs["lane"] = lane

        return cls(extra=extra, **kwargs)

    @classmethod
    def create(
        cls,
        frequency: Any,
        iv: str = "",
        auth_tag: str = "",
        timestamp: Optional[str] = None,
        **extra,
    ) -> Atom:
        """Create a fresh atom; the store assigns lane and sequence on append."""
        return cls(
            frequency=frequency,
            timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
            iv=iv,
            auth_tag=auth_tag,
            extra=extra,
        )


@dataclass
class BondedRecord:
    """One record produced by bonding `threshold` atoms from each lane.

    `tier` is the tier the record is promoted into, `source_tier` the tier
    its constituents were consumed from.
    """
    tier: str
    source_tier: str
    index: int
    frequency: str
    timestamp: Optional[str]
    iv: Optional[str]
    auth_tag: Optional[str]
    atomic_weight: int
    atoms_used: List[Atom]
    indices: Dict[str, Any] = field(default_factory=dict)
    digest: Optional[str] = None

    def constituents_by_lane(self) -> Dict[str, List[Atom]]:
        lanes: Dict[str, List[Atom]] = {}
        for atom in self.atoms_used:
            lanes.setdefault(atom.lane, []).append(atom)
        return lanes

    def to_dict(self) -> Dict[str, Any]:
        """Wire form, as seen by contracts and the audit sink."""
        data = {
            "type": self.tier,
            "index": self.index,
            "frequency": self.frequency,
            "timestamp": self.timestamp,
            "iv": self.iv,
            "authTag": self.auth_tag,
            "atomicWeight": self.atomic_weight,
            "atomsUsed": [a.to_dict() for a in self.atoms_used],
            "indices": self.indices,
        }
        if self.digest is not None:
            data["digest"] = self.digest
        return data

    def is_same_batch(self, atom: Atom) -> bool:
        """True when `atom` is a stored copy of this record's batch.

        Copies match by digest, or by their per-lane sequence indices when
        every constituent carried one. The promotion index plays no part.
        """
        if atom.tier != self.tier:
            return False
        if self.digest is not None and atom.digest == self.digest:
            return True
        sequences = self.indices.get("sequenceIndices")
        if not sequences or any(None in seqs for seqs in sequences.values()):
            return False
        return atom.indices.get("sequenceIndices") == sequences

    def to_atom(self, lane: str) -> Atom:
        """Lane-tagged copy for fan-out into the next tier's ledgers."""
        data = self.to_dict()
        data["lane"] = lane
        return Atom.from_dict(data)

    @staticmethod
    def compute_digest(atoms_used: List[Atom], algorithm: str = "sha256") -> str:
        """Digest over the constituent list, used by contract hash checks."""
        payload = canonical_json([a.to_dict() for a in atoms_used]).encode()
        return hashlib.new(algorithm, payload).hexdigest()
