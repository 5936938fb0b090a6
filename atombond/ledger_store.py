"""
Ledger Store
=============

Durable per-(account, tier, lane) atom ledgers.

Layout on disk:
    <root>/<tier dir>/<account>/<lane>.json      JSON array of atoms
    <root>/<tier dir>/<account>/_cursor.json     sequence/promotion cursor

Guarantees:
- load() never raises for a missing or malformed ledger; it returns [] and
  logs the problem.
- save() replaces the ledger atomically (temp file + fsync + os.replace), so
  readers see either the old or the new ledger, never a torn one.
- Transient I/O errors are retried with linear backoff before surfacing as
  StorageError.

Two implementations share the LedgerStore interface: FileLedgerStore for
real deployments and InMemoryLedgerStore for tests.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from .atoms import Atom
from .config import PipelineConfig
from .errors import StorageError
from .locks import KeyedLockTable

logger = logging.getLogger(__name__)

CURSOR_FILENAME = "_cursor.json"

T = TypeVar("T")


@dataclass
class LedgerCursor:
    """Per-(account, tier) bookkeeping that must survive a full trim."""
    next_sequence: Dict[str, int] = field(default_factory=dict)
    last_promoted: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"nextSequence": self.next_sequence, "lastPromoted": self.last_promoted}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> LedgerCursor:
        return cls(
            next_sequence={k: int(v) for k, v in data.get("nextSequence", {}).items()},
            last_promoted={k: int(v) for k, v in data.get("lastPromoted", {}).items()},
        )


def _parse_atoms(raw: Any, lane: str, source: str) -> List[Atom]:
    """Turn a decoded ledger document into atoms, dropping bad entries."""
    if not isinstance(raw, list):
        logger.error(f"Ledger {source} is not a JSON array; treating as empty")
        return []

    atoms = []
    for position, entry in enumerate(raw):
        try:
            atoms.append(Atom.from_dict(entry, lane=lane))
        except ValueError as e:
            logger.warning(f"Skipping malformed entry {position} in {source}: {e}")
    return atoms


class LedgerStore(ABC):
    """Storage interface used by the engine, promoter and watchers."""

    def __init__(self, config: PipelineConfig):
        self.config = config
        self._locks = KeyedLockTable()

    # =========================================================================
    # Backend operations
    # =========================================================================

    @abstractmethod
    def load(self, account: str, tier: str, lane: str) -> List[Atom]:
        """Ordered atoms of one ledger; [] when absent or malformed."""

    @abstractmethod
    def save(self, account: str, tier: str, lane: str, atoms: Sequence[Atom]) -> None:
        """Atomically replace one ledger."""

    @abstractmethod
    def list_accounts(self, tier: str) -> List[str]:
        """Accounts that have a folder at this tier."""

    @abstractmethod
    def ensure_account(self, account: str, tier: str) -> None:
        """Create the account's folder at this tier if missing."""

    @abstractmethod
    def load_cursor(self, account: str, tier: str) -> LedgerCursor:
        pass

    @abstractmethod
    def save_cursor(self, account: str, tier: str, cursor: LedgerCursor) -> None:
        pass

    # =========================================================================
    # Shared operations
    # =========================================================================

    def lock(self, account: str, tier: str) -> threading.RLock:
        """Ledger lock guarding read-modify-write of one (account, tier)."""
        return self._locks.get((account, tier))

    def snapshot(self, account: str, tier: str) -> Dict[str, List[Atom]]:
        """Consistent view of all K lanes, never interleaved with a trim."""
        with self.lock(account, tier):
            return {lane: self.load(account, tier, lane) for lane in self.config.lanes}

    def lane_counts(self, account: str, tier: str) -> Dict[str, int]:
        return {lane: len(atoms) for lane, atoms in self.snapshot(account, tier).items()}

    def append(self, account: str, tier: str, lane: str, atoms: Sequence[Atom]) -> List[Atom]:
        """Append atoms to a lane, assigning monotonic sequence indices.

        Numbering continues from the persisted cursor, so it never restarts
        after a bond has emptied the ledger.
        """
        if lane not in self.config.lanes:
            raise ValueError(f"Unknown lane {lane!r} (lanes: {', '.join(self.config.lanes)})")

        with self.lock(account, tier):
            existing = self.load(account, tier, lane)
            cursor = self.load_cursor(account, tier)

            highest = max(
                (a.sequence_index for a in existing if a.sequence_index is not None),
                default=-1,
            )
            start = max(cursor.next_sequence.get(lane, 0), highest + 1)
            stored = [
                atom.with_lane(lane).with_sequence(start + offset)
                for offset, atom in enumerate(atoms)
            ]

            self.save(account, tier, lane, existing + stored)
            cursor.next_sequence[lane] = start + len(stored)
            self.save_cursor(account, tier, cursor)

        logger.debug(f"Appended {len(stored)} atoms to {tier}/{account}/{lane} from seq {start}")
        return stored


# =============================================================================
# File-backed store
# =============================================================================

class FileLedgerStore(LedgerStore):
    """JSON ledgers on the local filesystem."""

    def lane_path(self, account: str, tier: str, lane: str) -> Path:
        return self.account_path(account, tier) / f"{lane}.json"

    def account_path(self, account: str, tier: str) -> Path:
        if not account or account.startswith(".") or "/" in account or "\\" in account:
            raise ValueError(f"Invalid account name: {account!r}")
        return self.config.tier_path(tier) / account

    def _with_retries(self, description: str, path: Path, op: Callable[[], T]) -> T:
        """Run an I/O operation with bounded retry and linear backoff."""
        attempts = self.config.io_retries
        for attempt in range(1, attempts + 1):
            try:
                return op()
            except OSError as e:
                if attempt >= attempts:
                    raise StorageError(
                        f"{description} {path} failed after {attempts} attempts: {e}",
                        path=str(path),
                    ) from e
                logger.warning(f"{description} {path} failed ({e}), retry {attempt}/{attempts - 1}")
                time.sleep(self.config.io_retry_delay_seconds * attempt)
        raise AssertionError("unreachable")

    def _read_text(self, path: Path) -> Optional[str]:
        def read() -> Optional[str]:
            try:
                return path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None

        return self._with_retries("Reading", path, read)

    def _write_json(self, path: Path, data: Any) -> None:
        def write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                try:
                    os.unlink(tmp_name)
                except FileNotFoundError:
                    pass
                raise

        self._with_retries("Writing", path, write)

    def load(self, account: str, tier: str, lane: str) -> List[Atom]:
        path = self.lane_path(account, tier, lane)
        text = self._read_text(path)
        if text is None:
            return []
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            logger.error(f"Malformed ledger {path}: {e}; treating as empty")
            return []
        return _parse_atoms(raw, lane, str(path))

    def save(self, account: str, tier: str, lane: str, atoms: Sequence[Atom]) -> None:
        path = self.lane_path(account, tier, lane)
        self._write_json(path, [a.to_dict() for a in atoms])

    def list_accounts(self, tier: str) -> List[str]:
        root = self.config.tier_path(tier)
        if not root.is_dir():
            return []
        return sorted(
            entry.name for entry in root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    def ensure_account(self, account: str, tier: str) -> None:
        path = self.account_path(account, tier)
        self._with_retries("Creating", path, lambda: path.mkdir(parents=True, exist_ok=True))

    def load_cursor(self, account: str, tier: str) -> LedgerCursor:
        path = self.account_path(account, tier) / CURSOR_FILENAME
        text = self._read_text(path)
        if text is None:
            return LedgerCursor()
        try:
            return LedgerCursor.from_dict(json.loads(text))
        except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
            logger.error(f"Malformed cursor {path}: {e}; rebuilding from ledgers")
            return LedgerCursor()

    def save_cursor(self, account: str, tier: str, cursor: LedgerCursor) -> None:
        self._write_json(self.account_path(account, tier) / CURSOR_FILENAME, cursor.to_dict())


# =============================================================================
# In-memory store
# =============================================================================

class InMemoryLedgerStore(LedgerStore):
    """Dict-backed store with the same semantics as FileLedgerStore.

    Entries are kept in wire form (dicts) so callers can never mutate a
    stored ledger through an Atom they hold.
    """

    def __init__(self, config: PipelineConfig):
        super().__init__(config)
        self._ledgers: Dict[Tuple[str, str, str], List[Dict[str, Any]]] = {}
        self._cursors: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._accounts: Dict[str, set] = {}
        self._data_lock = threading.Lock()

    def load(self, account: str, tier: str, lane: str) -> List[Atom]:
        with self._data_lock:
            raw = copy.deepcopy(self._ledgers.get((account, tier, lane), []))
        return _parse_atoms(raw, lane, f"memory:{tier}/{account}/{lane}")

    def save(self, account: str, tier: str, lane: str, atoms: Sequence[Atom]) -> None:
        data = [a.to_dict() for a in atoms]
        with self._data_lock:
            self._ledgers[(account, tier, lane)] = copy.deepcopy(data)
            self._accounts.setdefault(tier, set()).add(account)

    def put_raw(self, account: str, tier: str, lane: str, raw: Any) -> None:
        """Store an arbitrary document, bypassing Atom serialization."""
        with self._data_lock:
            self._ledgers[(account, tier, lane)] = copy.deepcopy(raw)
            self._accounts.setdefault(tier, set()).add(account)

    def list_accounts(self, tier: str) -> List[str]:
        with self._data_lock:
            return sorted(self._accounts.get(tier, set()))

    def ensure_account(self, account: str, tier: str) -> None:
        with self._data_lock:
            self._accounts.setdefault(tier, set()).add(account)

    def load_cursor(self, account: str, tier: str) -> LedgerCursor:
        with self._data_lock:
            raw = copy.deepcopy(self._cursors.get((account, tier)))
        return LedgerCursor.from_dict(raw) if raw else LedgerCursor()

    def save_cursor(self, account: str, tier: str, cursor: LedgerCursor) -> None:
        with self._data_lock:
            self._cursors[(account, tier)] = copy.deepcopy(cursor.to_dict())
            self._accounts.setdefault(tier, set()).add(account)
