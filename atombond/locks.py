"""
Per-key lock table.

One RLock per (account, tier) key, created lazily. Locks are never evicted;
the table grows with the number of distinct accounts seen by the process.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Generator, Hashable


class KeyedLockTable:
    """Lazily created re-entrant locks keyed by any hashable value."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.RLock] = {}

    def get(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Generator[None, None, None]:
        lock = self.get(key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
