"""
Threshold Watcher
==================

Turns ledger directory activity into debounced bonding checks.

Two event kinds are detected per tier root:
- ACCOUNT_ADDED: a new account folder appeared
- LEDGER_MODIFIED: a lane file of a known account changed

Change detection is a polling scan (mtime + size per lane file), exposed as
a lazy, cancellable sequence:

    with Subscription(root, "bit", lanes) as events:
        for event in events:
            ...

ThresholdWatcher consumes such a sequence (or synthetic events pushed via
feed()), collapses bursts per account with a Debouncer and hands each
account to a non-blocking callback, normally
HierarchyOrchestrator.request_check.

Thread Safety:
The event loop and the dispatch loop run in separate daemon threads and
stop via threading.Event. Callback errors are logged, never raised.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Hashable, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from .config import PipelineConfig

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SEC = 5.0


class ChangeKind(str, Enum):
    ACCOUNT_ADDED = "account_added"
    LEDGER_MODIFIED = "ledger_modified"


@dataclass(frozen=True)
class ChangeEvent:
    """Something changed under a tier root."""
    kind: ChangeKind
    tier: str
    account: str
    path: Optional[str] = None
    observed_at: float = field(default_factory=time.time)


# =============================================================================
# Scanning
# =============================================================================

class LedgerScanner:
    """Diffs successive scans of one tier root.

    The first scan reports every existing account as ACCOUNT_ADDED, so a
    freshly started watcher sweeps accounts that filled up while it was down.
    """

    def __init__(self, root: Path, tier: str, lanes: Sequence[str]):
        self.root = Path(root)
        self.tier = tier
        self.lane_files = {f"{lane}.json" for lane in lanes}
        self._accounts: Set[str] = set()
        self._signatures: Dict[str, Tuple[int, int]] = {}

    def scan(self) -> List[ChangeEvent]:
        if not self.root.is_dir():
            return []

        events: List[ChangeEvent] = []
        accounts: Set[str] = set()
        signatures: Dict[str, Tuple[int, int]] = {}

        try:
            entries = sorted(os.scandir(self.root), key=lambda e: e.name)
        except OSError as e:
            logger.warning(f"Cannot scan {self.root}: {e}")
            return []

        for entry in entries:
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            account = entry.name
            accounts.add(account)
            is_new = account not in self._accounts
            if is_new:
                events.append(ChangeEvent(ChangeKind.ACCOUNT_ADDED, self.tier, account, entry.path))

            for name in sorted(self.lane_files):
                path = os.path.join(entry.path, name)
                try:
                    stat = os.stat(path)
                except FileNotFoundError:
                    continue
                except OSError as e:
                    logger.warning(f"Cannot stat {path}: {e}")
                    continue
                signature = (stat.st_mtime_ns, stat.st_size)
                signatures[path] = signature
                if not is_new and self._signatures.get(path) != signature:
                    events.append(ChangeEvent(ChangeKind.LEDGER_MODIFIED, self.tier, account, path))

        self._accounts = accounts
        self._signatures = signatures
        return events


def watch(
    root: Path,
    tier: str,
    lanes: Sequence[str],
    poll_interval: float = 1.0,
    stop_event: Optional[threading.Event] = None,
) -> Iterator[ChangeEvent]:
    """Unbounded stream of ChangeEvents for one tier root.

    Runs until `stop_event` is set. Each call starts a fresh scanner.
    """
    scanner = LedgerScanner(root, tier, lanes)
    stop_event = stop_event or threading.Event()
    while not stop_event.is_set():
        yield from scanner.scan()
        stop_event.wait(timeout=poll_interval)


class Subscription:
    """Cancellable, restartable handle on watch()."""

    def __init__(self, root: Path, tier: str, lanes: Sequence[str], poll_interval: float = 1.0):
        self.root = Path(root)
        self.tier = tier
        self.lanes = list(lanes)
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()

    def __iter__(self) -> Iterator[ChangeEvent]:
        return watch(self.root, self.tier, self.lanes, self.poll_interval, self._stop_event)

    def cancel(self) -> None:
        self._stop_event.set()

    def restart(self) -> None:
        self._stop_event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._stop_event.is_set()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc) -> None:
        self.cancel()


# =============================================================================
# Debouncing
# =============================================================================

class Debouncer:
    """Collapses repeated pushes of a key into one dispatch.

    A key becomes due once it has been quiet for `quiet_seconds`, or at the
    latest `max_wait_seconds` after its first push, so a continuously
    written ledger is still checked.
    """

    def __init__(
        self,
        quiet_seconds: float,
        max_wait_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.quiet_seconds = quiet_seconds
        self.max_wait_seconds = max_wait_seconds if max_wait_seconds is not None else quiet_seconds * 10
        self._clock = clock
        self._lock = threading.Lock()
        self._first_seen: Dict[Hashable, float] = {}
        self._deadline: Dict[Hashable, float] = {}

    def push(self, key: Hashable) -> bool:
        """Register activity for key; True when the key was not pending."""
        now = self._clock()
        with self._lock:
            is_new = key not in self._first_seen
            first = self._first_seen.setdefault(key, now)
            self._deadline[key] = min(now + self.quiet_seconds, first + self.max_wait_seconds)
            return is_new

    def pop_due(self) -> List[Hashable]:
        now = self._clock()
        with self._lock:
            due = [key for key, deadline in self._deadline.items() if deadline <= now]
            for key in due:
                del self._deadline[key]
                del self._first_seen[key]
            return due

    def pop_all(self) -> List[Hashable]:
        with self._lock:
            keys = list(self._deadline)
            self._deadline.clear()
            self._first_seen.clear()
            return keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._deadline)


# =============================================================================
# Watcher
# =============================================================================

CheckCallback = Callable[[str, str], object]


class ThresholdWatcher:
    """Watches one tier and requests debounced bonding checks per account."""

    def __init__(
        self,
        config: PipelineConfig,
        tier: str,
        on_check: CheckCallback,
        source: Optional[Iterable[ChangeEvent]] = None,
    ):
        self.config = config
        self.tier = tier
        self.on_check = on_check
        self.subscription = Subscription(
            config.tier_path(tier), tier, config.lanes, config.poll_interval_seconds
        )
        self.debouncer = Debouncer(config.debounce_seconds)
        self._source = source

        self._stop_event = threading.Event()
        self._event_thread: Optional[threading.Thread] = None
        self._dispatch_thread: Optional[threading.Thread] = None

        self.events_seen = 0
        self.checks_dispatched = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        if self._event_thread is not None and self._event_thread.is_alive():
            return

        self._stop_event.clear()
        self.subscription.restart()
        self._event_thread = threading.Thread(
            target=self._event_loop, daemon=True, name=f"ThresholdWatcher-{self.tier}"
        )
        self._dispatch_thread = threading.Thread(
            target=self._dispatch_loop, daemon=True, name=f"ThresholdDispatch-{self.tier}"
        )
        self._event_thread.start()
        self._dispatch_thread.start()
        logger.info(f"Watching {self.config.tier_path(self.tier)} for {self.tier} atoms")

    def stop(self) -> None:
        self._stop_event.set()
        self.subscription.cancel()
        for thread in (self._event_thread, self._dispatch_thread):
            if thread is not None:
                thread.join(timeout=SHUTDOWN_TIMEOUT_SEC)
                if thread.is_alive():
                    logger.warning(f"{thread.name} did not stop cleanly")
        logger.info(f"Stopped watching {self.tier}")

    @property
    def running(self) -> bool:
        return self._event_thread is not None and self._event_thread.is_alive()

    # =========================================================================
    # Events
    # =========================================================================

    def feed(self, event: ChangeEvent) -> None:
        """Accept one change event (from the scanner or a test)."""
        if event.tier != self.tier:
            return
        self.events_seen += 1
        if self.debouncer.push(event.account):
            logger.debug(f"{event.kind.value}: {self.tier}/{event.account}")

    def dispatch_due(self) -> int:
        """Dispatch accounts whose quiet period has elapsed."""
        return self._dispatch(self.debouncer.pop_due())

    def flush(self) -> int:
        """Dispatch every pending account immediately."""
        return self._dispatch(self.debouncer.pop_all())

    def _dispatch(self, accounts: List[Hashable]) -> int:
        for account in accounts:
            try:
                self.on_check(str(account), self.tier)
                self.checks_dispatched += 1
            except Exception as e:
                logger.exception(f"Bonding check request failed for {self.tier}/{account}: {e}")
        return len(accounts)

    def _event_loop(self) -> None:
        source = self._source if self._source is not None else self.subscription
        try:
            for event in source:
                if self._stop_event.is_set():
                    break
                self.feed(event)
        except Exception as e:
            logger.exception(f"Watcher for {self.tier} failed: {e}")

    def _dispatch_loop(self) -> None:
        interval = max(0.01, min(self.config.debounce_seconds / 2, 0.25))
        while not self._stop_event.is_set():
            self.dispatch_due()
            self._stop_event.wait(timeout=interval)
        # Hand over anything still pending so no trigger is lost on shutdown
        self.flush()
