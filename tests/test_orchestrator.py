"""
Tests for the hierarchy orchestrator
"""

import threading
import time

import pytest

from atombond import BondResult, BondStatus, HierarchyOrchestrator

EMPTY = {"proton": 0, "electron": 0, "neutron": 0}
ONE_EACH = {"proton": 1, "electron": 1, "neutron": 1}


def wait_until(predicate, timeout=10.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class BlockingEngine:
    """Stand-in engine whose first attempt blocks until released."""

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def try_bond(self, account, tier):
        self.calls += 1
        if self.calls == 1:
            self.started.set()
            self.release.wait(timeout=5)
        return BondResult(BondStatus.INSUFFICIENT, account, tier)


@pytest.fixture
def orchestrator(config, memory_store):
    orchestrator = HierarchyOrchestrator(config, store=memory_store, enable_watchers=False)
    yield orchestrator
    orchestrator.stop()


class TestScheduling:
    """Test queueing and coalescing of checks."""

    def test_requests_coalesce_while_running(self, config, memory_store):
        engine = BlockingEngine()
        orchestrator = HierarchyOrchestrator(
            config, store=memory_store, engine=engine, enable_watchers=False
        )
        orchestrator.start()
        try:
            assert orchestrator.request_check("addr1", "bit") is True
            assert engine.started.wait(timeout=5)

            # Arrive while the first check runs: one rerun, the rest coalesced
            for _ in range(4):
                assert orchestrator.request_check("addr1", "bit") is False

            engine.release.set()
            assert orchestrator.wait_idle(timeout=5)
        finally:
            orchestrator.stop()

        assert engine.calls == 2
        assert orchestrator.stats["checks"] == 2
        assert orchestrator.stats["coalesced"] == 4
        assert orchestrator.stats["insufficient"] == 2

    def test_terminal_tier_ignored(self, orchestrator):
        orchestrator.start()
        assert orchestrator.request_check("addr1", "kb") is False

    def test_not_running(self, orchestrator):
        assert orchestrator.request_check("addr1", "bit") is False

    def test_listener_receives_results(self, orchestrator, memory_store, fill):
        results = []
        orchestrator.add_listener(results.append)
        fill(memory_store, "addr1", "bit", [1, 2, 3])

        orchestrator.start()
        orchestrator.request_check("addr1", "bit")
        assert orchestrator.wait_idle(timeout=10)

        assert any(r.bonded and r.tier == "bit" for r in results)


class TestCascade:
    """Test bonding across tiers."""

    def test_push_cascade(self, orchestrator, memory_store, fill):
        """A bond at one tier drains it and triggers the tier above."""
        fill(memory_store, "addr1", "bit", [1, 2, 3, 4, 5, 6])

        orchestrator.start()
        orchestrator.request_check("addr1", "bit")
        assert orchestrator.wait_idle(timeout=10)

        assert memory_store.lane_counts("addr1", "bit") == EMPTY
        assert memory_store.lane_counts("addr1", "byte") == EMPTY
        assert memory_store.lane_counts("addr1", "kb") == ONE_EACH
        assert orchestrator.stats["bonded"] == 3
        assert orchestrator.stats["failed"] == 0

    def test_bond_cascade(self, orchestrator, memory_store, fill):
        fill(memory_store, "addr1", "bit", [1, 2, 3, 4, 5, 6, 7])

        results = orchestrator.bond_cascade("addr1", "bit")

        assert [(r.tier, r.status) for r in results] == [
            ("bit", BondStatus.BONDED),
            ("bit", BondStatus.BONDED),
            ("bit", BondStatus.INSUFFICIENT),
            ("byte", BondStatus.BONDED),
            ("byte", BondStatus.INSUFFICIENT),
        ]
        assert memory_store.lane_counts("addr1", "bit") == ONE_EACH
        assert memory_store.lane_counts("addr1", "kb") == ONE_EACH

    def test_bond_cascade_nothing_to_do(self, orchestrator):
        results = orchestrator.bond_cascade("addr1", "bit")
        assert [r.status for r in results] == [BondStatus.INSUFFICIENT]

    def test_sweep(self, orchestrator, memory_store, fill):
        fill(memory_store, "addr1", "bit", [1, 2, 3])
        fill(memory_store, "addr2", "bit", [1, 2, 3])

        orchestrator.start()
        assert orchestrator.sweep() >= 2
        assert orchestrator.wait_idle(timeout=10)

        assert memory_store.lane_counts("addr1", "byte") == ONE_EACH
        assert memory_store.lane_counts("addr2", "byte") == ONE_EACH


class TestAccounts:
    """Test account folder sync and status."""

    def test_sync_account_folders(self, orchestrator, memory_store):
        memory_store.ensure_account("addr1", "bit")

        assert orchestrator.sync_account_folders() == 2
        assert memory_store.list_accounts("byte") == ["addr1"]
        assert memory_store.list_accounts("kb") == ["addr1"]
        assert orchestrator.sync_account_folders() == 0

    def test_status(self, orchestrator, memory_store, fill):
        fill(memory_store, "addr1", "bit", [1, 2])

        status = orchestrator.status()

        assert list(status["tiers"]) == ["bit", "byte", "kb"]
        assert status["tiers"]["bit"]["addr1"] == {"proton": 2, "electron": 2, "neutron": 2}
        assert status["inflight"] == {}
        assert status["stats"]["checks"] == 0


@pytest.mark.slow
class TestWatchedPipeline:
    """Files written under the ledger root are bonded without manual triggers."""

    def test_watchers_drive_cascade(self, config, fill):
        orchestrator = HierarchyOrchestrator(config)
        store = orchestrator.store
        with orchestrator:
            fill(store, "addr1", "bit", [1, 2, 3, 4, 5, 6])
            assert wait_until(lambda: store.lane_counts("addr1", "kb") == ONE_EACH)

        assert store.lane_counts("addr1", "bit") == EMPTY
        assert store.lane_counts("addr1", "byte") == EMPTY
