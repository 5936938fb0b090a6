"""
atombond test configuration
============================

Shared fixtures: small-threshold configurations, both store backends and a
helper for filling lanes.
"""

import logging
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from atombond import Atom, FileLedgerStore, InMemoryLedgerStore, PipelineConfig, TierConfig

logger = logging.getLogger(__name__)

LANES = ["proton", "electron", "neutron"]


# =============================================================================
# Pytest Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: tests that poll real files or threads")


# =============================================================================
# Configuration
# =============================================================================

def make_config(root, thresholds=(("bit", 3), ("byte", 2), ("kb", 0)), **overrides) -> PipelineConfig:
    """Pipeline config with tiny thresholds and no retry delay."""
    options = dict(
        debounce_seconds=0.05,
        poll_interval_seconds=0.05,
        io_retry_delay_seconds=0.0,
        workers=2,
    )
    options.update(overrides)
    return PipelineConfig(
        root=root,
        lanes=list(LANES),
        tiers=[TierConfig(name, threshold) for name, threshold in thresholds],
        **options,
    )


@pytest.fixture
def config_factory(tmp_path) -> Callable[..., PipelineConfig]:
    """make_config bound to this test's ledger root."""

    def _factory(thresholds=(("bit", 3), ("byte", 2), ("kb", 0)), **overrides):
        return make_config(tmp_path / "ledgers", thresholds, **overrides)

    return _factory


@pytest.fixture
def config(tmp_path) -> PipelineConfig:
    """bit(3) -> byte(2) -> kb (terminal)."""
    return make_config(tmp_path / "ledgers")


@pytest.fixture
def memory_store(config) -> InMemoryLedgerStore:
    return InMemoryLedgerStore(config)


@pytest.fixture
def file_store(config) -> FileLedgerStore:
    return FileLedgerStore(config)


# =============================================================================
# Helpers
# =============================================================================

Filler = Callable[..., Dict[str, List[Atom]]]


@pytest.fixture
def fill() -> Filler:
    """Append atoms with the given frequencies to every (or selected) lane."""

    def _fill(
        store,
        account: str,
        tier: str,
        frequencies: Sequence,
        lanes: Optional[Sequence[str]] = None,
    ) -> Dict[str, List[Atom]]:
        stored = {}
        for lane in lanes or store.config.lanes:
            atoms = [
                Atom.create(frequency, iv=f"iv-{lane}-{i}", auth_tag=f"tag-{lane}-{i}")
                for i, frequency in enumerate(frequencies)
            ]
            stored[lane] = store.append(account, tier, lane, atoms)
        return stored

    return _fill
