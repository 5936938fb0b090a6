"""
Pipeline Configuration
=======================

Everything the bonding pipeline needs to know about its environment lives
here and is injected into each component's constructor:

- Ordered tier hierarchy with per-tier bonding thresholds
- Lane names (K parallel ledgers per account/tier)
- Ledger root directory and per-tier sub-directories
- Watcher timing, I/O retry policy, worker pool size

Usage:
    config = PipelineConfig.from_yaml("config/pipeline.yaml")
    config.next_tier("bit")      # -> TierConfig(name="byte", ...)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .errors import ConfigError

# Source convention: three lanes per account/tier
DEFAULT_LANES = ["proton", "electron", "neutron"]

# (tier name, atoms per lane needed to bond into the next tier)
DEFAULT_HIERARCHY = [
    ("bit", 8),
    ("byte", 1024),
    ("kb", 1024),
    ("mb", 1024),
    ("gb", 1024),
    ("tb", 0),  # terminal
]


@dataclass
class TierConfig:
    """One level of the hierarchy."""
    name: str
    threshold: int
    directory: Optional[str] = None      # defaults to the tier name
    contract_path: Optional[str] = None  # YAML/JSON contract for this tier's bonds

    @property
    def dirname(self) -> str:
        return self.directory or self.name


@dataclass
class PipelineConfig:
    """Full pipeline configuration."""
    root: Path
    lanes: List[str] = field(default_factory=lambda: list(DEFAULT_LANES))
    tiers: List[TierConfig] = field(default_factory=list)

    # Watcher timing
    debounce_seconds: float = 0.5
    poll_interval_seconds: float = 1.0

    # Storage retry policy
    io_retries: int = 3
    io_retry_delay_seconds: float = 0.1

    # Execution
    workers: int = 4
    log_level: str = "INFO"
    audit_log: Optional[Path] = None

    def __post_init__(self):
        self.root = Path(self.root)
        if self.audit_log is not None:
            self.audit_log = Path(self.audit_log)
        if not self.tiers:
            self.tiers = [TierConfig(name, threshold) for name, threshold in DEFAULT_HIERARCHY]
        self._validate()

    def _validate(self):
        if not self.lanes:
            raise ConfigError("At least one lane is required")
        if len(set(self.lanes)) != len(self.lanes):
            raise ConfigError(f"Duplicate lane names: {self.lanes}")

        names = [t.name for t in self.tiers]
        if len(set(names)) != len(names):
            raise ConfigError(f"Duplicate tier names: {names}")

        # Every tier except the last one bonds upward and needs a threshold
        for tier in self.tiers[:-1]:
            if tier.threshold < 1:
                raise ConfigError(f"Tier '{tier.name}' needs a threshold >= 1, got {tier.threshold}")

        if self.io_retries < 1:
            raise ConfigError("io_retries must be >= 1")
        if self.workers < 1:
            raise ConfigError("workers must be >= 1")

    # =========================================================================
    # Lookups
    # =========================================================================

    @property
    def lane_count(self) -> int:
        """K, the number of parallel lanes."""
        return len(self.lanes)

    @property
    def tier_names(self) -> List[str]:
        return [t.name for t in self.tiers]

    @property
    def bondable_tiers(self) -> List[TierConfig]:
        """Tiers that have a successor and can therefore be bonded."""
        return self.tiers[:-1]

    def tier(self, name: str) -> TierConfig:
        for tier in self.tiers:
            if tier.name == name:
                return tier
        raise ConfigError(f"Unknown tier: {name!r} (known: {', '.join(self.tier_names)})")

    def next_tier(self, name: str) -> Optional[TierConfig]:
        """Return the tier above `name`, or None when `name` is terminal."""
        names = self.tier_names
        if name not in names:
            raise ConfigError(f"Unknown tier: {name!r}")
        position = names.index(name)
        if position + 1 >= len(self.tiers):
            return None
        return self.tiers[position + 1]

    def require_next_tier(self, name: str) -> TierConfig:
        next_tier = self.next_tier(name)
        if next_tier is None:
            raise ConfigError(f"Tier {name!r} is terminal and cannot be bonded")
        return next_tier

    def tier_path(self, name: str) -> Path:
        """Root directory holding all account folders for a tier."""
        return self.root / self.tier(name).dirname

    # =========================================================================
    # Loading
    # =========================================================================

    @classmethod
    def default(cls, root: Union[str, Path]) -> PipelineConfig:
        return cls(root=Path(root))

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[Path] = None) -> PipelineConfig:
        """Build a config from a parsed YAML/JSON mapping.

        Relative paths are resolved against `base_dir` (the config file's
        directory when loaded via from_yaml).
        """
        base_dir = base_dir or Path.cwd()

        def resolve(value: Optional[str]) -> Optional[Path]:
            if value is None:
                return None
            path = Path(value).expanduser()
            return path if path.is_absolute() else base_dir / path

        storage = data.get("storage", {})
        watcher = data.get("watcher", {})
        execution = data.get("execution", {})
        observability = data.get("observability", {})

        tiers = []
        for entry in data.get("tiers", []):
            if isinstance(entry, str):
                entry = {"name": entry}
            contract = entry.get("contract")
            tiers.append(TierConfig(
                name=entry["name"],
                threshold=int(entry.get("threshold", 0)),
                directory=entry.get("directory"),
                contract_path=str(resolve(contract)) if contract else None,
            ))

        root = resolve(storage.get("root", "ledgers"))
        return cls(
            root=root,
            lanes=data.get("lanes", list(DEFAULT_LANES)),
            tiers=tiers,
            debounce_seconds=watcher.get("debounce_seconds", 0.5),
            poll_interval_seconds=watcher.get("poll_interval_seconds", 1.0),
            io_retries=storage.get("io_retries", 3),
            io_retry_delay_seconds=storage.get("io_retry_delay_seconds", 0.1),
            workers=execution.get("workers", 4),
            log_level=observability.get("log_level", "INFO"),
            audit_log=resolve(observability.get("audit_log")),
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> PipelineConfig:
        """Load configuration from YAML file."""
        path = Path(path)
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read config {path}: {e}") from e
        return cls.from_dict(data, base_dir=path.parent)
