"""
Tests for pipeline configuration and bonding contracts
"""

from pathlib import Path

import pytest
import yaml

from atombond import BondingContract, ConfigError, ContractRegistry, PipelineConfig, TierConfig
from atombond.config import DEFAULT_HIERARCHY, DEFAULT_LANES

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config" / "pipeline.yaml"


class TestPipelineConfig:
    """Test hierarchy lookups and validation."""

    def test_defaults(self, tmp_path):
        """Default hierarchy is bit -> ... -> tb with three lanes."""
        config = PipelineConfig.default(tmp_path)

        assert config.lanes == DEFAULT_LANES
        assert config.lane_count == 3
        assert config.tier_names == [name for name, _ in DEFAULT_HIERARCHY]
        assert config.tier("bit").threshold == 8
        assert config.tier("byte").threshold == 1024

    def test_next_tier(self, config):
        assert config.next_tier("bit").name == "byte"
        assert config.next_tier("byte").name == "kb"
        assert config.next_tier("kb") is None

    def test_terminal_tier_cannot_be_bonded(self, config):
        assert [t.name for t in config.bondable_tiers] == ["bit", "byte"]
        with pytest.raises(ConfigError):
            config.require_next_tier("kb")

    def test_unknown_tier(self, config):
        with pytest.raises(ConfigError):
            config.tier("nibble")
        with pytest.raises(ConfigError):
            config.next_tier("nibble")

    def test_tier_path_uses_directory(self, tmp_path):
        config = PipelineConfig(
            root=tmp_path,
            tiers=[TierConfig("bit", 2, directory="Bits"), TierConfig("byte", 0)],
        )
        assert config.tier_path("bit") == tmp_path / "Bits"
        assert config.tier_path("byte") == tmp_path / "byte"

    def test_rejects_zero_threshold(self, tmp_path):
        with pytest.raises(ConfigError):
            PipelineConfig(root=tmp_path, tiers=[TierConfig("bit", 0), TierConfig("byte", 0)])

    def test_rejects_duplicate_lanes(self, tmp_path):
        with pytest.raises(ConfigError):
            PipelineConfig(root=tmp_path, lanes=["a", "a"])

    def test_rejects_duplicate_tiers(self, tmp_path):
        with pytest.raises(ConfigError):
            PipelineConfig(root=tmp_path, tiers=[TierConfig("bit", 2), TierConfig("bit", 0)])

    def test_config_error_is_value_error(self, tmp_path):
        """Callers catching ValueError also see configuration errors."""
        with pytest.raises(ValueError):
            PipelineConfig(root=tmp_path, lanes=[])


class TestYamlLoading:
    """Test loading from YAML files."""

    def test_repo_config(self):
        """The shipped config loads and resolves paths relative to itself."""
        config = PipelineConfig.from_yaml(REPO_CONFIG)

        assert config.tier_names == ["bit", "byte", "kb", "mb", "gb", "tb"]
        assert config.root == REPO_CONFIG.parent / ".." / "ledgers"
        assert Path(config.tier("bit").contract_path).is_file()
        assert config.tier("kb").contract_path is None

    def test_sections(self, tmp_path):
        path = tmp_path / "pipeline.yaml"
        path.write_text(yaml.safe_dump({
            "lanes": ["a", "b"],
            "tiers": [{"name": "small", "threshold": 4}, "large"],
            "storage": {"root": "data", "io_retries": 5},
            "watcher": {"debounce_seconds": 2.0},
            "execution": {"workers": 8},
            "observability": {"audit_log": "audit.jsonl", "log_level": "DEBUG"},
        }))

        config = PipelineConfig.from_yaml(path)

        assert config.lanes == ["a", "b"]
        assert config.tier_names == ["small", "large"]
        assert config.root == tmp_path / "data"
        assert config.io_retries == 5
        assert config.debounce_seconds == 2.0
        assert config.workers == 8
        assert config.audit_log == tmp_path / "audit.jsonl"
        assert config.log_level == "DEBUG"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            PipelineConfig.from_yaml(tmp_path / "absent.yaml")


class TestContracts:
    """Test contract documents and the registry."""

    def test_list_required_fields(self):
        """A plain list of names accepts any type."""
        contract = BondingContract.model_validate({"requiredFields": ["type", "index"]})
        assert contract.required_fields == {"type": "any", "index": "any"}

    def test_aliases(self):
        contract = BondingContract.model_validate({
            "tier": "byte",
            "expectedType": "kb",
            "hashAlgorithm": "SHA256",
            "numericRanges": [{"field": "frequency", "min": 0}],
        })
        assert contract.expected_type == "kb"
        assert contract.hash_algorithm == "sha256"
        assert contract.numeric_ranges[0].field_name == "frequency"
        assert contract.numeric_ranges[0].max is None

    def test_unknown_field_type(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("requiredFields:\n  frequency: decimal\n")
        with pytest.raises(ConfigError):
            BondingContract.from_file(path)

    def test_unknown_hash_algorithm(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("hashAlgorithm: not-a-hash\n")
        with pytest.raises(ConfigError):
            BondingContract.from_file(path)

    @pytest.mark.parametrize("algorithm", ["shake_128", "SHAKE_256"])
    def test_variable_length_hash_algorithm(self, tmp_path, algorithm):
        path = tmp_path / "bad.yaml"
        path.write_text(f"hashAlgorithm: {algorithm}\n")
        with pytest.raises(ConfigError, match="fixed digest length"):
            BondingContract.from_file(path)

    def test_contract_is_read_only(self):
        contract = BondingContract.default_for("bit", expected_type="byte")
        with pytest.raises(Exception):
            contract.tier = "byte"

    def test_registry_from_repo_config(self):
        config = PipelineConfig.from_yaml(REPO_CONFIG)
        registry = ContractRegistry.from_config(config)

        assert "bit" in registry
        assert "tb" not in registry
        assert registry.get("bit").expected_type == "byte"
        assert registry.get("bit").hash_algorithm == "sha256"
        # No file configured: built-in default expecting the next tier
        assert registry.get("kb").expected_type == "mb"
