"""
Tests for the atombond command line
"""

import json

import pytest
import yaml

from atombond.cli import main

EIGHT = ["-f", "1", "2", "3", "4", "5", "6", "7", "8"]


@pytest.fixture
def root(tmp_path):
    return str(tmp_path / "ledgers")


class TestCommands:
    """Test commands against the default hierarchy."""

    def test_add_then_bond(self, root, capsys):
        assert main(["--root", root, "add", "addr1", "bit", *EIGHT]) == 0
        assert "bit/addr1/proton: +8 (seq 0..7)" in capsys.readouterr().out

        assert main(["--root", root, "bond", "addr1", "bit"]) == 0
        result = json.loads(capsys.readouterr().out)
        assert result["status"] == "bonded"
        assert result["record"]["type"] == "byte"
        assert result["record"]["frequency"] == "4.50"
        assert result["record"]["atomsUsed"] == 24

    def test_bond_insufficient(self, root, capsys):
        main(["--root", root, "add", "addr1", "bit", "-f", "1", "2"])
        capsys.readouterr()

        assert main(["--root", root, "bond", "addr1", "bit"]) == 2
        result = json.loads(capsys.readouterr().out)
        assert result["laneCounts"] == {"proton": 2, "electron": 2, "neutron": 2}

    def test_cascade(self, root, capsys):
        main(["--root", root, "add", "addr1", "bit", *EIGHT, *EIGHT[1:]])
        capsys.readouterr()

        assert main(["--root", root, "bond", "addr1", "bit", "--cascade"]) == 0

    def test_verbose_prints_constituents(self, root, capsys):
        main(["--root", root, "add", "addr1", "bit", *EIGHT])
        capsys.readouterr()

        main(["--root", root, "bond", "addr1", "bit", "--verbose"])
        result = json.loads(capsys.readouterr().out)
        assert len(result["record"]["atomsUsed"]) == 24

    def test_single_lane(self, root, capsys):
        assert main(["--root", root, "add", "addr1", "bit", "--lane", "neutron", "-f", "3"]) == 0
        assert main(["--root", root, "status", "addr1"]) == 0

        out = capsys.readouterr().out
        assert "addr1: proton=0, electron=0, neutron=1" in out
        assert "tb (terminal)" in out

    def test_unknown_lane(self, root):
        assert main(["--root", root, "add", "addr1", "bit", "--lane", "photon", "-f", "3"]) == 1

    @pytest.mark.parametrize("tier", ["nibble", "tb"])
    def test_unbondable_tier(self, root, tier, capsys):
        assert main(["--root", root, "bond", "addr1", tier]) == 1
        assert "Error:" in capsys.readouterr().err

    def test_no_command(self, capsys):
        assert main([]) == 1


class TestConfigFile:
    """Test commands driven by a YAML config."""

    @pytest.fixture
    def config_path(self, tmp_path):
        (tmp_path / "strict.yaml").write_text(yaml.safe_dump({
            "tier": "bit",
            "expectedType": "byte",
            "requiredFields": ["type", "frequency", "atomsUsed"],
            "numericRanges": [{"field": "frequency", "max": 5}],
        }))
        path = tmp_path / "pipeline.yaml"
        path.write_text(yaml.safe_dump({
            "tiers": [
                {"name": "bit", "threshold": 2, "contract": "strict.yaml"},
                {"name": "byte"},
            ],
            "storage": {"root": "data"},
            "observability": {"audit_log": "data/audit/promotions.jsonl"},
        }))
        return str(path)

    def test_valid_bond(self, config_path, tmp_path):
        assert main(["--config", config_path, "add", "addr1", "bit", "-f", "1", "2"]) == 0
        assert main(["--config", config_path, "bond", "addr1", "bit"]) == 0
        assert (tmp_path / "data" / "byte" / "addr1" / "proton.json").is_file()
        assert (tmp_path / "data" / "audit" / "promotions.jsonl").is_file()

    def test_status_leaves_audit_log_alone(self, config_path, tmp_path):
        assert main(["--config", config_path, "status"]) == 0
        assert not (tmp_path / "data" / "audit").exists()

    def test_contract_rejection(self, config_path, capsys):
        main(["--config", config_path, "add", "addr1", "bit", "-f", "10", "20"])
        capsys.readouterr()

        assert main(["--config", config_path, "bond", "addr1", "bit"]) == 3
        result = json.loads(capsys.readouterr().out)
        assert result["error"]["kind"] == "validation"
        assert "policy:numeric_range" in result["message"]

    def test_missing_config(self, tmp_path):
        assert main(["--config", str(tmp_path / "absent.yaml"), "status"]) == 1
