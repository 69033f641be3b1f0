"""
CLI tests through click's CliRunner. Commands that start servers are only
checked for their argument handling.
"""

import json
import os
import sys

import pytest
from click.testing import CliRunner

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from trinity import __version__
from trinity.cli import cli
from trinity.consensus import ConsensusCoordinator, LedgerId
from trinity.consensus.types import compute_operation_id

ALICE = "0x" + "aa" * 20


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("TRINITY_CONFIG", "TRINITY_NETWORK", "TRINITY_LOG_LEVEL", "TRINITY_VALIDATOR_KEY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def runner():
    return CliRunner()


class TestCli:

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_operation_id_matches_coordinator(self, runner):
        result = runner.invoke(cli, ["operation-id", ALICE, "ethereum", "TON", "100"])
        assert result.exit_code == 0, result.output
        expected = compute_operation_id(ALICE, LedgerId.ETHEREUM, LedgerId.TON, "", 100, 0)
        assert result.output.strip() == expected

        coordinator = ConsensusCoordinator()
        op = coordinator.create_operation(ALICE, LedgerId.ETHEREUM, LedgerId.TON, 100, 10 ** 18)
        assert op.operation_id == expected

    def test_operation_id_rejects_unknown_ledger(self, runner):
        result = runner.invoke(cli, ["operation-id", ALICE, "bitcoin", "ton", "100"])
        assert result.exit_code != 0

    def test_config_prints_resolved_values(self, runner, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('[network]\nname = "testnet"\n\n[fees]\nbase_fee = 42\n')
        result = runner.invoke(cli, ["config", "-c", str(path)])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["network"] == {"name": "testnet"}
        assert data["fees"]["base_fee"] == 42

    def test_invalid_config_is_reported(self, runner, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("[merkle]\nmax_depth = 0\n")
        result = runner.invoke(cli, ["config", "-c", str(path)])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

    def test_validator_needs_key(self, runner):
        result = runner.invoke(cli, ["validator", "solana"])
        assert result.exit_code == 1
        assert "TRINITY_VALIDATOR_KEY" in result.output
