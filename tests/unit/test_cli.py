"""Tests for the offline CLI commands."""

from typer.testing import CliRunner

from custody_engine.cli import app
from tests.conftest import OWNER

runner = CliRunner()


class TestCanonicalCommand:
    def test_prints_identifier(self):
        result = runner.invoke(app, ["canonical", OWNER, "--chain-id", "8453"])
        assert result.exit_code == 0
        assert f"eip155:8453:{OWNER}" in result.output
        assert OWNER.lower() in result.output

    def test_rejects_bad_address(self):
        result = runner.invoke(app, ["canonical", "0xnope", "--chain-id", "1"])
        assert result.exit_code == 1
        assert "INVALID_ADDRESS" in result.output

    def test_rejects_bad_chain(self):
        result = runner.invoke(app, ["canonical", OWNER, "--chain-id", "0"])
        assert result.exit_code == 1
        assert "INVALID_CHAIN_ID" in result.output
