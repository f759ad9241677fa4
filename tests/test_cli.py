"""CLI tests for devcollab."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from devcollab.cli import main


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("HOST", "PORT", "LOG_LEVEL", "GATEWAY_API_KEY", "READ_TIMEOUT"):
        monkeypatch.delenv(f"DEVCOLLAB_{name}", raising=False)


# ===========================================================================
# --version / --help
# ===========================================================================


class TestVersion:
    def test_version_shows_version_string(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestHelp:
    @pytest.mark.parametrize("subcommand", ["serve", "config"])
    def test_subcommands_in_help(self, runner: CliRunner, subcommand: str) -> None:
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert subcommand in result.output

    def test_serve_help_lists_options(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["serve", "--help"])
        assert result.exit_code == 0
        for option in ("--host", "--port", "--log-level"):
            assert option in result.output


# ===========================================================================
# serve command
# ===========================================================================


class TestServeCommand:
    def test_serve_runs_uvicorn_with_defaults(self, runner: CliRunner) -> None:
        with patch("uvicorn.run") as mock_run:
            result = runner.invoke(main, ["serve"])

        assert result.exit_code == 0, result.output
        mock_run.assert_called_once()
        kwargs = mock_run.call_args.kwargs
        assert kwargs["host"] == "0.0.0.0"
        assert kwargs["port"] == 8084
        assert kwargs["ws_ping_interval"] == 54.0
        assert kwargs["ws_ping_timeout"] == 6.0

    def test_options_override_environment(
        self, runner: CliRunner, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("DEVCOLLAB_PORT", "9000")
        monkeypatch.setenv("DEVCOLLAB_HOST", "127.0.0.1")
        with patch("uvicorn.run") as mock_run:
            result = runner.invoke(main, ["serve", "--port", "9100", "--log-level", "debug"])

        assert result.exit_code == 0, result.output
        kwargs = mock_run.call_args.kwargs
        assert kwargs["host"] == "127.0.0.1"
        assert kwargs["port"] == 9100
        assert kwargs["log_level"] == "debug"

    def test_invalid_environment_reported(
        self, runner: CliRunner, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("DEVCOLLAB_PORT", "not-a-port")
        with patch("uvicorn.run") as mock_run:
            result = runner.invoke(main, ["serve"])
        assert result.exit_code != 0
        assert "Invalid configuration" in result.output
        mock_run.assert_not_called()


# ===========================================================================
# config command
# ===========================================================================


class TestConfigCommand:
    def test_config_prints_json(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["config"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["port"] == 8084
        assert data["queue_size"] == 256

    def test_api_key_is_masked(self, runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DEVCOLLAB_GATEWAY_API_KEY", "s3cret")
        result = runner.invoke(main, ["config"])
        assert "s3cret" not in result.output
        assert json.loads(result.output)["gateway_api_key"] == "***"
