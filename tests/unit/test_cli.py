"""Unit tests for request_orchestrator.cli - commands, options and exit codes."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import httpx
import pytest
import respx
from typer.testing import CliRunner

from request_orchestrator import __version__
from request_orchestrator.cli import app

if TYPE_CHECKING:
    from pathlib import Path

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Run every command away from stray config files with quiet logging."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("REQUEST_ORCHESTRATOR_LOGGING__LEVEL", "CRITICAL")


# ---- Version and help -------------------------------------------------------


class TestVersionAndHelp:
    """Version command and help text output."""

    def test_version_command(self) -> None:
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_no_args_shows_help(self) -> None:
        result = runner.invoke(app, [])
        # Typer returns exit code 2 for no_args_is_help
        assert result.exit_code in (0, 2)
        assert "Usage" in result.output

    def test_help_lists_commands(self) -> None:
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "fetch" in result.output
        assert "health" in result.output
        assert "version" in result.output

    def test_fetch_help(self) -> None:
        result = runner.invoke(app, ["fetch", "--help"])
        assert result.exit_code == 0
        assert "--concurrency" in result.output
        assert "--attempts" in result.output
        assert "--json" in result.output


# ---- fetch ------------------------------------------------------------------


class TestFetchCommand:
    """fetch runs URLs through the orchestrator."""

    @respx.mock
    def test_success_exits_zero(self) -> None:
        respx.get("https://a.test/").mock(return_value=httpx.Response(200, text="hello"))

        result = runner.invoke(app, ["fetch", "https://a.test/"])

        assert result.exit_code == 0
        assert "Fetch Results" in result.output
        assert "OK" in result.output

    @respx.mock
    def test_failed_url_exits_one(self) -> None:
        respx.get("https://a.test/").mock(return_value=httpx.Response(200, text="hi"))
        respx.get("https://b.test/").mock(return_value=httpx.Response(404))

        result = runner.invoke(
            app, ["fetch", "https://a.test/", "https://b.test/", "--attempts", "1"]
        )

        assert result.exit_code == 1
        assert "FAIL" in result.output

    @respx.mock
    def test_duplicate_urls_fetched_once(self) -> None:
        route = respx.get("https://a.test/").mock(
            return_value=httpx.Response(200, text="hello")
        )

        result = runner.invoke(app, ["fetch", "https://a.test/", "https://a.test/"])

        assert result.exit_code == 0
        assert route.call_count == 1

    @respx.mock
    def test_transient_failure_retried(self) -> None:
        route = respx.get("https://a.test/").mock(
            side_effect=[httpx.Response(503), httpx.Response(200, text="ok")]
        )

        result = runner.invoke(app, ["fetch", "https://a.test/", "--attempts", "2"])

        assert result.exit_code == 0
        assert route.call_count == 2
        assert "retries=1" in result.output

    @respx.mock
    def test_json_output(self) -> None:
        respx.get("https://a.test/").mock(return_value=httpx.Response(200, text="hello"))

        result = runner.invoke(app, ["fetch", "https://a.test/", "--json"])

        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert payload["results"] == [
            {"url": "https://a.test/", "ok": True, "detail": "5 characters"}
        ]
        assert payload["metrics"]["attempts"] == 1

    def test_invalid_option_value_exits_one(self) -> None:
        result = runner.invoke(app, ["fetch", "https://a.test/", "--concurrency", "0"])
        assert result.exit_code == 1

    def test_invalid_config_file_exits_one(self, tmp_path: Path) -> None:
        config = tmp_path / "bad.yaml"
        config.write_text("retry:\n  max_attempts: 0\n")
        result = runner.invoke(
            app, ["fetch", "https://a.test/", "--config", str(config)]
        )
        assert result.exit_code == 1


# ---- health -----------------------------------------------------------------


class TestHealthCommand:
    """health probes URLs and maps the report to an exit code."""

    @respx.mock
    def test_all_healthy_exits_zero(self) -> None:
        respx.get("https://a.test/health").mock(return_value=httpx.Response(200))

        result = runner.invoke(app, ["health", "https://a.test/health"])

        assert result.exit_code == 0
        assert "Health Report" in result.output
        assert "HEALTHY" in result.output

    @respx.mock
    def test_unhealthy_exits_one(self) -> None:
        respx.get("https://a.test/health").mock(return_value=httpx.Response(200))
        respx.get("https://b.test/health").mock(return_value=httpx.Response(500))

        result = runner.invoke(
            app, ["health", "https://a.test/health", "https://b.test/health"]
        )

        assert result.exit_code == 1
        assert "UNHEALTHY" in result.output

    @respx.mock
    def test_expected_status_option(self) -> None:
        respx.get("https://a.test/ready").mock(return_value=httpx.Response(204))

        result = runner.invoke(
            app, ["health", "https://a.test/ready", "--expect", "204", "--quiet"]
        )

        assert result.exit_code == 0
        assert "Health Report" not in result.output

    @respx.mock
    def test_connection_error_is_unhealthy(self) -> None:
        respx.get("https://down.test/").mock(side_effect=httpx.ConnectError("refused"))

        result = runner.invoke(app, ["health", "https://down.test/", "--quiet"])

        assert result.exit_code == 1
