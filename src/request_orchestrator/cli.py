"""Typer CLI entry point for request-orchestrator."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated, Any

import httpx
import structlog
import typer
from pydantic import BaseModel
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from request_orchestrator import __version__
from request_orchestrator.config import Settings, format_validation_error
from request_orchestrator.exceptions import ConfigurationError, OrchestratorError
from request_orchestrator.health import (
    HealthAggregator,
    HealthReport,
    HealthStatus,
    http_check,
)
from request_orchestrator.logging import configure_logging
from request_orchestrator.operations import http_get_operation, request_key
from request_orchestrator.orchestrator import Orchestrator, OrchestratorMetrics

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="request-orchestrator",
    help="Resilient outbound requests: retry, concurrency limits, dedup, caching and health checks.",
    no_args_is_help=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FetchOutcome(BaseModel):
    """Result row for one fetched URL."""

    url: str
    ok: bool
    detail: str


def _load_settings(
    config_path: Path | None = None,
    **overrides: Any,
) -> Settings:
    """Load settings with error handling and user-friendly messages."""
    from pydantic import ValidationError

    try:
        settings = Settings.load(config_path=config_path, **overrides)
    except ValidationError as exc:
        err_console.print(
            Panel(
                format_validation_error(exc),
                title="Configuration Error",
                border_style="red",
            )
        )
        raise typer.Exit(code=1) from exc

    configure_logging(
        level=settings.logging.level,
        fmt=settings.logging.format,
        log_file=settings.logging.file,
    )
    return settings


def _http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=settings.http.timeout_seconds,
        headers={"User-Agent": settings.http.user_agent},
        follow_redirects=True,
    )


async def _fetch_all(
    urls: list[str], settings: Settings
) -> tuple[list[FetchOutcome], OrchestratorMetrics]:
    orchestrator = Orchestrator.from_settings(settings)

    async with _http_client(settings) as client:

        async def _one(url: str) -> FetchOutcome:
            try:
                body = await orchestrator.execute(
                    request_key(url),
                    http_get_operation(client, url, parse="text"),
                )
            except OrchestratorError as exc:
                return FetchOutcome(url=url, ok=False, detail=str(exc))
            return FetchOutcome(url=url, ok=True, detail=f"{len(body):,} characters")

        try:
            outcomes = await asyncio.gather(*(_one(url) for url in urls))
        finally:
            await orchestrator.aclose()

    return list(outcomes), orchestrator.metrics


async def _check_all(
    urls: list[str], settings: Settings, expected_status: int
) -> HealthReport:
    aggregator = HealthAggregator(
        default_timeout=settings.health.default_timeout_seconds
    )
    async with _http_client(settings) as client:
        for url in dict.fromkeys(urls):
            aggregator.register(
                url, http_check(url, expected_status=expected_status, client=client)
            )
        return await aggregator.run_all()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def fetch(
    urls: Annotated[list[str], typer.Argument(help="URLs to GET.")],
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to config YAML file."),
    ] = None,
    concurrency: Annotated[
        int | None,
        typer.Option("--concurrency", "-n", help="Max requests in flight."),
    ] = None,
    attempts: Annotated[
        int | None,
        typer.Option("--attempts", help="Max attempts per request."),
    ] = None,
    timeout: Annotated[
        float | None,
        typer.Option("--timeout", help="Per-request timeout in seconds."),
    ] = None,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print results as JSON."),
    ] = False,
) -> None:
    """Fetch URLs with retries, deduplication and bounded concurrency."""
    overrides: dict[str, Any] = {}
    if concurrency is not None:
        overrides["concurrency"] = {"max_concurrency": concurrency}
    if attempts is not None:
        overrides["retry"] = {"max_attempts": attempts}
    if timeout is not None:
        overrides["http"] = {"timeout_seconds": timeout}
    settings = _load_settings(config, **overrides)

    try:
        outcomes, metrics = asyncio.run(_fetch_all(urls, settings))
    except ConfigurationError as exc:
        err_console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    failed = sum(1 for o in outcomes if not o.ok)

    if as_json:
        console.print_json(
            json.dumps(
                {
                    "results": [o.model_dump() for o in outcomes],
                    "metrics": metrics.model_dump(),
                }
            )
        )
    else:
        table = Table(title="Fetch Results", show_lines=True)
        table.add_column("URL", style="cyan")
        table.add_column("Status", justify="center")
        table.add_column("Detail")
        for outcome in outcomes:
            status = "[green]OK[/green]" if outcome.ok else "[red]FAIL[/red]"
            table.add_row(outcome.url, status, outcome.detail)
        console.print(table)
        console.print(
            f"[dim]attempts={metrics.attempts} retries={metrics.retries} "
            f"recovered={metrics.recovered} exhausted={metrics.exhausted}[/dim]"
        )

    raise typer.Exit(code=1 if failed else 0)


@app.command()
def health(
    urls: Annotated[list[str], typer.Argument(help="URLs to probe.")],
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to config YAML file."),
    ] = None,
    timeout: Annotated[
        float | None,
        typer.Option("--timeout", help="Per-check timeout in seconds."),
    ] = None,
    expected_status: Annotated[
        int,
        typer.Option("--expect", help="HTTP status that counts as healthy."),
    ] = 200,
    quiet: Annotated[
        bool,
        typer.Option("--quiet", help="Suppress table output, use exit code only."),
    ] = False,
) -> None:
    """Probe URLs concurrently and report their health."""
    overrides: dict[str, Any] = {}
    if timeout is not None:
        overrides["health"] = {"default_timeout_seconds": timeout}
    settings = _load_settings(config, **overrides)

    report = asyncio.run(_check_all(urls, settings, expected_status))

    if not quiet:
        table = Table(title="Health Report", show_lines=True)
        table.add_column("Check", style="cyan")
        table.add_column("Status", justify="center")
        table.add_column("Detail")
        table.add_column("Duration", justify="right")

        status_style = {
            HealthStatus.HEALTHY: "[green]HEALTHY[/green]",
            HealthStatus.UNHEALTHY: "[red]UNHEALTHY[/red]",
        }
        for name, result in report.checks.items():
            table.add_row(
                name,
                status_style[result.status],
                result.detail,
                f"{result.duration_seconds:.3f}s",
            )
        console.print(table)
        console.print(f"Overall: {status_style[report.status]}")

    raise typer.Exit(code=report.exit_code)


@app.command()
def version() -> None:
    """Print the installed version."""
    console.print(__version__)


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
