"""Health check aggregation with per-check timeouts.

Registered checks run concurrently, each raced against its own timeout.
A check that raises or times out becomes an unhealthy report entry; it
never prevents the other entries from being reported, and ``run_all``
itself does not raise for check failures.
"""

from __future__ import annotations

import asyncio
import inspect
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from pydantic import BaseModel, Field

from request_orchestrator.clock import Clock, SystemClock
from request_orchestrator.exceptions import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_DEFAULT_TIMEOUT_SECONDS = 5.0


class HealthStatus(StrEnum):
    """Status of a single check or of the whole report."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class HealthCheckResult(BaseModel):
    """One entry of a health report."""

    name: str
    status: HealthStatus
    detail: str = ""
    timestamp: str = Field(default_factory=lambda: datetime.now(tz=UTC).isoformat())
    duration_seconds: float = Field(default=0.0, ge=0.0)


class HealthReport(BaseModel):
    """Aggregate report with exactly one entry per registered check."""

    checks: dict[str, HealthCheckResult] = Field(default_factory=dict)

    @property
    def status(self) -> HealthStatus:
        if all(c.status == HealthStatus.HEALTHY for c in self.checks.values()):
            return HealthStatus.HEALTHY
        return HealthStatus.UNHEALTHY

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    @property
    def exit_code(self) -> int:
        return 0 if self.healthy else 1


class _RegisteredCheck:
    __slots__ = ("check", "timeout")

    def __init__(self, check: Callable[[], Any], timeout: float) -> None:
        self.check = check
        self.timeout = timeout


class HealthAggregator:
    """Runs named health checks concurrently and reduces them to a report."""

    def __init__(
        self,
        default_timeout: float = _DEFAULT_TIMEOUT_SECONDS,
        clock: Clock | None = None,
    ) -> None:
        if default_timeout <= 0:
            msg = f"default_timeout must be > 0 seconds (got {default_timeout!r})"
            raise ConfigurationError(msg)
        self.default_timeout = default_timeout
        self._clock = clock or SystemClock()
        self._checks: dict[str, _RegisteredCheck] = {}

    @property
    def names(self) -> list[str]:
        return list(self._checks)

    def register(
        self,
        name: str,
        check: Callable[[], Any],
        timeout: float | None = None,
    ) -> None:
        """Register a check under a unique name.

        Args:
            name: Unique check name.
            check: Sync or async callable. Returning ``None`` or ``True``
                means healthy, ``False`` unhealthy, and a string is a
                healthy result carrying that detail.
            timeout: Seconds the check may take; defaults to
                ``default_timeout``.

        Raises:
            ConfigurationError: If ``name`` is already registered or the
                timeout is not positive.
        """
        if name in self._checks:
            msg = f"Health check {name!r} is already registered"
            raise ConfigurationError(msg)
        effective = self.default_timeout if timeout is None else timeout
        if effective <= 0:
            msg = f"Health check timeout must be > 0 seconds (got {effective!r})"
            raise ConfigurationError(msg)
        self._checks[name] = _RegisteredCheck(check, effective)

    def unregister(self, name: str) -> bool:
        return self._checks.pop(name, None) is not None

    async def run_all(self) -> HealthReport:
        """Run every registered check and build the report."""
        names = list(self._checks)
        results = await asyncio.gather(
            *(self._run_one(name, self._checks[name]) for name in names)
        )
        report = HealthReport(checks=dict(zip(names, results, strict=True)))
        logger.info(
            "health_report",
            status=report.status.value,
            checks=len(report.checks),
            unhealthy=[n for n, c in report.checks.items() if not _ok(c)],
        )
        return report

    async def _run_one(
        self, name: str, registered: _RegisteredCheck
    ) -> HealthCheckResult:
        started = self._clock.now()
        try:
            outcome = await asyncio.wait_for(
                _invoke(registered.check), timeout=registered.timeout
            )
        except TimeoutError:
            detail = f"Timed out after {registered.timeout:g}s"
            logger.warning(
                "health_check_timeout", check=name, timeout=registered.timeout
            )
            return self._result(name, HealthStatus.UNHEALTHY, detail, started)
        except Exception as exc:
            logger.warning(
                "health_check_failed",
                check=name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            detail = f"{type(exc).__name__}: {exc}"
            return self._result(name, HealthStatus.UNHEALTHY, detail, started)

        if outcome is False:
            detail = "Check reported unhealthy"
            return self._result(name, HealthStatus.UNHEALTHY, detail, started)
        detail = outcome if isinstance(outcome, str) else ""
        return self._result(name, HealthStatus.HEALTHY, detail, started)

    def _result(
        self, name: str, status: HealthStatus, detail: str, started: float
    ) -> HealthCheckResult:
        return HealthCheckResult(
            name=name,
            status=status,
            detail=detail,
            duration_seconds=max(0.0, self._clock.now() - started),
        )


async def _invoke(check: Callable[[], Any]) -> Any:
    if inspect.iscoroutinefunction(check):
        return await check()
    # Sync checks run off the loop so a blocking one can still time out.
    outcome = await asyncio.to_thread(check)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


def _ok(result: HealthCheckResult) -> bool:
    return result.status == HealthStatus.HEALTHY


# ---------------------------------------------------------------------------
# HTTP probe
# ---------------------------------------------------------------------------


def http_check(
    url: str,
    expected_status: int = 200,
    client: httpx.AsyncClient | None = None,
) -> Callable[[], Awaitable[str]]:
    """Build a check that GETs ``url`` and expects ``expected_status``.

    Args:
        url: Address to probe.
        expected_status: Status code that counts as healthy.
        client: Optional shared client; a short-lived one is used otherwise.

    Returns:
        An async check suitable for :meth:`HealthAggregator.register`. It
        returns a detail string when healthy and raises otherwise.
    """

    async def _probe() -> str:
        if client is not None:
            response = await client.get(url)
        else:
            async with httpx.AsyncClient() as owned:
                response = await owned.get(url)
        if response.status_code != expected_status:
            msg = f"HTTP {response.status_code} from {url} (expected {expected_status})"
            raise RuntimeError(msg)
        return f"HTTP {response.status_code}"

    return _probe
