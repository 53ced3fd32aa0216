"""End-to-end tests: httpx operations through the full execute pipeline.

Requests hit respx-mocked endpoints; time runs on a ManualClock so
backoff and TTL expiry are deterministic.
"""

from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING, Any

import httpx
import pytest
import respx

from request_orchestrator.config import Settings
from request_orchestrator.exceptions import (
    ErrorKind,
    ExhaustedRetriesError,
    PermanentError,
)
from request_orchestrator.health import HealthAggregator, HealthStatus
from request_orchestrator.operations import http_get_operation, request_key
from request_orchestrator.orchestrator import Orchestrator

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from request_orchestrator.clock import ManualClock

pytestmark = pytest.mark.integration

WEATHER_URL = "https://weather.example.com/data/2.5/weather"


def _orchestrator(manual_clock: ManualClock, **sections: object) -> Orchestrator:
    settings = Settings.load(**sections)
    return Orchestrator.from_settings(
        settings, clock=manual_clock, rng=random.Random(42)
    )


# ---------------------------------------------------------------------------
# Weather lookups
# ---------------------------------------------------------------------------


class TestWeatherLookups:
    """A weather client built on execute behaves like a resilient API layer."""

    @pytest.mark.asyncio
    async def test_city_lookup_recovers_from_outage_and_caches(
        self, manual_clock: ManualClock
    ) -> None:
        orch = _orchestrator(
            manual_clock,
            retry={"max_attempts": 3, "base_delay_seconds": 0.5},
            cache={"default_ttl_seconds": 600},
        )
        params = {"q": "Oslo", "units": "metric"}

        with respx.mock:
            route = respx.get(WEATHER_URL, params=params).mock(
                side_effect=[
                    httpx.Response(503),
                    httpx.ConnectError("connection reset"),
                    httpx.Response(200, json={"name": "Oslo", "main": {"temp": 4.5}}),
                ]
            )
            async with httpx.AsyncClient() as client:
                op = http_get_operation(client, WEATHER_URL, params=params)
                key = request_key(WEATHER_URL, params)

                first = await orch.execute(key, op)
                manual_clock.advance(300)
                second = await orch.execute(key, op)

        assert first == {"name": "Oslo", "main": {"temp": 4.5}}
        assert second is first
        assert route.call_count == 3
        assert len(manual_clock.sleeps) == 2
        assert 0.4 <= manual_clock.sleeps[0] <= 0.6
        assert 0.8 <= manual_clock.sleeps[1] <= 1.2
        assert orch.metrics.recovered == 1

    @pytest.mark.asyncio
    async def test_unknown_city_fails_fast(self, manual_clock: ManualClock) -> None:
        orch = _orchestrator(manual_clock, retry={"max_attempts": 5})
        params = {"q": "Atlantis"}

        with respx.mock:
            route = respx.get(WEATHER_URL, params=params).mock(
                return_value=httpx.Response(404, json={"message": "city not found"})
            )
            async with httpx.AsyncClient() as client:
                with pytest.raises(PermanentError) as exc_info:
                    await orch.execute(
                        request_key(WEATHER_URL, params),
                        http_get_operation(client, WEATHER_URL, params=params),
                    )

        assert exc_info.value.kind == ErrorKind.CLIENT
        assert route.call_count == 1
        assert manual_clock.sleeps == []

    @pytest.mark.asyncio
    async def test_rate_limited_until_exhausted(self, manual_clock: ManualClock) -> None:
        orch = _orchestrator(manual_clock, retry={"max_attempts": 4})

        with respx.mock:
            route = respx.get(WEATHER_URL).mock(return_value=httpx.Response(429))
            async with httpx.AsyncClient() as client:
                with pytest.raises(ExhaustedRetriesError) as exc_info:
                    await orch.execute(
                        request_key(WEATHER_URL), http_get_operation(client, WEATHER_URL)
                    )

        assert exc_info.value.attempts == 4
        assert exc_info.value.last_error.kind == ErrorKind.RATE_LIMITED
        assert route.call_count == 4
        assert len(manual_clock.sleeps) == 3

    @pytest.mark.asyncio
    async def test_dashboard_burst_is_deduplicated_and_bounded(
        self, manual_clock: ManualClock
    ) -> None:
        orch = _orchestrator(manual_clock, concurrency={"max_concurrency": 2})
        cities = ["Oslo", "Lima", "Pune", "Kyiv"]
        in_flight = 0
        peak = 0

        def respond(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"name": request.url.params["q"]})

        with respx.mock:
            route = respx.get(WEATHER_URL).mock(side_effect=respond)
            async with httpx.AsyncClient() as client:

                def lookup(city: str) -> Awaitable[Any]:
                    params = {"q": city}
                    fetch = http_get_operation(client, WEATHER_URL, params=params)

                    async def tracked() -> Any:
                        nonlocal in_flight, peak
                        in_flight += 1
                        peak = max(peak, in_flight)
                        try:
                            await asyncio.sleep(0.01)
                            return await fetch()
                        finally:
                            in_flight -= 1

                    return orch.execute(request_key(WEATHER_URL, params), tracked)

                # Every widget asks for every city at once.
                results = await asyncio.gather(
                    *(lookup(city) for _ in range(3) for city in cities)
                )

        assert [r["name"] for r in results[:4]] == cities
        assert route.call_count == len(cities)
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_expired_forecast_refreshed_in_background(
        self, manual_clock: ManualClock
    ) -> None:
        orch = _orchestrator(manual_clock, cache={"default_ttl_seconds": 60})
        temps = iter([4.5, 7.0])

        with respx.mock:
            respx.get(WEATHER_URL).mock(
                side_effect=lambda request: httpx.Response(
                    200, json={"temp": next(temps)}
                )
            )
            async with httpx.AsyncClient() as client:
                op = http_get_operation(client, WEATHER_URL)
                key = request_key(WEATHER_URL)

                assert await orch.execute(key, op) == {"temp": 4.5}
                manual_clock.advance(61)
                assert await orch.execute(key, op) == {"temp": 4.5}
                await orch.cache.wait_for_refreshes()
                assert await orch.execute(key, op) == {"temp": 7.0}

        assert orch.cache.stats.refreshes == 1
        await orch.aclose()


# ---------------------------------------------------------------------------
# Health alongside the orchestrator
# ---------------------------------------------------------------------------


class TestHealthAlongsideOrchestrator:
    """Health checks report on the same upstreams the orchestrator calls."""

    @pytest.mark.asyncio
    async def test_report_isolates_failing_upstream(
        self, manual_clock: ManualClock
    ) -> None:
        orch = _orchestrator(manual_clock)
        aggregator = HealthAggregator(default_timeout=1.0)
        aggregator.register("cache", lambda: f"{len(orch.cache)} entries")
        aggregator.register("limiter", lambda: orch.limiter.in_use == 0)

        async def weather_api() -> None:
            async with httpx.AsyncClient() as client:
                response = await client.get(WEATHER_URL)
                response.raise_for_status()

        aggregator.register("weather", weather_api)

        with respx.mock:
            respx.get(WEATHER_URL).mock(return_value=httpx.Response(502))
            report = await aggregator.run_all()

        assert report.checks["cache"].status == HealthStatus.HEALTHY
        assert report.checks["cache"].detail == "0 entries"
        assert report.checks["limiter"].status == HealthStatus.HEALTHY
        assert report.checks["weather"].status == HealthStatus.UNHEALTHY
        assert report.status == HealthStatus.UNHEALTHY
