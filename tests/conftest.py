"""Shared pytest fixtures for the request-orchestrator test suite."""

from __future__ import annotations

import logging
import random

import pytest
import structlog

from request_orchestrator.clock import ManualClock
from request_orchestrator.retry import RetryConfig

# ---------------------------------------------------------------------------
# Deterministic time and randomness
# ---------------------------------------------------------------------------


@pytest.fixture()
def manual_clock() -> ManualClock:
    """Return a virtual clock whose ``sleep`` records and returns at once."""
    return ManualClock(start=1_000.0)


@pytest.fixture()
def rng() -> random.Random:
    """Return a seeded random source for reproducible jitter."""
    return random.Random(1234)


@pytest.fixture()
def no_jitter_retry() -> RetryConfig:
    """Retry config with jitter disabled so delays are exact."""
    return RetryConfig(
        max_attempts=3,
        base_delay=0.1,
        max_delay=5.0,
        backoff_multiplier=2.0,
        jitter=0.0,
    )


# ---------------------------------------------------------------------------
# Logging isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_structlog() -> None:
    """Reset structlog state between tests."""
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
