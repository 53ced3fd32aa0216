"""Clock abstraction for delays and timestamps.

Retry delays and cache freshness never call ``time.monotonic`` or
``asyncio.sleep`` directly; they go through a :class:`Clock` so tests can
swap in :class:`ManualClock`.
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Source of time and delays."""

    def now(self) -> float:
        """Return a monotonic timestamp in seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller until ``seconds`` have elapsed."""
        ...


class SystemClock:
    """Clock backed by ``time.monotonic`` and ``asyncio.sleep``."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0.0))


class ManualClock:
    """Deterministic clock for tests.

    ``sleep`` records the requested delay, advances virtual time by that
    amount, and yields once to the event loop instead of waiting.

    Attributes:
        sleeps: Every delay passed to :meth:`sleep`, in call order.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        """Move virtual time forward.

        Args:
            seconds: Non-negative number of seconds to advance.

        Raises:
            ValueError: If ``seconds`` is negative.
        """
        if seconds < 0:
            msg = f"Cannot move the clock backwards (got {seconds!r})"
            raise ValueError(msg)
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += max(seconds, 0.0)
        await asyncio.sleep(0)
