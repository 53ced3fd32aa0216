"""Concurrency limiter: a fixed pool of permits with a FIFO wait queue.

Waiters are admitted strictly in arrival order. A released permit is
handed to the next live waiter in the same step, so the limiter is never
idle while somebody is queued.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
from collections import deque
from typing import TYPE_CHECKING, TypeVar

import structlog
from pydantic import BaseModel, Field

from request_orchestrator.exceptions import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class LimiterStats(BaseModel):
    """Point-in-time view of a limiter's permits."""

    in_use: int = Field(ge=0)
    waiting: int = Field(ge=0)
    max_concurrency: int = Field(ge=1)


class ConcurrencyLimiter:
    """Bounds how many operations run at once.

    Attributes:
        max_concurrency: Size of the permit pool.
    """

    def __init__(self, max_concurrency: int) -> None:
        if (
            isinstance(max_concurrency, bool)
            or not isinstance(max_concurrency, int)
            or max_concurrency < 1
        ):
            msg = f"max_concurrency must be an integer >= 1 (got {max_concurrency!r})"
            raise ConfigurationError(msg)
        self.max_concurrency = max_concurrency
        self._in_use = 0
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def waiting(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    def stats(self) -> LimiterStats:
        return LimiterStats(
            in_use=self._in_use,
            waiting=self.waiting,
            max_concurrency=self.max_concurrency,
        )

    async def acquire(self) -> None:
        """Take a permit, queueing behind earlier callers if none is free.

        Raises:
            asyncio.CancelledError: If cancelled while queued. The waiter
                is removed from the queue; a permit handed over in the same
                step is passed on to the next waiter.
        """
        if self._in_use < self.max_concurrency and not self._waiters:
            self._in_use += 1
            self._idle.clear()
            return

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        logger.debug(
            "limiter_queued",
            in_use=self._in_use,
            waiting=len(self._waiters),
        )
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                self.release()
            else:
                with contextlib.suppress(ValueError):
                    self._waiters.remove(fut)
            raise

    def release(self) -> None:
        """Return a permit, admitting the oldest live waiter if any."""
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._in_use -= 1
        if self._in_use == 0:
            self._idle.set()

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` while holding a permit.

        Exceptions from ``operation`` propagate unchanged. Cancelling the
        caller after admission cancels the operation and frees the permit.
        """
        await self.acquire()
        try:
            return await operation()
        finally:
            self.release()

    async def map(
        self,
        items: Iterable[T],
        fn: Callable[[T], Awaitable[R]],
    ) -> list[R]:
        """Apply ``fn`` to every item under the limit, preserving order."""
        return list(
            await asyncio.gather(
                *(self.run(functools.partial(fn, item)) for item in items)
            )
        )

    async def drain(self) -> None:
        """Wait until no permit is held and nobody is queued."""
        await self._idle.wait()
