"""Single-flight deduplication of concurrent identical requests.

Concurrent callers for the same key share one underlying execution and
all observe its outcome. Deduplication only covers calls that overlap in
time; reuse across time is the cache's job.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

T = TypeVar("T")


class _PendingRequest:
    """Shared in-flight execution for one key."""

    __slots__ = ("task", "waiters")

    def __init__(self, task: asyncio.Task[Any]) -> None:
        self.task = task
        self.waiters = 0


def _mark_retrieved(task: asyncio.Task[Any]) -> None:
    if not task.cancelled():
        task.exception()


class Deduplicator:
    """Collapses concurrent calls with the same key into one execution."""

    def __init__(self) -> None:
        self._pending: dict[str, _PendingRequest] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    async def dedupe(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` once for all concurrent callers of ``key``.

        Args:
            key: Identity of the request.
            operation: Zero-argument coroutine function. Invoked only by the
                first caller; later callers join the in-flight execution.

        Returns:
            The shared result. A failure is re-raised, as the same exception
            object, to every waiter.

        Raises:
            asyncio.CancelledError: If this caller is cancelled. The shared
                execution keeps running until every waiter has cancelled.
        """
        entry = self._pending.get(key)
        if entry is None:
            task = asyncio.ensure_future(self._run(key, operation))
            task.add_done_callback(_mark_retrieved)
            entry = _PendingRequest(task)
            self._pending[key] = entry
            logger.debug("dedupe_started", key=key)
        else:
            logger.debug("dedupe_joined", key=key, waiters=entry.waiters + 1)

        entry.waiters += 1
        try:
            return await asyncio.shield(entry.task)
        except asyncio.CancelledError:
            entry.waiters -= 1
            if entry.waiters == 0 and not entry.task.done():
                # Unpublish before cancelling so a new caller starts fresh.
                self._forget(key, entry.task)
                logger.debug("dedupe_cancelled", key=key)
                entry.task.cancel()
            raise

    async def _run(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        finally:
            # Removed in the same step the outcome is produced.
            current = asyncio.current_task()
            if current is not None:
                self._forget(key, current)

    def _forget(self, key: str, task: asyncio.Task[Any]) -> None:
        entry = self._pending.get(key)
        if entry is not None and entry.task is task:
            del self._pending[key]
