"""Orchestrator facade: dedup -> cache -> concurrency limit -> retry.

``Orchestrator.execute`` is the single entry point callers use. Concurrent
calls for one key share a single execution; completed results are served
from the TTL cache; misses run inside a concurrency slot under the retry
policy, sleeping on the injected clock between attempts.
"""

from __future__ import annotations

import functools
import random
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from pydantic import BaseModel, Field, ValidationError
from tenacity import AsyncRetrying, RetryError, stop_after_attempt

from request_orchestrator.cache import TTLCache
from request_orchestrator.clock import Clock, SystemClock
from request_orchestrator.config import format_validation_error
from request_orchestrator.dedup import Deduplicator
from request_orchestrator.exceptions import (
    AttemptError,
    ConfigurationError,
    ExhaustedRetriesError,
    classify_error,
)
from request_orchestrator.limiter import ConcurrencyLimiter
from request_orchestrator.logging import request_logging_context
from request_orchestrator.retry import RetryConfig, RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from tenacity import RetryCallState

    from request_orchestrator.config import Settings

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

T = TypeVar("T")

_DEFAULT_TTL_SECONDS = 60.0
_DEFAULT_MAX_CONCURRENCY = 5


class OrchestratorMetrics(BaseModel):
    """Cumulative request telemetry."""

    executions: int = Field(default=0, ge=0)
    attempts: int = Field(default=0, ge=0)
    retries: int = Field(default=0, ge=0)
    recovered: int = Field(default=0, ge=0)
    exhausted: int = Field(default=0, ge=0)
    non_retryable_failures: int = Field(default=0, ge=0)


class Orchestrator:
    """Composes deduplication, caching, concurrency limiting and retries."""

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        cache: TTLCache | None = None,
        limiter: ConcurrencyLimiter | None = None,
        deduplicator: Deduplicator | None = None,
        retry: RetryConfig | None = None,
        default_ttl: float = _DEFAULT_TTL_SECONDS,
        max_concurrency: int = _DEFAULT_MAX_CONCURRENCY,
        rng: random.Random | None = None,
    ) -> None:
        if default_ttl <= 0:
            msg = f"default_ttl must be > 0 seconds (got {default_ttl!r})"
            raise ConfigurationError(msg)
        self.clock = clock or SystemClock()
        self.cache = cache or TTLCache(clock=self.clock)
        self.limiter = limiter or ConcurrencyLimiter(max_concurrency)
        self.deduplicator = deduplicator or Deduplicator()
        self.retry_config = retry or RetryConfig()
        self.default_ttl = default_ttl
        self._rng = rng or random.Random()
        self.metrics = OrchestratorMetrics()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> Orchestrator:
        """Build an orchestrator from resolved settings.

        Raises:
            ConfigurationError: If the settings do not form a valid
                configuration.
        """
        clock = clock or SystemClock()
        try:
            retry = RetryConfig(
                max_attempts=settings.retry.max_attempts,
                base_delay=settings.retry.base_delay_seconds,
                max_delay=settings.retry.max_delay_seconds,
                backoff_multiplier=settings.retry.backoff_multiplier,
                jitter=settings.retry.jitter,
                non_retryable_kinds=frozenset(settings.retry.non_retryable_kinds),
            )
        except ValidationError as exc:
            raise ConfigurationError(format_validation_error(exc)) from exc
        return cls(
            clock=clock,
            cache=TTLCache(clock=clock, capacity=settings.cache.capacity),
            retry=retry,
            default_ttl=settings.cache.default_ttl_seconds,
            max_concurrency=settings.concurrency.max_concurrency,
            rng=rng,
        )

    async def execute(
        self,
        key: str,
        operation: Callable[[], Awaitable[T]],
        *,
        ttl: float | None = None,
        retry: RetryConfig | None = None,
    ) -> T:
        """Run ``operation`` for ``key`` through dedup, cache, limit and retry.

        Args:
            key: Identity of the request. Concurrent calls with the same
                key share one execution and one cache entry.
            operation: Zero-argument coroutine function performing the call.
            ttl: Freshness window for the cached result; defaults to
                ``default_ttl``.
            retry: Retry configuration for this call; defaults to the
                orchestrator's.

        Returns:
            The operation's result, possibly served from cache.

        Raises:
            ConfigurationError: If ``ttl`` is not positive.
            ExhaustedRetriesError: If every permitted attempt failed with a
                retryable error.
            AttemptError: The classified error of a non-retryable failure.
        """
        effective_ttl = self.default_ttl if ttl is None else ttl
        if effective_ttl <= 0:
            msg = f"ttl must be > 0 seconds (got {effective_ttl!r})"
            raise ConfigurationError(msg)
        policy = RetryPolicy(retry or self.retry_config, rng=self._rng)
        fetch = functools.partial(self._fetch, key, operation, policy)

        self.metrics.executions += 1
        with request_logging_context(key):
            return await self.deduplicator.dedupe(
                key,
                functools.partial(self.cache.get_or_fetch, key, fetch, effective_ttl),
            )

    def invalidate(self, key: str) -> bool:
        """Drop the cached result for ``key``."""
        return self.cache.invalidate(key)

    async def aclose(self) -> None:
        """Cancel background cache refreshes."""
        await self.cache.aclose()

    # -- internals -----------------------------------------------------------

    async def _fetch(
        self,
        key: str,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
    ) -> T:
        return await self.limiter.run(
            functools.partial(self._run_with_retry, key, operation, policy)
        )

    async def _run_with_retry(
        self,
        key: str,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
    ) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.config.max_attempts),
            retry=policy.tenacity_retry(),
            wait=policy.tenacity_wait(),
            sleep=self.clock.sleep,
            before_sleep=functools.partial(self._log_retry, key),
        )
        result: Any = None
        attempt_number = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    result = await self._attempt(key, operation, attempt_number)
        except RetryError as exc:
            last_error = exc.last_attempt.exception()
            if not isinstance(last_error, AttemptError):
                raise
            self.metrics.exhausted += 1
            logger.error(
                "retries_exhausted",
                key=key,
                attempts=exc.last_attempt.attempt_number,
                kind=last_error.kind.value,
                error=str(last_error),
            )
            raise ExhaustedRetriesError(
                key, exc.last_attempt.attempt_number, last_error
            ) from last_error
        except AttemptError as exc:
            self.metrics.non_retryable_failures += 1
            logger.error(
                "request_failed",
                key=key,
                attempts=attempt_number,
                kind=exc.kind.value,
                error=str(exc),
            )
            raise

        if attempt_number > 1:
            self.metrics.recovered += 1
            logger.info("request_recovered", key=key, attempts=attempt_number)
        return result  # type: ignore[no-any-return]

    async def _attempt(
        self,
        key: str,
        operation: Callable[[], Awaitable[T]],
        attempt_number: int,
    ) -> T:
        self.metrics.attempts += 1
        try:
            return await operation()
        except Exception as exc:
            error = classify_error(exc)
            logger.warning(
                "attempt_failed",
                key=key,
                attempt=attempt_number,
                kind=error.kind.value,
                error=str(error),
            )
            if error is exc:
                raise
            raise error from exc

    def _log_retry(self, key: str, retry_state: RetryCallState) -> None:
        self.metrics.retries += 1
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.info(
            "retry_scheduled",
            key=key,
            attempt=retry_state.attempt_number,
            delay_seconds=round(delay, 4),
        )
