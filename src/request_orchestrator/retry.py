"""Retry policy: decides whether and when a failed attempt is retried.

The policy is a pure decision function over the attempt number and the
classified error. Exponential backoff is capped at ``max_delay`` and
jittered by ``+/- jitter`` to avoid synchronized retry storms.
"""

from __future__ import annotations

import random
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from request_orchestrator.exceptions import AttemptError, ErrorKind, PermanentError

if TYPE_CHECKING:
    from collections.abc import Callable

    from tenacity import RetryCallState

_DEFAULT_NON_RETRYABLE = frozenset(
    {ErrorKind.CLIENT, ErrorKind.AUTH, ErrorKind.VALIDATION}
)


class RetryConfig(BaseModel):
    """Retry configuration for one request."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, le=100)
    base_delay: float = Field(default=0.1, ge=0.0, description="Seconds.")
    max_delay: float = Field(default=10.0, ge=0.0, description="Seconds.")
    backoff_multiplier: float = Field(default=2.0, gt=1.0)
    jitter: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Relative jitter applied to each delay (0.2 = +/-20%).",
    )
    non_retryable_kinds: frozenset[ErrorKind] = _DEFAULT_NON_RETRYABLE


class RetryDecision(BaseModel):
    """Outcome of :meth:`RetryPolicy.should_retry`."""

    model_config = ConfigDict(frozen=True)

    retry: bool
    delay: float = 0.0


class RetryPolicy:
    """Backoff-with-jitter retry policy over classified errors."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or RetryConfig()
        self._rng = rng or random.Random()

    def is_retryable(self, error: BaseException) -> bool:
        """Return whether an error's kind permits another attempt.

        Anything that is not a classified :class:`AttemptError` (for
        example ``asyncio.CancelledError``) is never retried.
        """
        if not isinstance(error, AttemptError) or isinstance(error, PermanentError):
            return False
        return error.kind not in self.config.non_retryable_kinds

    def backoff_delay(self, attempt: int) -> float:
        """Un-jittered delay to wait after a failed ``attempt`` (1-based)."""
        cfg = self.config
        raw = cfg.base_delay * cfg.backoff_multiplier ** max(attempt - 1, 0)
        return min(raw, cfg.max_delay)

    def jittered_delay(self, attempt: int) -> float:
        delay = self.backoff_delay(attempt)
        spread = self.config.jitter
        if spread:
            delay *= self._rng.uniform(1.0 - spread, 1.0 + spread)
        return max(delay, 0.0)

    def should_retry(self, attempt: int, error: BaseException) -> RetryDecision:
        """Decide whether attempt ``attempt + 1`` should run.

        Args:
            attempt: Number of the attempt that just failed, starting at 1.
            error: The classified error from that attempt.

        Returns:
            A decision with ``retry`` and the delay to wait first.
        """
        if not self.is_retryable(error) or attempt >= self.config.max_attempts:
            return RetryDecision(retry=False)
        return RetryDecision(retry=True, delay=self.jittered_delay(attempt))

    # -- tenacity hooks ----------------------------------------------------

    def tenacity_retry(self) -> Callable[[RetryCallState], bool]:
        """Build a tenacity ``retry`` predicate delegating to this policy."""

        def _predicate(state: RetryCallState) -> bool:
            if state.outcome is None or not state.outcome.failed:
                return False
            return self.is_retryable(state.outcome.exception())

        return _predicate

    def tenacity_wait(self) -> Callable[[RetryCallState], float]:
        """Build a tenacity ``wait`` strategy delegating to this policy."""

        def _wait(state: RetryCallState) -> float:
            return self.jittered_delay(state.attempt_number)

        return _wait
