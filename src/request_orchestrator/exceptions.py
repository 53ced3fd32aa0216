"""Centralized exception hierarchy for the request-orchestrator package.

All domain-specific exceptions inherit from ``OrchestratorError`` so
callers can catch the entire family with a single ``except`` clause.

Raw failures from an operation are classified exactly once, by
:func:`classify_error`, at the boundary where they are first observed.
Everything downstream (retry policy, cache, facade) only inspects the
classified kind.
"""

from __future__ import annotations

from enum import StrEnum

import httpx


class ErrorKind(StrEnum):
    """Classified failure kind of a single attempt."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER = "server"
    RATE_LIMITED = "rate_limited"
    CLIENT = "client"
    AUTH = "auth"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class OrchestratorError(Exception):
    """Base exception for all request-orchestrator errors."""


# ---------------------------------------------------------------------------
# Configuration errors
# ---------------------------------------------------------------------------


class ConfigurationError(OrchestratorError):
    """Raised at construction time when a component is misconfigured."""


# ---------------------------------------------------------------------------
# Attempt errors
# ---------------------------------------------------------------------------


class AttemptError(OrchestratorError):
    """A classified failure of one operation attempt.

    Attributes:
        kind: The classified failure kind.
        cause: The raw exception that was classified, if any.
        status_code: HTTP status code when the failure came from a response.
    """

    default_kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        cause: BaseException | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind or self.default_kind
        self.cause = cause
        self.status_code = status_code


class TransientError(AttemptError):
    """Network- or timeout-like failure that may succeed on retry."""

    default_kind = ErrorKind.NETWORK


class OperationTimeoutError(TransientError):
    """An attempt ran past its deadline."""

    default_kind = ErrorKind.TIMEOUT


class PermanentError(AttemptError):
    """Validation- or auth-like failure that is never retried."""

    default_kind = ErrorKind.CLIENT


class ExhaustedRetriesError(OrchestratorError):
    """Raised when every permitted attempt failed with a transient error.

    Attributes:
        key: The request key that was being executed.
        attempts: Total number of attempts made.
        last_error: The classified error of the final attempt.
    """

    def __init__(self, key: str, attempts: int, last_error: AttemptError) -> None:
        super().__init__(
            f"Request {key!r} failed after {attempts} attempt(s): {last_error}"
        )
        self.key = key
        self.attempts = attempts
        self.last_error = last_error


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _classify_status(exc: httpx.HTTPStatusError) -> AttemptError:
    status = exc.response.status_code
    message = f"HTTP {status}: {exc.response.reason_phrase}"
    if status in (401, 403):
        return PermanentError(
            message, kind=ErrorKind.AUTH, cause=exc, status_code=status
        )
    if status == 408:
        return OperationTimeoutError(message, cause=exc, status_code=status)
    if status == 429:
        return TransientError(
            message, kind=ErrorKind.RATE_LIMITED, cause=exc, status_code=status
        )
    if 400 <= status < 500:
        return PermanentError(
            message, kind=ErrorKind.CLIENT, cause=exc, status_code=status
        )
    return TransientError(message, kind=ErrorKind.SERVER, cause=exc, status_code=status)


def classify_error(exc: BaseException) -> AttemptError:
    """Map a raw failure onto the orchestrator's error taxonomy.

    Args:
        exc: The exception raised by an operation.

    Returns:
        An :class:`AttemptError` subclass instance. Already-classified
        errors are returned unchanged.
    """
    if isinstance(exc, AttemptError):
        return exc
    if isinstance(exc, (TimeoutError, httpx.TimeoutException)):
        return OperationTimeoutError(str(exc) or "Operation timed out", cause=exc)
    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_status(exc)
    if isinstance(exc, (httpx.TransportError, ConnectionError, OSError)):
        return TransientError(
            f"Network error: {exc}", kind=ErrorKind.NETWORK, cause=exc
        )
    if isinstance(exc, (ValueError, TypeError)):
        return PermanentError(str(exc), kind=ErrorKind.VALIDATION, cause=exc)
    return TransientError(str(exc) or type(exc).__name__, kind=ErrorKind.UNKNOWN, cause=exc)
