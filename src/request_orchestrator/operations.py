"""Operation adapters over ``httpx``.

An operation is a zero-argument coroutine function. These helpers turn an
HTTP request into one, raising ``httpx`` errors unchanged so the
orchestrator can classify them at its boundary.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Literal

import httpx
import structlog

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def http_get_operation(
    client: httpx.AsyncClient,
    url: str,
    params: dict[str, Any] | None = None,
    parse: Literal["json", "text"] = "json",
) -> Callable[[], Awaitable[Any]]:
    """Build an operation that GETs ``url`` and returns the parsed body.

    Args:
        client: Shared async client; its timeout settings apply.
        url: Request URL.
        params: Optional query parameters.
        parse: ``"json"`` to decode the body as JSON, ``"text"`` for text.

    Returns:
        A zero-argument coroutine function. Non-2xx responses raise
        ``httpx.HTTPStatusError``.
    """

    async def _get() -> Any:
        response = await client.get(url, params=params)
        logger.debug("http_response", url=url, status=response.status_code)
        response.raise_for_status()
        if parse == "json":
            return response.json()
        return response.text

    return _get


def request_key(url: str, params: dict[str, Any] | None = None) -> str:
    """Derive a stable request key from a URL and its query parameters.

    Parameters are sorted by name and URL-encoded, so a value containing
    ``&`` or ``=`` cannot collide with a different parameter set.
    """
    if not params:
        return f"GET {url}"
    query = httpx.QueryParams(sorted(params.items()))
    return f"GET {url}?{query}"
