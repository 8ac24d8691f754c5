"""Small HTTP helpers shared by the service base and provider adapters.

Kept free of Switchboard imports beyond errors to avoid circular imports.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    import httpx

# 429 plus every 5xx is transient; any other 4xx means the request itself is wrong.
RATE_LIMIT_STATUS = 429

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/138.0.0.0 Safari/537.36"
)


def is_retryable_status(status_code: int | None) -> bool:
    """Return True for HTTP statuses worth retrying (5xx and 429)."""
    if not isinstance(status_code, int):
        return False
    return status_code == RATE_LIMIT_STATUS or 500 <= status_code <= 599


def is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the payload of each ``data:`` line of a Server-Sent-Events body.

    Blank lines, comments and other SSE fields are skipped. ``[DONE]`` ends
    the stream. Lines that are bare JSON objects are yielded as-is; some
    backends omit the ``data:`` prefix.
    """
    async for raw in response.aiter_lines():
        line = raw.strip()
        if not line or line.startswith(":"):
            continue
        if line.startswith("data:"):
            payload = line[5:].strip()
        elif line.startswith("{"):
            payload = line
        else:
            continue
        if payload == "[DONE]":
            return
        if payload:
            yield payload


def loads_object(payload: str) -> dict[str, Any] | None:
    """Decode a JSON object, returning None for non-object or heartbeat payloads."""
    text = payload.strip()
    if not text.startswith("{"):
        return None
    value = json.loads(text)
    return value if isinstance(value, dict) else None
