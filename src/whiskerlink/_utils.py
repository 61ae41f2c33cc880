"""Small internal helpers shared by the HTTP and websocket layers."""

from __future__ import annotations

import contextlib
import inspect
import re
from collections.abc import AsyncIterator
from typing import Any

import aiohttp

_SENSITIVE_KEYS = ("password", "token", "secret", "authorization", "key")
_OPERATION_RE = re.compile(r"\b(?:query|mutation|subscription)\s+(\w+)")


@contextlib.asynccontextmanager
async def client_session(
    session: aiohttp.ClientSession | None,
) -> AsyncIterator[aiohttp.ClientSession]:
    """Yield *session* if given, otherwise a short-lived one closed on exit."""
    if session is not None:
        yield session
        return
    async with aiohttp.ClientSession() as owned:
        yield owned


def redact(obj: Any) -> Any:
    """Return a copy of *obj* with sensitive values replaced by ``[REDACTED]``."""
    if isinstance(obj, dict):
        return {
            k: "[REDACTED]"
            if any(s in str(k).lower() for s in _SENSITIVE_KEYS)
            else redact(v)
            for k, v in obj.items()
        }
    if isinstance(obj, list):
        return [redact(v) for v in obj]
    return obj


def operation_name(query: str | None) -> str:
    """Best-effort GraphQL operation name for log lines."""
    if not query:
        return "unknown"
    match = _OPERATION_RE.search(query)
    if match:
        return match.group(1)
    for kind in ("mutation", "subscription", "query"):
        if kind in query:
            return kind
    return "unknown"


async def maybe_await(result: Any) -> Any:
    """Await *result* when a callback returned an awaitable."""
    if inspect.isawaitable(result):
        return await result
    return result
