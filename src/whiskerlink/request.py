"""Retrying JSON/GraphQL request client."""

from __future__ import annotations

import asyncio
import logging

import aiohttp

from whiskerlink._constants import HTTP_TIMEOUT, REQUEST_BACKOFF_BASE, REQUEST_RETRIES
from whiskerlink._utils import client_session, operation_name, redact
from whiskerlink.auth import AuthSessionManager
from whiskerlink.errors import ApiError, GraphQLError, TransportError

_LOGGER = logging.getLogger(__name__)

# HTTP statuses worth another attempt; other 4xx responses fail immediately.
_RETRYABLE_STATUSES = frozenset({408, 429})


class ResilientRequestClient:
    """POSTs ``{query, variables}`` payloads with retry and auth recovery.

    Each call makes at most ``retries + 1`` normal attempts, sleeping
    ``backoff_base * 2**n`` seconds between them.  A 401 on the first attempt
    forces one credential refresh and an immediate extra attempt that does
    not use up the retry budget.
    """

    def __init__(
        self,
        auth: AuthSessionManager,
        *,
        session: aiohttp.ClientSession | None = None,
        retries: int = REQUEST_RETRIES,
        backoff_base: float = REQUEST_BACKOFF_BASE,
        timeout: float = HTTP_TIMEOUT,
    ) -> None:
        if retries < 0:
            raise ValueError("retries must be >= 0")
        self._auth = auth
        self._session = session
        self._retries = retries
        self._backoff_base = backoff_base
        self._timeout = timeout

    @property
    def retries(self) -> int:
        return self._retries

    async def execute(self, endpoint: str, payload: dict[str, object]) -> dict[str, object]:
        """Send *payload* to *endpoint* and return the decoded response body.

        Raises:
            TokenError: Credentials could not be refreshed.
            GraphQLError: The response carried an ``errors`` list.
            ApiError: Non-retryable HTTP status, a repeated 401, or retries
                exhausted on an HTTP failure.
            TransportError: Retries exhausted on a network failure.
        """
        op = operation_name(str(payload.get("query") or ""))
        attempt = 0
        sent = 0
        refreshed = False
        async with client_session(self._session) as session:
            while True:
                headers = await self._auth.get_headers()
                sent += 1
                if attempt:
                    _LOGGER.warning("GraphQL %s retry attempt %d to %s", op, attempt + 1, endpoint)
                else:
                    _LOGGER.debug("GraphQL %s request sent to %s", op, endpoint)

                try:
                    status, body, text = await self._post(session, endpoint, payload, headers)
                except (aiohttp.ClientError, TimeoutError) as e:
                    error: Exception = TransportError(
                        f"{op} request to {endpoint} failed: {e}",
                        endpoint=endpoint,
                        attempts=sent,
                    )
                    error.__cause__ = e
                else:
                    if status == 401 and attempt == 0 and not refreshed:
                        _LOGGER.info("Received 401 for %s, forcing token refresh", op)
                        refreshed = True
                        await self._auth.refresh()
                        continue
                    if 200 <= status < 300:
                        return self._check_body(endpoint, op, body, status=status, attempts=sent)

                    _LOGGER.error("GraphQL %s request failed: HTTP %d", op, status)
                    error = ApiError(
                        f"HTTP {status}: {text[:200]}" if text else f"HTTP {status}",
                        status,
                        endpoint=endpoint,
                        attempts=sent,
                    )
                    if status < 500 and status not in _RETRYABLE_STATUSES:
                        raise error

                if attempt >= self._retries:
                    _LOGGER.error("GraphQL %s gave up after %d attempts: %s", op, sent, error)
                    raise error
                delay = self._backoff_base * (2**attempt)
                attempt += 1
                await asyncio.sleep(delay)

    async def graphql(
        self,
        endpoint: str,
        query: str,
        variables: dict[str, object] | None = None,
    ) -> dict[str, object]:
        """Run a GraphQL operation and return its ``data`` object."""
        body = await self.execute(endpoint, {"query": query, "variables": variables or {}})
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    async def _post(
        self,
        session: aiohttp.ClientSession,
        endpoint: str,
        payload: dict[str, object],
        headers: dict[str, str],
    ) -> tuple[int, object, str]:
        async with session.post(
            endpoint,
            json=payload,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self._timeout),
        ) as resp:
            if 200 <= resp.status < 300:
                try:
                    return resp.status, await resp.json(content_type=None), ""
                except ValueError:
                    return resp.status, None, ""
            return resp.status, None, await resp.text()

    @staticmethod
    def _check_body(
        endpoint: str, op: str, body: object, *, status: int, attempts: int
    ) -> dict[str, object]:
        if not isinstance(body, dict):
            raise ApiError(
                f"{op}: response is not a JSON object",
                status,
                endpoint=endpoint,
                attempts=attempts,
            )
        errors = body.get("errors")
        if errors:
            _LOGGER.error("GraphQL errors for %s: %s", op, redact(errors))
            if not isinstance(errors, list):
                errors = [errors]
            normalized = [e if isinstance(e, dict) else {"message": str(e)} for e in errors]
            raise GraphQLError(normalized, data=body.get("data"), endpoint=endpoint)
        _LOGGER.debug("GraphQL %s response received from %s", op, endpoint)
        return body
