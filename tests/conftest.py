"""Shared fixtures for whiskerlink tests."""

from __future__ import annotations

import asyncio
import base64
import json
import time
from collections.abc import Callable
from typing import Any

import pytest
from aiohttp import WSMessage, WSMsgType

from whiskerlink.models import CredentialTriple

COGNITO_URL = "https://cognito-idp.us-east-1.amazonaws.com/"


def make_jwt(exp: float | None = None, **claims: object) -> str:
    """Build a minimal unsigned JWT (for testing only)."""
    header = base64.urlsafe_b64encode(b'{"alg":"none"}').rstrip(b"=").decode()
    body = {"sub": "test", **claims}
    if exp is not None:
        body["exp"] = int(exp)
    payload = base64.urlsafe_b64encode(json.dumps(body).encode()).rstrip(b"=").decode()
    return f"{header}.{payload}.fakesig"


def make_tokens(
    exp: float | None = None, *, refresh: str = "refresh-1", tag: str = "1", **claims: object
) -> CredentialTriple:
    if exp is None:
        exp = time.time() + 3600
    claims.setdefault("mid", "user-1")
    claims.setdefault("email", "me@example.com")
    return CredentialTriple(
        id_token=make_jwt(exp, token_use="id", tag=tag, **claims),
        access_token=make_jwt(exp, token_use="access", tag=tag),
        refresh_token=refresh,
    )


def auth_result(exp: float | None = None, *, refresh: str | None = "refresh-2", tag: str = "2") -> dict:
    """Cognito ``InitiateAuth`` success body."""
    tokens = make_tokens(exp, tag=tag)
    result: dict[str, object] = {
        "IdToken": tokens.id_token,
        "AccessToken": tokens.access_token,
        "ExpiresIn": 3600,
        "TokenType": "Bearer",
    }
    if refresh is not None:
        result["RefreshToken"] = refresh
    return {"AuthenticationResult": result}


@pytest.fixture
def tokens() -> CredentialTriple:
    return make_tokens()


@pytest.fixture
def expired_tokens() -> CredentialTriple:
    return make_tokens(time.time() - 10)


async def wait_until(cond: Callable[[], bool], timeout: float = 1.0) -> None:
    deadline = time.monotonic() + timeout
    while not cond():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeWebSocket:
    """In-memory stand-in for :class:`aiohttp.ClientWebSocketResponse`."""

    def __init__(self, *, ack: bool = True) -> None:
        self.ack = ack
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.close_code: int | None = None
        self.hang_on_close = False
        self._inbox: asyncio.Queue[WSMessage] = asyncio.Queue()

    def push(self, frame: dict[str, Any]) -> None:
        self._inbox.put_nowait(WSMessage(WSMsgType.TEXT, json.dumps(frame), None))

    def push_raw(self, text: str) -> None:
        self._inbox.put_nowait(WSMessage(WSMsgType.TEXT, text, None))

    def drop(self) -> None:
        """Server-side close."""
        self.closed = True
        self._inbox.put_nowait(WSMessage(WSMsgType.CLOSED, None, None))

    async def send_str(self, data: str) -> None:
        frame = json.loads(data)
        self.sent.append(frame)
        if frame["type"] == "connection_init" and self.ack:
            self.push({"type": "connection_ack", "payload": {"connectionTimeoutMs": 300000}})

    async def receive(self) -> WSMessage:
        return await self._inbox.get()

    async def close(self, *, code: int = 1000, message: bytes = b"") -> bool:
        if self.hang_on_close:
            await asyncio.sleep(3600)
        if self.closed:
            return False
        self.closed = True
        self.close_code = code
        self._inbox.put_nowait(WSMessage(WSMsgType.CLOSED, None, None))
        return True

    def exception(self) -> BaseException | None:
        return None

    def sent_types(self) -> list[str]:
        return [f["type"] for f in self.sent]


class FakeSession:
    def __init__(self, *, ack: bool = True) -> None:
        self.ack = ack
        self.sockets: list[FakeWebSocket] = []
        self.urls: list[str] = []
        self.protocols: list[tuple[str, ...]] = []
        self.failures: list[Exception] = []

    async def ws_connect(self, url: str, *, protocols: tuple[str, ...] = ()) -> FakeWebSocket:
        self.urls.append(url)
        self.protocols.append(protocols)
        if self.failures:
            raise self.failures.pop(0)
        ws = FakeWebSocket(ack=self.ack)
        self.sockets.append(ws)
        return ws
