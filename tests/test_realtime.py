"""Tests for whiskerlink.realtime."""

from __future__ import annotations

import asyncio
import base64
import json
import time
from typing import Any
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlsplit

import aiohttp
import pytest
from aioresponses import aioresponses
from conftest import COGNITO_URL, FakeSession, auth_result, make_tokens, wait_until

from whiskerlink.auth import AuthSessionManager
from whiskerlink.errors import TokenError, TransportError
from whiskerlink.models import DataSource
from whiskerlink.queries import ROBOT_STATE_RESULT_KEY
from whiskerlink.realtime import (
    ConnectionState,
    ConnectOptions,
    EventKind,
    Lifecycle,
    RealtimeConnectionManager,
    compute_backoff_delay,
)

SERIAL = "LR4C000001"


def _data_frame(payload: dict[str, Any], sub_id: str = "1") -> dict[str, Any]:
    return {"id": sub_id, "type": "data", "payload": {"data": {ROBOT_STATE_RESULT_KEY: payload}}}


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def auth() -> AuthSessionManager:
    return AuthSessionManager(make_tokens())


@pytest.fixture
async def make_manager(auth, session):
    managers: list[RealtimeConnectionManager] = []

    def factory(**kwargs: Any) -> RealtimeConnectionManager:
        owner = kwargs.pop("auth", auth)
        options: dict[str, Any] = {
            "session": session,
            "connect_timeout": 0.5,
            "heartbeat_interval": 60,
            "idle_timeout": 120,
            "close_timeout": 0.05,
            "reconnect_base_delay": 0.01,
            "reconnect_max_delay": 0.05,
            "reconnect_max_jitter": 0,
        }
        options.update(kwargs)
        manager = RealtimeConnectionManager(owner, **options)
        managers.append(manager)
        return manager

    yield factory
    for manager in managers:
        await manager.close_all()


class TestBackoff:
    def test_exponential_up_to_cap(self):
        delays = [compute_backoff_delay(n, rand=lambda: 0.0) for n in range(8)]
        assert delays == [1, 2, 4, 8, 16, 30, 30, 30]
        assert delays == sorted(delays)

    def test_jitter_bounded(self):
        assert compute_backoff_delay(0, rand=lambda: 0.999) < 1.5
        assert compute_backoff_delay(10, rand=lambda: 0.999) < 30.5

    def test_huge_attempt_does_not_overflow(self):
        assert compute_backoff_delay(10_000, rand=lambda: 0.0) == 30


class TestConnect:
    async def test_handshake_then_subscribe(self, make_manager, session, auth):
        manager = make_manager()
        record = await manager.connect(SERIAL, ConnectOptions(serial=SERIAL))

        ws = session.sockets[0]
        assert ws.sent_types() == ["connection_init", "start"]
        assert session.protocols == [("graphql-ws",)]
        assert record.state is ConnectionState.SUBSCRIBED
        assert record.is_live
        assert manager.is_connected(SERIAL)

        start = ws.sent[1]
        assert start["id"] == "1"
        request = json.loads(start["payload"]["data"])
        assert request["variables"] == {"serial": SERIAL}
        assert "litterRobot4StateSubscriptionBySerial" in request["query"]
        authorization = start["payload"]["extensions"]["authorization"]
        assert authorization["Authorization"] == f"Bearer {auth.tokens.id_token}"

        query = parse_qs(urlsplit(session.urls[0]).query)
        header = json.loads(base64.b64decode(query["header"][0]))
        assert header["Authorization"] == f"Bearer {auth.tokens.id_token}"
        assert base64.b64decode(query["payload"][0]) == b"{}"

    async def test_connect_is_idempotent(self, make_manager, session):
        manager = make_manager()
        first = await manager.connect(SERIAL)
        second = await manager.connect(SERIAL)
        assert first is second
        assert len(session.sockets) == 1

    async def test_concurrent_connects_share_one_socket(self, make_manager, session):
        manager = make_manager()
        records = await asyncio.gather(*(manager.connect(SERIAL) for _ in range(3)))
        assert len(session.sockets) == 1
        assert records[0] is records[1] is records[2]

    async def test_no_data_delivered_before_ack(self, make_manager):
        session = FakeSession(ack=False)
        callback = AsyncMock()
        manager = make_manager(session=session)

        task = asyncio.create_task(
            manager.connect(SERIAL, ConnectOptions(serial=SERIAL, on_data_update=callback))
        )
        await wait_until(lambda: bool(session.sockets))
        ws = session.sockets[0]
        ws.push(_data_frame({"catWeight": 9.1}))
        ws.push({"type": "connection_ack"})
        record = await task
        await asyncio.sleep(0.02)

        callback.assert_not_awaited()
        assert ws.sent_types() == ["connection_init", "start"]
        assert record.is_live

        ws.push(_data_frame({"catWeight": 9.2}))
        await wait_until(lambda: callback.await_count == 1)
        callback.assert_awaited_once_with({"catWeight": 9.2}, DataSource.REALTIME)

    async def test_ack_timeout_never_registers(self, make_manager):
        session = FakeSession(ack=False)
        manager = make_manager(session=session, connect_timeout=0.05)

        with pytest.raises(TransportError, match="timeout"):
            await manager.connect(SERIAL)

        assert manager.get(SERIAL) is None
        assert session.sockets[0].closed
        assert "start" not in session.sockets[0].sent_types()

    async def test_socket_failure_raises_transport_error(self, make_manager, session):
        session.failures.append(aiohttp.ClientConnectionError("refused"))
        manager = make_manager()
        with pytest.raises(TransportError):
            await manager.connect(SERIAL)
        assert manager.device_ids == []

    async def test_connection_error_frame_rejects(self, make_manager):
        session = FakeSession(ack=False)
        manager = make_manager(session=session)
        task = asyncio.create_task(manager.connect(SERIAL))
        await wait_until(lambda: bool(session.sockets))
        session.sockets[0].push({"type": "connection_error", "payload": {"errors": ["nope"]}})

        with pytest.raises(TransportError, match="rejected"):
            await task

    async def test_connect_refreshes_stale_credentials(self, make_manager, session):
        auth = AuthSessionManager(make_tokens(0))
        manager = make_manager(auth=auth)
        with aioresponses() as m:
            m.post(COGNITO_URL, payload=auth_result())
            await manager.connect(SERIAL)

        assert auth.is_valid()
        start = session.sockets[0].sent[1]
        authorization = start["payload"]["extensions"]["authorization"]["Authorization"]
        assert authorization == f"Bearer {auth.tokens.id_token}"


class TestFrames:
    async def test_data_frames_delivered_in_order(self, make_manager, session):
        received: list[Any] = []

        async def on_data(payload, source):
            received.append((payload["catWeight"], source))

        manager = make_manager()
        await manager.connect(SERIAL, ConnectOptions(serial=SERIAL, on_data_update=on_data))
        ws = session.sockets[0]
        for weight in (8.0, 8.5, 9.0):
            ws.push(_data_frame({"catWeight": weight}))

        await wait_until(lambda: len(received) == 3)
        assert received == [(w, DataSource.REALTIME) for w in (8.0, 8.5, 9.0)]

    async def test_every_frame_resets_liveness(self, make_manager, session):
        now = [100.0]
        manager = make_manager(clock=lambda: now[0])
        record = await manager.connect(SERIAL)
        assert record.last_message_at == 100.0

        now[0] = 150.0
        session.sockets[0].push({"type": "ka"})
        await wait_until(lambda: record.last_message_at == 150.0)

        now[0] = 170.0
        session.sockets[0].push({"type": "mystery"})
        await wait_until(lambda: record.last_message_at == 170.0)

    async def test_error_frame_degrades_without_closing(self, make_manager, session):
        callback = AsyncMock()
        manager = make_manager()
        record = await manager.connect(SERIAL, ConnectOptions(serial=SERIAL, on_data_update=callback))
        ws = session.sockets[0]

        ws.push({"id": "1", "type": "error", "payload": {"errors": [{"message": "denied"}]}})
        await wait_until(lambda: record.state is ConnectionState.DEGRADED)
        assert not ws.closed
        assert record.is_live

        ws.push(_data_frame({"catWeight": 7.0}))
        await wait_until(lambda: callback.await_count == 1)
        assert record.state is ConnectionState.SUBSCRIBED

    async def test_unknown_and_foreign_frames_ignored(self, make_manager, session):
        callback = AsyncMock()
        manager = make_manager()
        record = await manager.connect(SERIAL, ConnectOptions(serial=SERIAL, on_data_update=callback))
        ws = session.sockets[0]

        ws.push({"type": "surprise"})
        ws.push_raw("not json")
        ws.push({"type": "complete", "id": "1"})
        ws.push(_data_frame({"catWeight": 1.0}, sub_id="99"))
        ws.push(_data_frame({"catWeight": 2.0}))
        await wait_until(lambda: callback.await_count == 1)

        callback.assert_awaited_once_with({"catWeight": 2.0}, DataSource.REALTIME)
        assert record.state is ConnectionState.SUBSCRIBED
        assert len(session.sockets) == 1

    async def test_failing_callback_does_not_stop_reader(self, make_manager, session):
        callback = AsyncMock(side_effect=[RuntimeError("boom"), None])
        manager = make_manager()
        await manager.connect(SERIAL, ConnectOptions(serial=SERIAL, on_data_update=callback))
        ws = session.sockets[0]
        ws.push(_data_frame({"catWeight": 1.0}))
        ws.push(_data_frame({"catWeight": 2.0}))

        await wait_until(lambda: callback.await_count == 2)
        assert manager.is_connected(SERIAL)

    async def test_listener_events(self, make_manager, session):
        events = []
        manager = make_manager()
        manager.add_listener(events.append)

        await manager.connect(SERIAL)
        session.sockets[0].push(_data_frame({"catWeight": 3.0}))
        await wait_until(lambda: len(events) == 2)
        await manager.close(SERIAL)

        assert [e.kind for e in events] == [EventKind.CONNECTED, EventKind.DATA, EventKind.DISCONNECTED]
        assert events[1].update.payload == {"catWeight": 3.0}
        assert events[1].update.source is DataSource.REALTIME
        assert events[1].device_id == SERIAL


class TestHeartbeat:
    async def test_idle_socket_forced_closed_once(self, make_manager, session):
        now = [0.0]
        manager = make_manager(heartbeat_interval=0.01, idle_timeout=90, clock=lambda: now[0])
        await manager.connect(SERIAL)
        first = session.sockets[0]

        now[0] = 91.0
        await wait_until(lambda: len(session.sockets) == 2)
        await asyncio.sleep(0.05)

        assert first.close_code == 4000
        assert len(session.sockets) == 2
        assert manager.is_connected(SERIAL)

    async def test_hung_close_falls_back_to_hard_terminate(self, make_manager, session):
        now = [0.0]
        manager = make_manager(heartbeat_interval=0.01, idle_timeout=90, clock=lambda: now[0])
        await manager.connect(SERIAL)
        session.sockets[0].hang_on_close = True

        now[0] = 200.0
        await wait_until(lambda: len(session.sockets) == 2)
        assert manager.is_connected(SERIAL)

    async def test_active_socket_left_alone(self, make_manager, session):
        now = [0.0]
        manager = make_manager(heartbeat_interval=0.01, idle_timeout=90, clock=lambda: now[0])
        await manager.connect(SERIAL)

        now[0] = 80.0
        session.sockets[0].push({"type": "ka"})
        await asyncio.sleep(0.02)
        now[0] = 160.0
        await asyncio.sleep(0.03)

        assert len(session.sockets) == 1
        assert not session.sockets[0].closed


class TestReconnect:
    async def test_drop_schedules_exactly_one_reconnect(self, make_manager, session):
        events = []
        manager = make_manager()
        manager.add_listener(events.append)
        await manager.connect(SERIAL)

        session.sockets[0].drop()
        await wait_until(lambda: len(session.sockets) == 2 and manager.is_connected(SERIAL))
        await asyncio.sleep(0.05)

        assert len(session.sockets) == 2
        kinds = [e.kind for e in events]
        assert kinds == [EventKind.CONNECTED, EventKind.DISCONNECTED, EventKind.CONNECTED]

    async def test_attempts_grow_then_reset_after_ack(self, make_manager, session):
        manager = make_manager()
        attempts: list[int] = []
        backoff = manager._backoff

        def spy(attempt: int) -> float:
            attempts.append(attempt)
            return backoff(attempt)

        manager._backoff = spy
        record = await manager.connect(SERIAL)
        session.failures.extend(
            [aiohttp.ClientConnectionError("down"), aiohttp.ClientConnectionError("down")]
        )

        session.sockets[0].drop()
        await wait_until(lambda: len(session.sockets) == 2 and record.is_live)

        assert attempts == [0, 1, 2]
        assert record.reconnect_attempts == 0

    async def test_explicit_close_never_reconnects(self, make_manager, session):
        manager = make_manager()
        record = await manager.connect(SERIAL)

        await manager.close(SERIAL)
        await asyncio.sleep(0.05)

        assert len(session.sockets) == 1
        assert session.sockets[0].closed
        assert manager.get(SERIAL) is None
        assert record.lifecycle is Lifecycle.CLOSED
        assert record.heartbeat_task is None and record.reconnect_task is None

    async def test_close_cancels_pending_reconnect(self, make_manager, session):
        manager = make_manager(reconnect_base_delay=0.05)
        record = await manager.connect(SERIAL)

        session.sockets[0].drop()
        await wait_until(lambda: record.reconnect_pending)
        await manager.close(SERIAL)
        await asyncio.sleep(0.1)

        assert len(session.sockets) == 1
        assert not record.reconnect_pending

    async def test_close_during_reconnect_refresh(self, make_manager, session):
        auth = AuthSessionManager(make_tokens())
        manager = make_manager(auth=auth)
        record = await manager.connect(SERIAL)
        release = asyncio.Event()

        async def slow_initiate_auth(flow, params):
            await release.wait()
            return 200, auth_result(tag="renewed")

        auth._initiate_auth = slow_initiate_auth
        auth._tokens = make_tokens(0)
        session.sockets[0].drop()
        await wait_until(lambda: auth.refresh_in_progress)

        await manager.close(SERIAL)
        release.set()
        await asyncio.sleep(0.05)

        assert len(session.urls) == 1
        assert manager.get(SERIAL) is None
        assert record.lifecycle is Lifecycle.CLOSED
        assert not record.reconnect_pending

    async def test_close_during_reconnect_handshake(self, make_manager, session):
        manager = make_manager()
        record = await manager.connect(SERIAL)
        session.ack = False

        session.sockets[0].drop()
        await wait_until(lambda: len(session.sockets) == 2)
        assert record.reconnect_pending

        await manager.close(SERIAL)
        await asyncio.sleep(0.05)

        assert len(session.urls) == 2
        assert session.sockets[1].closed
        assert not record.reconnect_pending
        assert manager.get(SERIAL) is None

    async def test_reconnect_refreshes_expired_credentials(self, make_manager, session):
        auth = AuthSessionManager(make_tokens(time.time() + 3600))
        manager = make_manager(auth=auth)
        await manager.connect(SERIAL)

        # Expire the session, then lose the socket.
        auth._tokens = make_tokens(0)
        with aioresponses() as m:
            m.post(COGNITO_URL, payload=auth_result(tag="renewed"))
            session.sockets[0].drop()
            await wait_until(lambda: len(session.sockets) == 2 and manager.is_connected(SERIAL))

        assert auth.is_valid()
        start = session.sockets[1].sent[1]
        authorization = start["payload"]["extensions"]["authorization"]["Authorization"]
        assert authorization == f"Bearer {auth.tokens.id_token}"

    async def test_auth_failure_stops_reconnecting(self, make_manager, session):
        auth = AuthSessionManager(make_tokens())
        on_auth_error = AsyncMock()
        manager = make_manager(auth=auth, on_auth_error=on_auth_error)
        await manager.connect(SERIAL)

        auth._tokens = make_tokens(0)
        with aioresponses() as m:
            m.post(COGNITO_URL, status=400, payload={"message": "Refresh Token has expired"}, repeat=True)
            session.sockets[0].drop()
            await wait_until(lambda: on_auth_error.await_count == 1)
            await asyncio.sleep(0.05)

        assert isinstance(on_auth_error.await_args.args[0], TokenError)
        assert len(session.sockets) == 1
        assert not manager.get(SERIAL).reconnect_pending


class TestClose:
    async def test_close_unknown_device_is_noop(self, make_manager):
        manager = make_manager()
        await manager.close("nope")

    async def test_close_all_twice_is_harmless(self, make_manager, session):
        manager = make_manager()
        await manager.connect("robot-1", ConnectOptions(serial="LR4C000001"))
        await manager.connect("robot-2", ConnectOptions(serial="LR4C000002"))

        await manager.close_all()
        await manager.close_all()

        assert manager.device_ids == []
        assert all(ws.closed for ws in session.sockets)
        await asyncio.sleep(0.05)
        assert len(session.sockets) == 2

    async def test_connect_after_close_opens_fresh_socket(self, make_manager, session):
        manager = make_manager()
        await manager.connect(SERIAL)
        await manager.close(SERIAL)
        record = await manager.connect(SERIAL)

        assert len(session.sockets) == 2
        assert record.lifecycle is Lifecycle.ACTIVE
        assert record.is_live
