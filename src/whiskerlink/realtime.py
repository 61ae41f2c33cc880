"""Self-healing graphql-ws subscriptions, one per device.

Each device id gets at most one live websocket.  A connection becomes live
only after the ``connection_init`` / ``connection_ack`` / ``start`` handshake.
A heartbeat task force-closes sockets that went quiet (half-open
connections), and every close that was not requested by the caller
schedules exactly one reconnect with exponential backoff and jitter.

Example::

    manager = RealtimeConnectionManager(auth)
    await manager.connect("robot-1", ConnectOptions(serial="LR4C000001", on_data_update=cb))
    ...
    await manager.close_all()
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import functools
import json
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlencode

import aiohttp

from whiskerlink._constants import (
    CLOSE_TIMEOUT,
    CONNECT_TIMEOUT,
    HEARTBEAT_IDLE_TIMEOUT,
    HEARTBEAT_INTERVAL,
    LR4_REALTIME_HOST,
    LR4_REALTIME_URL,
    REALTIME_SUBPROTOCOL,
    RECONNECT_BASE_DELAY,
    RECONNECT_MAX_DELAY,
    RECONNECT_MAX_JITTER,
)
from whiskerlink._utils import maybe_await, redact
from whiskerlink.auth import AuthSessionManager
from whiskerlink.errors import AuthenticationError, TransportError
from whiskerlink.models import DataCallback, DataSource, DataUpdate
from whiskerlink.queries import ROBOT_STATE_RESULT_KEY, ROBOT_STATE_SUBSCRIPTION

_LOGGER = logging.getLogger(__name__)

_CLOSED_TYPES = frozenset(
    {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED}
)


class FrameType:
    """``type`` discriminators of the graphql-ws subprotocol."""

    CONNECTION_INIT = "connection_init"
    CONNECTION_ACK = "connection_ack"
    CONNECTION_ERROR = "connection_error"
    START = "start"
    START_ACK = "start_ack"
    DATA = "data"
    KEEP_ALIVE = "ka"
    ERROR = "error"
    COMPLETE = "complete"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    SUBSCRIBED = "subscribed"
    DEGRADED = "degraded"


class Lifecycle(str, Enum):
    """Whether the caller still wants a record connected."""

    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class ConnectOptions:
    """What to subscribe to and where to deliver it.

    ``variables`` defaults to ``{"serial": serial}``; the delivered payload
    is ``data[result_key]`` of each data frame (the whole ``data`` object
    when ``result_key`` is ``None``).
    """

    serial: str | None = None
    on_data_update: DataCallback | None = None
    query: str = ROBOT_STATE_SUBSCRIPTION
    result_key: str | None = ROBOT_STATE_RESULT_KEY
    variables: dict[str, object] | None = None


@dataclass(eq=False)
class ConnectionRecord:
    """Per-device connection bookkeeping, owned by the manager."""

    device_id: str
    options: ConnectOptions
    socket: aiohttp.ClientWebSocketResponse | None = None
    state: ConnectionState = ConnectionState.DISCONNECTED
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    reconnect_attempts: int = 0
    last_message_at: float = 0.0
    connected_at: float | None = None
    subscription_id: str = "1"
    connect_task: asyncio.Task[ConnectionRecord] | None = field(default=None, repr=False)
    reader_task: asyncio.Task[None] | None = field(default=None, repr=False)
    heartbeat_task: asyncio.Task[None] | None = field(default=None, repr=False)
    reconnect_task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def is_live(self) -> bool:
        return (
            self.socket is not None
            and not self.socket.closed
            and self.state in (ConnectionState.SUBSCRIBED, ConnectionState.DEGRADED)
        )

    @property
    def reconnect_pending(self) -> bool:
        return self.reconnect_task is not None and not self.reconnect_task.done()


class EventKind(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    DATA = "data"
    ERROR = "error"


@dataclass(frozen=True)
class RealtimeEvent:
    kind: EventKind
    device_id: str
    update: DataUpdate | None = None
    detail: object = None
    timestamp: float = field(default_factory=time.time)


Listener = Callable[[RealtimeEvent], Awaitable[None] | None]
AuthErrorHandler = Callable[[AuthenticationError], Awaitable[None] | None]


def compute_backoff_delay(
    attempt: int,
    *,
    base: float = RECONNECT_BASE_DELAY,
    cap: float = RECONNECT_MAX_DELAY,
    max_jitter: float = RECONNECT_MAX_JITTER,
    rand: Callable[[], float] = random.random,
) -> float:
    """``min(cap, base * 2**attempt)`` plus ``[0, max_jitter)`` seconds of jitter."""
    exp = base * (2 ** min(max(attempt, 0), 32))
    return min(cap, exp) + rand() * max_jitter


class RealtimeConnectionManager:
    """Owns every realtime connection, keyed by device id.

    Args:
        auth: Source of identity tokens; stale sessions are refreshed
            before every (re)connect.
        session: Shared :class:`aiohttp.ClientSession`.  When omitted the
            manager opens one and closes it in :meth:`close_all`.
        on_auth_error: Called when a reconnect fails for authentication
            reasons.  Reconnection for that device stops; the owner is
            expected to tear down credential-dependent state.
        clock: Monotonic clock used for liveness bookkeeping.
    """

    def __init__(
        self,
        auth: AuthSessionManager,
        *,
        session: aiohttp.ClientSession | None = None,
        url: str = LR4_REALTIME_URL,
        host: str = LR4_REALTIME_HOST,
        connect_timeout: float = CONNECT_TIMEOUT,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        idle_timeout: float = HEARTBEAT_IDLE_TIMEOUT,
        close_timeout: float = CLOSE_TIMEOUT,
        reconnect_base_delay: float = RECONNECT_BASE_DELAY,
        reconnect_max_delay: float = RECONNECT_MAX_DELAY,
        reconnect_max_jitter: float = RECONNECT_MAX_JITTER,
        on_auth_error: AuthErrorHandler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._auth = auth
        self._session = session
        self._owned_session: aiohttp.ClientSession | None = None
        self._url = url
        self._host = host
        self._connect_timeout = connect_timeout
        self._heartbeat_interval = heartbeat_interval
        self._idle_timeout = idle_timeout
        self._close_timeout = close_timeout
        self._backoff = functools.partial(
            compute_backoff_delay,
            base=reconnect_base_delay,
            cap=reconnect_max_delay,
            max_jitter=reconnect_max_jitter,
        )
        self._on_auth_error = on_auth_error
        self._clock = clock
        self._connections: dict[str, ConnectionRecord] = {}
        self._listeners: list[Listener] = []
        self._background: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def device_ids(self) -> list[str]:
        return list(self._connections)

    def get(self, device_id: str) -> ConnectionRecord | None:
        return self._connections.get(device_id)

    def is_connected(self, device_id: str) -> bool:
        record = self._connections.get(device_id)
        return record is not None and record.is_live

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Receive :class:`RealtimeEvent` for every device.  Returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # Connect / close
    # ------------------------------------------------------------------

    async def connect(
        self, device_id: str, options: ConnectOptions | None = None
    ) -> ConnectionRecord:
        """Return a live subscription for *device_id*, opening one if needed.

        Concurrent calls for the same device share one attempt.  A failed
        first connect raises and leaves nothing registered; a failed connect
        on a record that already existed hands it back to the reconnect
        schedule before raising.

        Raises:
            TransportError: Socket failure, or no ``connection_ack`` within
                the connect timeout.
            TokenError: Credentials could not be refreshed.
        """
        record = self._connections.get(device_id)
        if record is not None and record.is_live:
            _LOGGER.debug("Realtime connection already open for %s", device_id)
            return record

        created = record is None
        if record is None:
            record = ConnectionRecord(device_id, options or ConnectOptions(serial=device_id))
            self._connections[device_id] = record
        elif options is not None:
            record.options = options

        if record.connect_task is None or record.connect_task.done():
            _cancel(record.reconnect_task)
            record.reconnect_task = None
            self._start_open(record)
        task = record.connect_task
        assert task is not None

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled() and record.lifecycle is not Lifecycle.ACTIVE:
                raise TransportError(f"Connection for {device_id} was closed while connecting") from None
            raise
        except (TransportError, AuthenticationError):
            if self._is_current(record):
                if created:
                    del self._connections[device_id]
                    record.lifecycle = Lifecycle.CLOSED
                else:
                    self._schedule_reconnect(record)
            raise

    async def close(self, device_id: str) -> None:
        """Close *device_id*'s connection and forget it.  No reconnect follows."""
        record = self._connections.pop(device_id, None)
        if record is None:
            return
        record.lifecycle = Lifecycle.CLOSING
        # Synchronously, before any await, so no stale timer can fire later.
        self._cancel_tasks(record)
        ws, record.socket = record.socket, None
        record.state = ConnectionState.DISCONNECTED
        if ws is not None:
            _LOGGER.info("Closing realtime connection for %s", device_id)
            await self._close_socket(ws, message=b"Device cleanup")
        _cancel(record.reader_task)
        record.lifecycle = Lifecycle.CLOSED
        await self._emit(RealtimeEvent(EventKind.DISCONNECTED, device_id, detail="closed"))

    async def close_all(self) -> None:
        """Close every connection and the owned HTTP session.  Idempotent."""
        if self._connections:
            _LOGGER.info("Closing all realtime connections")
        # Mark everything first so no reconnect slips in while we await.
        for record in self._connections.values():
            record.lifecycle = Lifecycle.CLOSING
            self._cancel_tasks(record)
        for device_id in list(self._connections):
            await self.close(device_id)
        for task in list(self._background):
            task.cancel()
        if self._owned_session is not None:
            session, self._owned_session = self._owned_session, None
            await session.close()

    # ------------------------------------------------------------------
    # Opening a connection
    # ------------------------------------------------------------------

    def _start_open(self, record: ConnectionRecord) -> None:
        task = asyncio.create_task(self._open(record), name=f"whiskerlink-connect-{record.device_id}")
        task.add_done_callback(_consume_exception)
        record.connect_task = task

    async def _open(self, record: ConnectionRecord) -> ConnectionRecord:
        device_id = record.device_id
        tokens = await self._auth.get_tokens()
        if not self._is_current(record):
            raise TransportError(f"Connection for {device_id} was closed while connecting")
        session = self._get_session()
        url = self._build_url(tokens.id_token)

        record.state = ConnectionState.CONNECTING
        _LOGGER.info("Opening realtime connection for %s", device_id)
        ws: aiohttp.ClientWebSocketResponse | None = None
        try:
            async with asyncio.timeout(self._connect_timeout):
                ws = await session.ws_connect(url, protocols=(REALTIME_SUBPROTOCOL,))
                record.state = ConnectionState.HANDSHAKING
                await ws.send_str(json.dumps({"type": FrameType.CONNECTION_INIT, "payload": {}}))
                await self._await_ack(record, ws)
                if not self._is_current(record):
                    raise TransportError(f"Connection for {device_id} closed during handshake")
                await ws.send_str(json.dumps(self._start_frame(record, tokens.id_token)))
        except TransportError:
            await self._abandon(record, ws)
            raise
        except TimeoutError as e:
            await self._abandon(record, ws)
            raise TransportError(
                f"Realtime connection timeout for {device_id}", endpoint=self._url
            ) from e
        except (aiohttp.ClientError, OSError) as e:
            await self._abandon(record, ws)
            raise TransportError(
                f"Realtime connection failed for {device_id}: {e}", endpoint=self._url
            ) from e
        except BaseException:
            await self._abandon(record, ws)
            raise

        record.socket = ws
        record.state = ConnectionState.SUBSCRIBED
        record.reconnect_attempts = 0
        record.last_message_at = self._clock()
        record.connected_at = self._clock()
        reader = asyncio.create_task(self._read_loop(record, ws), name=f"whiskerlink-read-{device_id}")
        reader.add_done_callback(functools.partial(self._on_reader_done, record, ws))
        record.reader_task = reader
        record.heartbeat_task = asyncio.create_task(
            self._heartbeat(record, ws), name=f"whiskerlink-heartbeat-{device_id}"
        )
        _LOGGER.info("Realtime subscription started for %s", device_id)
        await self._emit(RealtimeEvent(EventKind.CONNECTED, device_id, detail={"url": self._url}))
        return record

    async def _await_ack(self, record: ConnectionRecord, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Consume frames until ``connection_ack``.  Anything else is dropped."""
        while True:
            msg = await ws.receive()
            if msg.type in _CLOSED_TYPES or msg.type == aiohttp.WSMsgType.ERROR:
                raise TransportError(f"Socket closed during handshake for {record.device_id}")
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            record.last_message_at = self._clock()
            frame = _parse_frame(msg.data)
            kind = frame.get("type") if frame else None
            if kind == FrameType.CONNECTION_ACK:
                _LOGGER.debug("Realtime connection acknowledged for %s", record.device_id)
                return
            if kind == FrameType.CONNECTION_ERROR:
                raise TransportError(
                    f"Realtime connection rejected for {record.device_id}: "
                    f"{redact(frame.get('payload') if frame else None)}"
                )
            if kind != FrameType.KEEP_ALIVE:
                _LOGGER.debug(
                    "Dropping %s frame for %s received before acknowledgement",
                    kind,
                    record.device_id,
                )

    async def _abandon(
        self, record: ConnectionRecord, ws: aiohttp.ClientWebSocketResponse | None
    ) -> None:
        record.state = ConnectionState.DISCONNECTED
        if ws is not None:
            await self._close_socket(ws, message=b"Handshake failed")

    def _build_url(self, id_token: str) -> str:
        header = {"Authorization": f"Bearer {id_token}", "host": self._host}
        params = {
            "header": base64.b64encode(json.dumps(header).encode()).decode("ascii"),
            "payload": base64.b64encode(b"{}").decode("ascii"),
        }
        return f"{self._url}?{urlencode(params)}"

    def _start_frame(self, record: ConnectionRecord, id_token: str) -> dict[str, object]:
        options = record.options
        variables = options.variables
        if variables is None:
            variables = {"serial": options.serial or record.device_id}
        return {
            "id": record.subscription_id,
            "type": FrameType.START,
            "payload": {
                "data": json.dumps({"query": options.query, "variables": variables}),
                "extensions": {
                    "authorization": {"Authorization": f"Bearer {id_token}", "host": self._host}
                },
            },
        }

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is not None:
            return self._session
        if self._owned_session is None or self._owned_session.closed:
            self._owned_session = aiohttp.ClientSession()
        return self._owned_session

    # ------------------------------------------------------------------
    # Live socket
    # ------------------------------------------------------------------

    async def _read_loop(self, record: ConnectionRecord, ws: aiohttp.ClientWebSocketResponse) -> None:
        while True:
            msg = await ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                await self._handle_frame(record, msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                _LOGGER.warning("Realtime socket error for %s: %s", record.device_id, ws.exception())
                return
            elif msg.type in _CLOSED_TYPES:
                return
            else:
                record.last_message_at = self._clock()

    async def _handle_frame(self, record: ConnectionRecord, raw: str) -> None:
        record.last_message_at = self._clock()
        device_id = record.device_id
        frame = _parse_frame(raw)
        if frame is None:
            _LOGGER.warning("Ignoring unparseable realtime frame for %s", device_id)
            return

        kind = frame.get("type")
        if kind == FrameType.KEEP_ALIVE:
            return
        if kind == FrameType.DATA:
            if frame.get("id") not in (None, record.subscription_id):
                _LOGGER.debug("Dropping data frame for unknown subscription %s", frame.get("id"))
                return
            payload = _extract_payload(frame, record.options.result_key)
            if payload is None:
                _LOGGER.debug("Data frame for %s carried no payload", device_id)
                return
            if record.state is ConnectionState.DEGRADED:
                _LOGGER.info("Realtime subscription for %s recovered", device_id)
                record.state = ConnectionState.SUBSCRIBED
            _LOGGER.debug("Realtime data received for %s", device_id)
            await self._deliver(record, payload)
        elif kind == FrameType.ERROR:
            _LOGGER.error(
                "Realtime subscription error for %s: %s", device_id, redact(frame.get("payload"))
            )
            record.state = ConnectionState.DEGRADED
            await self._emit(RealtimeEvent(EventKind.ERROR, device_id, detail=frame.get("payload")))
        elif kind == FrameType.START_ACK:
            _LOGGER.debug("Realtime subscription acknowledged for %s", device_id)
        elif kind in (FrameType.CONNECTION_ACK, FrameType.COMPLETE):
            _LOGGER.info("Realtime %s frame for %s", kind, device_id)
        else:
            _LOGGER.warning("Received unknown realtime frame type %r for %s", kind, device_id)

    async def _deliver(self, record: ConnectionRecord, payload: dict[str, object]) -> None:
        update = DataUpdate(record.device_id, payload, DataSource.REALTIME)
        callback = record.options.on_data_update
        if callback is not None:
            try:
                await maybe_await(callback(payload, DataSource.REALTIME))
            except Exception:
                _LOGGER.exception("Data callback failed for %s", record.device_id)
        await self._emit(RealtimeEvent(EventKind.DATA, record.device_id, update=update))

    def _on_reader_done(
        self,
        record: ConnectionRecord,
        ws: aiohttp.ClientWebSocketResponse,
        task: asyncio.Task[None],
    ) -> None:
        reason = "connection_closed"
        if task.cancelled():
            reason = "terminated"
        elif task.exception() is not None:
            reason = f"error: {task.exception()}"
            _LOGGER.error("Realtime reader for %s crashed", record.device_id, exc_info=task.exception())
        if record.socket is not ws:
            return  # closed by the caller, or already replaced

        record.socket = None
        record.state = ConnectionState.DISCONNECTED
        _cancel(record.heartbeat_task)
        record.heartbeat_task = None
        _LOGGER.warning("Realtime connection for %s lost (%s)", record.device_id, reason)
        self._spawn(self._emit(RealtimeEvent(EventKind.DISCONNECTED, record.device_id, detail=reason)))
        if not ws.closed:
            self._spawn(self._close_socket(ws))
        if self._is_current(record):
            self._schedule_reconnect(record)
        else:
            _LOGGER.info("Connection %s was closed by the caller, skipping reconnect", record.device_id)

    async def _heartbeat(self, record: ConnectionRecord, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Force-close the socket when nothing arrived for ``idle_timeout``."""
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            if record.socket is not ws or ws.closed:
                return
            idle = self._clock() - record.last_message_at
            if idle > self._idle_timeout:
                _LOGGER.warning(
                    "Heartbeat stale for %s (%.0fs since last message), forcing reconnect",
                    record.device_id,
                    idle,
                )
                # Detach so the disconnect path does not cancel this close midway.
                record.heartbeat_task = None
                await self._close_socket(ws, code=4000, message=b"Heartbeat timeout")
                if record.socket is ws:
                    _cancel(record.reader_task)
                return

    async def _close_socket(
        self, ws: aiohttp.ClientWebSocketResponse, *, code: int = 1000, message: bytes = b""
    ) -> None:
        """Close gracefully; give up after ``close_timeout``."""
        if ws.closed:
            return
        try:
            await asyncio.wait_for(ws.close(code=code, message=message), self._close_timeout)
        except (TimeoutError, aiohttp.ClientError, OSError, RuntimeError) as e:
            _LOGGER.debug("Graceful websocket close failed: %r", e)

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    def _schedule_reconnect(self, record: ConnectionRecord) -> None:
        if record.lifecycle is not Lifecycle.ACTIVE or record.reconnect_pending:
            return
        delay = self._backoff(record.reconnect_attempts)
        record.reconnect_attempts += 1
        _LOGGER.warning(
            "Scheduling realtime reconnect for %s in %.1fs (attempt %d)",
            record.device_id,
            delay,
            record.reconnect_attempts,
        )
        record.reconnect_task = asyncio.create_task(
            self._reconnect(record, delay), name=f"whiskerlink-reconnect-{record.device_id}"
        )

    async def _reconnect(self, record: ConnectionRecord, delay: float) -> None:
        # Stays in ``record.reconnect_task`` until the attempt settles so
        # that close() can cancel it at any await below.
        error: Exception | None = None
        try:
            await asyncio.sleep(delay)
            if not self._is_current(record):
                return
            if not self._auth.is_valid():
                await self._auth.refresh()
                if not self._is_current(record):
                    return
            if record.connect_task is None or record.connect_task.done():
                self._start_open(record)
            assert record.connect_task is not None
            await asyncio.shield(record.connect_task)
        except Exception as e:
            error = e
        finally:
            if record.reconnect_task is asyncio.current_task():
                record.reconnect_task = None

        if not self._is_current(record):
            return
        if error is None:
            # The new socket may have dropped while this task still held the slot.
            if not record.is_live:
                self._schedule_reconnect(record)
            return
        if isinstance(error, AuthenticationError):
            _LOGGER.error("Realtime reconnect for %s stopped: %s", record.device_id, error)
            record.state = ConnectionState.DISCONNECTED
            if self._on_auth_error is not None:
                await maybe_await(self._on_auth_error(error))
        else:
            _LOGGER.error("Reconnect attempt failed for %s: %s", record.device_id, error)
            self._schedule_reconnect(record)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _is_current(self, record: ConnectionRecord) -> bool:
        return record.lifecycle is Lifecycle.ACTIVE and self._connections.get(record.device_id) is record

    def _cancel_tasks(self, record: ConnectionRecord) -> None:
        for name in ("reconnect_task", "heartbeat_task", "connect_task"):
            _cancel(getattr(record, name))
            setattr(record, name, None)

    async def _emit(self, event: RealtimeEvent) -> None:
        for listener in list(self._listeners):
            try:
                await maybe_await(listener(event))
            except Exception:
                _LOGGER.exception("Realtime listener failed for %s event", event.kind.value)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _cancel(task: asyncio.Task[object] | None) -> None:
    if task is not None and not task.done() and task is not asyncio.current_task():
        task.cancel()


def _consume_exception(task: asyncio.Task[object]) -> None:
    if not task.cancelled():
        task.exception()


def _parse_frame(raw: object) -> dict[str, object] | None:
    try:
        frame = json.loads(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return frame if isinstance(frame, dict) else None


def _extract_payload(frame: dict[str, object], result_key: str | None) -> dict[str, object] | None:
    payload = frame.get("payload")
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if not isinstance(data, dict):
        return None
    if result_key is None:
        return data
    result = data.get(result_key)
    return result if isinstance(result, dict) else None
