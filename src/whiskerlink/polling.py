"""Shared interval polling for devices without a realtime channel.

Pets have no subscription of their own, so one account-wide query feeds all
of them.  The coordinator runs a single poll timer for every registered pet,
splits each result list by pet id and delivers the matching entry to each
registration.  Externally observed events (a robot reporting a new cat
weight) trigger debounced out-of-band polls.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from whiskerlink._constants import (
    CATCH_UP_DEBOUNCE,
    EXTERNAL_EVENT_DEBOUNCE,
    POLL_INTERVAL,
    REGISTRATION_DEBOUNCE,
)
from whiskerlink._utils import maybe_await
from whiskerlink.errors import AuthenticationError
from whiskerlink.models import DataCallback, DataSource

_LOGGER = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[list[dict[str, object]]]]
PollCompleteFn = Callable[[list[dict[str, object]]], Awaitable[None] | None]


@dataclass
class Registration:
    device_id: str
    correlation_key: str
    callback: DataCallback


class PollingCoordinator:
    """One poll timer for every registered device.

    Args:
        fetch: Returns the full list of entries for the account.
        key_field: Entry field holding the correlation key.
        interval: Seconds between scheduled polls.
        start_delay: Debounce before the timer starts after a registration,
            so a burst of registrations yields one immediate poll.
        catch_up_delay: Debounce for the catch-up poll that serves devices
            registered while polling is already running.
        external_debounce: Quiet period before an external event poll.
        on_empty: Called when the last device unregisters.
        on_auth_error: Called when a poll fails on credentials.
    """

    def __init__(
        self,
        fetch: FetchFn,
        *,
        key_field: str = "petId",
        interval: float = POLL_INTERVAL,
        start_delay: float = REGISTRATION_DEBOUNCE,
        catch_up_delay: float = CATCH_UP_DEBOUNCE,
        external_debounce: float = EXTERNAL_EVENT_DEBOUNCE,
        on_empty: Callable[[], Awaitable[None] | None] | None = None,
        on_auth_error: Callable[[AuthenticationError], Awaitable[None] | None] | None = None,
    ) -> None:
        self._fetch = fetch
        self._key_field = key_field
        self._interval = interval
        self._start_delay = start_delay
        self._catch_up_delay = catch_up_delay
        self._external_debounce = external_debounce
        self._on_empty = on_empty
        self._on_auth_error = on_auth_error

        self._registrations: dict[str, Registration] = {}
        self._interval_task: asyncio.Task[None] | None = None
        self._start_task: asyncio.Task[None] | None = None
        self._catch_up_task: asyncio.Task[None] | None = None
        self._external_task: asyncio.Task[None] | None = None
        self._polls: set[asyncio.Task[object]] = set()
        self._pending_complete: list[PollCompleteFn] = []
        self._last_values: dict[str, object] = {}
        self._in_flight = False
        self._closed = False

    @property
    def device_ids(self) -> list[str]:
        return list(self._registrations)

    @property
    def is_polling(self) -> bool:
        return self._interval_task is not None and not self._interval_task.done()

    @property
    def poll_in_flight(self) -> bool:
        return self._in_flight

    def register(self, device_id: str, correlation_key: str, callback: DataCallback) -> None:
        """Add a registration and make sure a poll reaches it soon.

        Registering a device id that is already present does nothing.
        """
        if self._closed:
            raise RuntimeError("PollingCoordinator is closed")
        if device_id in self._registrations:
            _LOGGER.debug("%s already registered for polling", device_id)
            return
        self._registrations[device_id] = Registration(device_id, str(correlation_key), callback)
        _LOGGER.debug(
            "Registered %s for polling (key %s, %d registered)",
            device_id,
            correlation_key,
            len(self._registrations),
        )

        if self.is_polling:
            # Already running: the next tick may be minutes away.
            _cancel(self._catch_up_task)
            self._catch_up_task = asyncio.create_task(
                self._debounced(self._catch_up_delay, "_catch_up_task", DataSource.POLLED),
                name="whiskerlink-poll-catch-up",
            )
            return

        _cancel(self._start_task)
        self._start_task = asyncio.create_task(self._start_after_debounce(), name="whiskerlink-poll-start")

    async def unregister(self, device_id: str) -> None:
        """Remove a registration; the last one out stops polling."""
        if self._registrations.pop(device_id, None) is None:
            return
        _LOGGER.debug("Unregistered %s from polling (%d left)", device_id, len(self._registrations))
        if self._registrations:
            return
        _LOGGER.info("No devices left to poll, stopping")
        self._stop_timers()
        if self._on_empty is not None:
            await maybe_await(self._on_empty())

    async def execute_poll(
        self, source: DataSource = DataSource.POLLED
    ) -> list[dict[str, object]] | None:
        """Fetch once and fan the entries out to their registrations.

        Returns the fetched list, ``[]`` when the fetch failed, or ``None``
        when skipped because another poll is in flight.
        """
        if self._in_flight:
            _LOGGER.debug("Poll already in flight, skipping")
            return None
        self._in_flight = True
        try:
            try:
                entries = await self._fetch()
            except AuthenticationError as e:
                _LOGGER.error("Poll failed on credentials: %s", e)
                if self._on_auth_error is not None:
                    await maybe_await(self._on_auth_error(e))
                return []
            except Exception as e:
                _LOGGER.error("Poll failed: %s", e)
                return []
            entries = [e for e in entries or [] if isinstance(e, dict)]
            await self._distribute(entries, source)
            return entries
        finally:
            self._in_flight = False

    def notify_external_event(
        self,
        value: object,
        source_id: str,
        on_complete: PollCompleteFn | None = None,
    ) -> bool:
        """Schedule a debounced poll because *source_id* reported *value*.

        Repeats of the last value seen from the same source are ignored.
        Returns whether a poll was (re)scheduled.
        """
        if self._closed or not self._registrations:
            return False
        if source_id in self._last_values and self._last_values[source_id] == value:
            return False
        self._last_values[source_id] = value
        _LOGGER.debug("External event from %s (%r), scheduling poll", source_id, value)
        if on_complete is not None:
            self._pending_complete.append(on_complete)
        _cancel(self._external_task)
        self._external_task = asyncio.create_task(
            self._external_poll(), name="whiskerlink-poll-external"
        )
        return True

    async def close(self) -> None:
        """Stop every timer and forget all registrations.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._stop_timers()
        self._registrations.clear()
        self._pending_complete.clear()
        self._last_values.clear()
        polls = list(self._polls)
        for task in polls:
            task.cancel()
        if polls:
            await asyncio.gather(*polls, return_exceptions=True)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    async def _start_after_debounce(self) -> None:
        await asyncio.sleep(self._start_delay)
        self._start_task = None
        if not self._registrations or self.is_polling:
            return
        _LOGGER.info("Starting polling every %ss for %d devices", self._interval, len(self._registrations))
        self._interval_task = asyncio.create_task(self._interval_loop(), name="whiskerlink-poll-interval")

    async def _interval_loop(self) -> None:
        while self._registrations:
            await self._run_poll(DataSource.POLLED)
            await asyncio.sleep(self._interval)

    async def _debounced(self, delay: float, slot: str, source: DataSource) -> None:
        await asyncio.sleep(delay)
        # Detach first: a new trigger must not cancel the poll itself.
        setattr(self, slot, None)
        await self._run_poll(source)

    async def _external_poll(self) -> None:
        await asyncio.sleep(self._external_debounce)
        self._external_task = None
        waiters, self._pending_complete = self._pending_complete, []
        result = await self._run_poll(DataSource.EXTERNAL)
        if self._closed or not self._registrations:
            _LOGGER.debug("Polling stopped during external poll, dropping %d completions", len(waiters))
            return
        for on_complete in waiters:
            try:
                await maybe_await(on_complete(result or []))
            except Exception:
                _LOGGER.exception("External event completion callback failed")

    async def _run_poll(self, source: DataSource) -> list[dict[str, object]] | None:
        """Run :meth:`execute_poll` as a tracked task so :meth:`close` can stop it."""
        task = asyncio.ensure_future(self.execute_poll(source))
        self._polls.add(task)
        task.add_done_callback(self._polls.discard)
        return await asyncio.shield(task)

    async def _distribute(self, entries: list[dict[str, object]], source: DataSource) -> None:
        by_key = {str(e.get(self._key_field)): e for e in entries if e.get(self._key_field) is not None}
        for registration in list(self._registrations.values()):
            entry = by_key.get(registration.correlation_key)
            if entry is None:
                continue
            # A callback may have unregistered this device while we awaited.
            if self._registrations.get(registration.device_id) is not registration:
                continue
            try:
                await maybe_await(registration.callback(entry, source))
            except Exception:
                _LOGGER.exception("Poll callback failed for %s", registration.device_id)

    def _stop_timers(self) -> None:
        for name in ("_start_task", "_catch_up_task", "_external_task", "_interval_task"):
            _cancel(getattr(self, name))
            setattr(self, name, None)


def _cancel(task: asyncio.Task[object] | None) -> None:
    if task is not None and not task.done() and task is not asyncio.current_task():
        task.cancel()
