"""Whisker cloud client.

Ties the session layer together for one account: credentials
(:class:`~whiskerlink.auth.AuthSessionManager`), GraphQL requests
(:class:`~whiskerlink.request.ResilientRequestClient`), realtime robot
subscriptions (:class:`~whiskerlink.realtime.RealtimeConnectionManager`) and
shared pet polling (:class:`~whiskerlink.polling.PollingCoordinator`)::

    import asyncio
    from whiskerlink import Client

    client = await Client.login("email@example.com", "password")
    robots = await client.fetch_robots()

    await client.watch_robot(robots[0]["serial"], on_robot)
    client.register_pet(pet_id, on_pet)
    ...
    await client.close()

A robot reporting a new ``catWeight`` triggers a pet poll shortly after, so
pet weights follow a weighing without waiting for the next interval.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

import aiohttp

from whiskerlink._constants import LR4_ENDPOINT, PET_ENDPOINT, POLL_INTERVAL
from whiskerlink._utils import maybe_await
from whiskerlink.auth import AuthSessionManager
from whiskerlink.errors import AuthenticationError, TokenError
from whiskerlink.models import DataCallback, DataSource
from whiskerlink.polling import PollingCoordinator
from whiskerlink.queries import (
    PETS_BY_USER,
    PETS_RESULT_KEY,
    ROBOTS_BY_USER,
    ROBOTS_RESULT_KEY,
)
from whiskerlink.realtime import ConnectionRecord, ConnectOptions, RealtimeConnectionManager
from whiskerlink.request import ResilientRequestClient
from whiskerlink.store import CredentialStore, FileCredentialStore

_LOGGER = logging.getLogger(__name__)


class Client:
    """Whisker account client.

    Use :meth:`login` to authenticate, or :meth:`from_saved` to resume a
    session persisted by an earlier login.

    Args:
        auth: Session manager holding the account's credentials.
        session: Shared :class:`aiohttp.ClientSession` for every component.
        sign_out_when_idle: Sign out once the last watched robot and the
            last registered pet are gone.
        on_auth_error: Called after credentials became unusable and every
            realtime connection and poll was stopped.
        poll_interval: Seconds between scheduled pet polls.
    """

    def __init__(
        self,
        auth: AuthSessionManager,
        *,
        session: aiohttp.ClientSession | None = None,
        sign_out_when_idle: bool = False,
        on_auth_error: Callable[[AuthenticationError], Awaitable[None] | None] | None = None,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self._auth = auth
        self._sign_out_when_idle = sign_out_when_idle
        self.on_auth_error = on_auth_error
        self._requests = ResilientRequestClient(auth, session=session)
        self._realtime = RealtimeConnectionManager(
            auth, session=session, on_auth_error=self._handle_auth_error
        )
        self._pets = PollingCoordinator(
            self.fetch_pets,
            key_field="petId",
            interval=poll_interval,
            on_empty=self._maybe_sign_out,
            on_auth_error=self._handle_auth_error,
        )
        self._closed = False

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    async def login(
        cls,
        email: str,
        password: str,
        *,
        store: CredentialStore | None = None,
        session: aiohttp.ClientSession | None = None,
        **kwargs: object,
    ) -> Client:
        """Authenticate and return a new client.

        Credentials go to *store* (in memory by default); call
        :meth:`save_credentials` to persist them for :meth:`from_saved`.
        """
        auth = AuthSessionManager(store=store, session=session)
        await auth.login(email, password)
        return cls(auth, session=session, **kwargs)  # type: ignore[arg-type]

    @classmethod
    def from_saved(
        cls,
        *,
        store: CredentialStore | None = None,
        session: aiohttp.ClientSession | None = None,
        **kwargs: object,
    ) -> Client:
        """Resume the session saved by :meth:`save_credentials`.

        Refreshed tokens are written back to the same store.

        Raises :class:`FileNotFoundError` if no usable credentials are stored.
        """
        store = store if store is not None else FileCredentialStore()
        auth = AuthSessionManager(store=store, session=session)
        if not auth.restore():
            raise FileNotFoundError(
                f"No saved credentials at {getattr(store, 'path', store)}. Call Client.login() first."
            )
        return cls(auth, session=session, **kwargs)  # type: ignore[arg-type]

    def save_credentials(self, store: CredentialStore | None = None) -> None:
        """Persist the current tokens, by default to ``~/.config/whiskerlink/credentials.json``."""
        tokens = self._auth.tokens
        if tokens is None:
            raise TokenError("Not signed in; nothing to save.")
        (store if store is not None else FileCredentialStore()).set(tokens)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def auth(self) -> AuthSessionManager:
        return self._auth

    @property
    def requests(self) -> ResilientRequestClient:
        return self._requests

    @property
    def realtime(self) -> RealtimeConnectionManager:
        return self._realtime

    @property
    def pets(self) -> PollingCoordinator:
        return self._pets

    @property
    def user_id(self) -> str:
        """Whisker user id of the signed-in account."""
        user_id = self._auth.user_id
        if user_id is None:
            raise TokenError("Identity token carries no user id. Log in again.")
        return user_id

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def fetch_robots(self) -> list[dict[str, object]]:
        """Litter-Robot 4 units on the account."""
        await self._auth.get_tokens()
        data = await self._requests.graphql(LR4_ENDPOINT, ROBOTS_BY_USER, {"userId": self.user_id})
        return _as_list(data.get(ROBOTS_RESULT_KEY))

    async def fetch_pets(self) -> list[dict[str, object]]:
        """Pet profiles on the account."""
        await self._auth.get_tokens()
        data = await self._requests.graphql(PET_ENDPOINT, PETS_BY_USER, {"userId": self.user_id})
        return _as_list(data.get(PETS_RESULT_KEY))

    # ------------------------------------------------------------------
    # Robots (realtime)
    # ------------------------------------------------------------------

    async def watch_robot(
        self, serial: str, callback: DataCallback | None = None
    ) -> ConnectionRecord:
        """Subscribe to realtime state of the robot with *serial*.

        *callback* receives ``(state, DataSource.REALTIME)`` for every update.
        """

        async def on_update(payload: dict[str, object], source: DataSource) -> None:
            weight = payload.get("catWeight")
            if isinstance(weight, (int, float)) and weight > 0:
                self._pets.notify_external_event(weight, serial)
            if callback is not None:
                await maybe_await(callback(payload, source))

        return await self._realtime.connect(
            serial, ConnectOptions(serial=serial, on_data_update=on_update)
        )

    async def unwatch_robot(self, serial: str) -> None:
        await self._realtime.close(serial)
        await self._maybe_sign_out()

    # ------------------------------------------------------------------
    # Pets (polling)
    # ------------------------------------------------------------------

    def register_pet(self, pet_id: str, callback: DataCallback) -> None:
        """Receive the profile of *pet_id* from every pet poll."""
        self._pets.register(pet_id, pet_id, callback)

    async def unregister_pet(self, pet_id: str) -> None:
        await self._pets.unregister(pet_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def sign_out(self) -> None:
        """Stop every connection and poll, then forget the session."""
        await self._stop_consumers()
        self._auth.sign_out()

    async def close(self) -> None:
        """Release sockets, timers and the owned HTTP session.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self._realtime.close_all()
        await self._pets.close()
        await self._auth.close()

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _stop_consumers(self) -> None:
        await self._realtime.close_all()
        for pet_id in self._pets.device_ids:
            await self._pets.unregister(pet_id)

    async def _handle_auth_error(self, error: AuthenticationError) -> None:
        _LOGGER.error("Credentials are no longer usable, stopping updates: %s", error)
        await self._stop_consumers()
        if self.on_auth_error is not None:
            await maybe_await(self.on_auth_error(error))

    async def _maybe_sign_out(self) -> None:
        if not self._sign_out_when_idle:
            return
        if self._realtime.device_ids or self._pets.device_ids:
            return
        _LOGGER.info("No robots or pets left, signing out")
        self._auth.sign_out()


def _as_list(value: object) -> list[dict[str, object]]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]
