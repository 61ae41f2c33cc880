"""Credential lifecycle for the Whisker cloud.

:class:`AuthSessionManager` owns the :class:`~whiskerlink.models.CredentialTriple`
issued by the vendor's Cognito user pool.  It logs in, refreshes (at most one
refresh in flight, shared by every caller), answers validity checks and hands
out request headers::

    auth = AuthSessionManager(store=FileCredentialStore())
    if not auth.restore():
        await auth.login("email@example.com", "password")
    headers = await auth.get_headers()  # refreshes first when stale
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from datetime import timedelta

import aiohttp

from whiskerlink._constants import (
    APP_HEADERS,
    COGNITO_CLIENT_ID,
    COGNITO_CLIENT_SECRET,
    COGNITO_USER_POOL_ID,
    HTTP_TIMEOUT,
    TOKEN_EXPIRY_BUFFER,
)
from whiskerlink._crypto import decode_jwt_claims, decode_jwt_exp, secret_hash
from whiskerlink._utils import client_session, maybe_await
from whiskerlink.errors import (
    ApiError,
    AuthenticationError,
    ChallengeRequiredError,
    TokenError,
    TransportError,
)
from whiskerlink.models import CredentialTriple
from whiskerlink.store import CredentialStore, MemoryCredentialStore

_LOGGER = logging.getLogger(__name__)

TokensCallback = Callable[[CredentialTriple], Awaitable[None] | None]

_COGNITO_TARGET = "AWSCognitoIdentityProviderService.InitiateAuth"


class AuthSessionManager:
    """Owns the credential triple and every operation that changes it.

    Args:
        tokens: Initial triple (or its serialized dict), e.g. from a hub's
            settings.  Incomplete triples raise :class:`TokenError`.
        store: Where successful logins and refreshes are persisted.
            Defaults to an in-memory store.
        on_tokens_refreshed: Called with the new triple after every
            successful login or refresh.  May be a coroutine function.
        session: Shared :class:`aiohttp.ClientSession`; a short-lived one
            is opened per call when omitted.
        expiry_buffer: Seconds before identity-token expiry at which the
            session is already considered invalid.
        clock: Returns the current Unix time.
    """

    def __init__(
        self,
        tokens: CredentialTriple | Mapping[str, object] | None = None,
        *,
        store: CredentialStore | None = None,
        on_tokens_refreshed: TokensCallback | None = None,
        session: aiohttp.ClientSession | None = None,
        user_pool_id: str = COGNITO_USER_POOL_ID,
        client_id: str = COGNITO_CLIENT_ID,
        client_secret: str | None = COGNITO_CLIENT_SECRET,
        expiry_buffer: float = TOKEN_EXPIRY_BUFFER,
        timeout: float = HTTP_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if tokens is not None and not isinstance(tokens, CredentialTriple):
            tokens = CredentialTriple.from_dict(tokens)
        self._tokens: CredentialTriple | None = tokens
        self._store: CredentialStore = store if store is not None else MemoryCredentialStore()
        self._on_tokens_refreshed = on_tokens_refreshed
        self._session = session
        self._user_pool_id = user_pool_id
        self._client_id = client_id
        self._client_secret = client_secret
        self._expiry_buffer = expiry_buffer
        self._timeout = timeout
        self._clock = clock
        self._username: str | None = None
        self._refresh_task: asyncio.Task[CredentialTriple] | None = None
        # Bumped on sign-out so a refresh that straddles it cannot resurrect the session.
        self._generation = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def tokens(self) -> CredentialTriple | None:
        """Current credential triple, or ``None`` when signed out."""
        return self._tokens

    @property
    def has_tokens(self) -> bool:
        return self._tokens is not None

    @property
    def user_id(self) -> str | None:
        """Whisker user id (``mid`` claim of the identity token)."""
        claims = decode_jwt_claims(self._tokens.id_token if self._tokens else None)
        if not claims or not claims.get("mid"):
            return None
        return str(claims["mid"])

    @property
    def username(self) -> str | None:
        """Login name: the one used for :meth:`login`, else from the identity token."""
        if self._username:
            return self._username
        claims = decode_jwt_claims(self._tokens.id_token if self._tokens else None) or {}
        for key in ("email", "username", "cognito:username"):
            if claims.get(key):
                return str(claims[key])
        return None

    @property
    def refresh_in_progress(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    def restore(self) -> bool:
        """Load a previously persisted triple from the store.

        Returns ``False`` when the store holds nothing (no prior session).
        """
        tokens = self._store.get()
        if tokens is None:
            _LOGGER.info("No stored session found")
            return False
        self._tokens = tokens
        _LOGGER.info("Session restored for %s", self.username or "unknown user")
        self._log_expiry(tokens)
        return True

    def is_valid(self) -> bool:
        """True iff the identity token decodes and outlives now + buffer."""
        if self._tokens is None:
            return False
        exp = decode_jwt_exp(self._tokens.id_token)
        if exp is None:
            _LOGGER.warning("Identity token has no readable expiry")
            return False
        remaining = exp - self._clock()
        if remaining <= self._expiry_buffer:
            _LOGGER.debug("Identity token expires in %ds, refresh required", int(remaining))
            return False
        return True

    def sign_out(self) -> None:
        """Forget the session in memory and in the store."""
        self._generation += 1
        had_tokens = self._tokens is not None
        self._tokens = None
        self._store.clear()
        if had_tokens:
            _LOGGER.info("Signed out")

    # ------------------------------------------------------------------
    # Login / refresh
    # ------------------------------------------------------------------

    async def login(self, identifier: str, secret: str) -> CredentialTriple:
        """Authenticate with username and password.

        Raises:
            AuthenticationError: Missing or rejected credentials.
            ChallengeRequiredError: The pool asked for MFA, a new password
                or a custom challenge.
            ApiError: The identity provider failed with a server error.
            TransportError: The identity provider could not be reached.
        """
        if not identifier or not secret:
            raise AuthenticationError("Username and password are required to login.")

        _LOGGER.info("Authenticating %s", identifier)
        params = {"USERNAME": identifier, "PASSWORD": secret}
        if self._client_secret:
            params["SECRET_HASH"] = secret_hash(identifier, self._client_id, self._client_secret)

        status, body = await self._initiate_auth("USER_PASSWORD_AUTH", params)
        if status >= 500:
            raise ApiError(
                f"Login failed: {_error_message(body)}",
                status,
                endpoint=self._cognito_url,
                attempts=1,
            )
        if status != 200:
            _LOGGER.error("Authentication failed for %s: %s", identifier, _error_message(body))
            raise AuthenticationError(f"Authentication failed: {_error_message(body)}")

        challenge = body.get("ChallengeName")
        if challenge:
            _LOGGER.error("Challenge %s required for %s", challenge, identifier)
            raise ChallengeRequiredError(str(challenge))

        tokens = _tokens_from_result(body)
        self._username = identifier
        await self._accept(tokens)
        _LOGGER.info("Authentication successful for %s", identifier)
        return tokens

    async def refresh(self) -> CredentialTriple:
        """Exchange the refresh token for a new triple.

        If a refresh is already in flight, waits for that one instead of
        starting another.  Any failure clears the session.

        Raises:
            TokenError: No refresh token, or the refresh failed.
        """
        if self._refresh_task is None:
            if self._tokens is None:
                self.sign_out()
                raise TokenError("Missing refresh token. Cannot refresh session.")
            _LOGGER.info("Refreshing session tokens")
            task = asyncio.create_task(
                self._refresh(self._tokens.refresh_token, self._generation),
                name="whiskerlink-token-refresh",
            )
            task.add_done_callback(self._refresh_done)
            self._refresh_task = task
        else:
            _LOGGER.debug("Token refresh already in progress, sharing result")
        # Shielded so one cancelled waiter does not abort the shared refresh.
        return await asyncio.shield(self._refresh_task)

    async def get_tokens(self) -> CredentialTriple:
        """Return a valid triple, refreshing first when stale."""
        if not self.is_valid():
            return await self.refresh()
        assert self._tokens is not None
        return self._tokens

    async def get_headers(self) -> dict[str, str]:
        """Bearer headers for the GraphQL endpoints."""
        tokens = await self.get_tokens()
        return {**APP_HEADERS, "Authorization": f"Bearer {tokens.access_token}"}

    async def close(self) -> None:
        """Cancel an in-flight refresh.  Idempotent."""
        task, self._refresh_task = self._refresh_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, TokenError):
                pass

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    @property
    def _cognito_url(self) -> str:
        region = self._user_pool_id.split("_", 1)[0]
        return f"https://cognito-idp.{region}.amazonaws.com/"

    async def _refresh(self, refresh_token: str, generation: int) -> CredentialTriple:
        params = {"REFRESH_TOKEN": refresh_token}
        username = self.username
        if self._client_secret and username:
            params["SECRET_HASH"] = secret_hash(username, self._client_id, self._client_secret)
        try:
            status, body = await self._initiate_auth("REFRESH_TOKEN_AUTH", params)
            if status != 200:
                raise TokenError(f"Token refresh rejected: {_error_message(body)}")
            tokens = _tokens_from_result(body, fallback_refresh=refresh_token)
        except (TokenError, TransportError) as e:
            _LOGGER.error("Session refresh failed: %s", e)
            if generation == self._generation:
                self.sign_out()
            if isinstance(e, TokenError):
                raise
            raise TokenError(f"Token refresh failed: {e}") from e

        if generation != self._generation:
            raise TokenError("Session was signed out during refresh.")
        await self._accept(tokens)
        _LOGGER.info("Session tokens refreshed")
        return tokens

    def _refresh_done(self, task: asyncio.Task[CredentialTriple]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        # Mark the exception retrieved; waiters re-raise it themselves.
        if not task.cancelled():
            task.exception()

    async def _accept(self, tokens: CredentialTriple) -> None:
        self._tokens = tokens
        self._store.set(tokens)
        self._log_expiry(tokens)
        if self._on_tokens_refreshed is not None:
            try:
                await maybe_await(self._on_tokens_refreshed(tokens))
            except Exception:
                _LOGGER.exception("on_tokens_refreshed callback failed")

    def _log_expiry(self, tokens: CredentialTriple) -> None:
        if not _LOGGER.isEnabledFor(logging.INFO):
            return
        now = self._clock()
        for label, token in (("Access", tokens.access_token), ("ID", tokens.id_token)):
            exp = decode_jwt_exp(token)
            if exp is not None:
                left = timedelta(seconds=max(0, int(exp - now)))
                _LOGGER.info("%s token expires in %s", label, left)

    async def _initiate_auth(
        self, flow: str, params: dict[str, str]
    ) -> tuple[int, dict[str, object]]:
        """POST an ``InitiateAuth`` call; returns ``(status, body)``."""
        payload = {"AuthFlow": flow, "ClientId": self._client_id, "AuthParameters": params}
        headers = {
            "Content-Type": "application/x-amz-json-1.1",
            "X-Amz-Target": _COGNITO_TARGET,
        }
        url = self._cognito_url
        try:
            async with client_session(self._session) as session:
                async with session.post(
                    url,
                    data=json.dumps(payload),
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self._timeout),
                ) as resp:
                    try:
                        body = await resp.json(content_type=None)
                    except ValueError:
                        body = {"message": await resp.text()}
                    return resp.status, body if isinstance(body, dict) else {}
        except (aiohttp.ClientError, TimeoutError) as e:
            raise TransportError(
                f"Identity provider unreachable: {e}", endpoint=url, attempts=1
            ) from e


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _error_message(body: Mapping[str, object]) -> str:
    kind = str(body.get("__type", "")).rsplit("#", 1)[-1]
    message = body.get("message") or body.get("Message") or "unknown error"
    return f"{kind}: {message}" if kind else str(message)


def _tokens_from_result(
    body: Mapping[str, object], *, fallback_refresh: str | None = None
) -> CredentialTriple:
    """Build a triple from an ``InitiateAuth`` response.

    Refresh responses omit ``RefreshToken``; *fallback_refresh* fills it in.
    """
    result = body.get("AuthenticationResult")
    if not isinstance(result, dict):
        raise TokenError("Authentication response carried no tokens.")
    return CredentialTriple.from_dict(
        {
            "id_token": result.get("IdToken"),
            "access_token": result.get("AccessToken"),
            "refresh_token": result.get("RefreshToken") or fallback_refresh,
        }
    )
