"""Error types raised by whiskerlink."""

from __future__ import annotations


class WhiskerError(Exception):
    """Base error for all whiskerlink failures."""


class AuthenticationError(WhiskerError):
    """Login was rejected (bad credentials, unknown user, missing credentials).

    Fatal for the current flow: the user must re-enter credentials.
    """


class ChallengeRequiredError(AuthenticationError):
    """The identity provider asked for an interactive challenge.

    New-password, MFA and custom challenges are not supported and are never
    retried.  The challenge name is kept in :attr:`challenge`.
    """

    def __init__(self, challenge: str) -> None:
        super().__init__(f"Unsupported authentication challenge: {challenge}")
        self.challenge = challenge


class TokenError(AuthenticationError):
    """Tokens are missing, malformed, or could not be refreshed.

    A failed refresh always invalidates the session, so catching this means
    re-authentication is required.
    """


class ApiError(WhiskerError):
    """HTTP failure that survived the retry budget (or was not retryable)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        endpoint: str | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint
        self.attempts = attempts


class TransportError(WhiskerError, ConnectionError):
    """Network or socket level failure.

    Raised for unreachable hosts after retries, websocket handshake failures
    and connect timeouts.
    """

    def __init__(
        self,
        message: str,
        *,
        endpoint: str | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.attempts = attempts


class GraphQLError(WhiskerError):
    """A successful response carried an ``errors`` list.

    These are business-logic failures and are surfaced without retrying.
    """

    def __init__(
        self,
        errors: list[dict[str, object]],
        *,
        data: object = None,
        endpoint: str | None = None,
    ) -> None:
        messages = "; ".join(str(e.get("message", e)) for e in errors) or "unknown error"
        super().__init__(f"GraphQL request failed: {messages}")
        self.errors = errors
        self.data = data
        self.endpoint = endpoint
