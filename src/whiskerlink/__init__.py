"""Session layer and CLI for the Whisker (Litter-Robot) cloud."""

from whiskerlink.auth import AuthSessionManager
from whiskerlink.client import Client
from whiskerlink.errors import (
    ApiError,
    AuthenticationError,
    ChallengeRequiredError,
    GraphQLError,
    TokenError,
    TransportError,
    WhiskerError,
)
from whiskerlink.models import CredentialTriple, DataSource, DataUpdate
from whiskerlink.polling import PollingCoordinator
from whiskerlink.realtime import (
    ConnectionState,
    ConnectOptions,
    RealtimeConnectionManager,
    RealtimeEvent,
)
from whiskerlink.request import ResilientRequestClient
from whiskerlink.store import CredentialStore, FileCredentialStore, MemoryCredentialStore

__all__ = [
    "ApiError",
    "AuthSessionManager",
    "AuthenticationError",
    "ChallengeRequiredError",
    "Client",
    "ConnectOptions",
    "ConnectionState",
    "CredentialStore",
    "CredentialTriple",
    "DataSource",
    "DataUpdate",
    "FileCredentialStore",
    "GraphQLError",
    "MemoryCredentialStore",
    "PollingCoordinator",
    "RealtimeConnectionManager",
    "RealtimeEvent",
    "ResilientRequestClient",
    "TokenError",
    "TransportError",
    "WhiskerError",
]
