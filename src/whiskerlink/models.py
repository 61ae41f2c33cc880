"""Value types shared across whiskerlink components."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from whiskerlink.errors import TokenError

_TOKEN_KEYS = ("id_token", "access_token", "refresh_token")


@dataclass(frozen=True)
class CredentialTriple:
    """The three correlated tokens of one authenticated session."""

    id_token: str
    access_token: str
    refresh_token: str

    def __post_init__(self) -> None:
        missing = [k for k in _TOKEN_KEYS if not getattr(self, k)]
        if missing:
            raise TokenError(f"Incomplete credentials, missing: {', '.join(missing)}")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> CredentialTriple:
        """Build a triple from its serialized form.

        Raises :class:`TokenError` if any of the three tokens is missing or
        empty.
        """
        values = {k: data.get(k) for k in _TOKEN_KEYS}
        bad = [k for k, v in values.items() if not isinstance(v, str) or not v]
        if bad:
            raise TokenError(f"Incomplete credentials, missing: {', '.join(bad)}")
        return cls(**values)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, str]:
        return {
            "id_token": self.id_token,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
        }

    def __repr__(self) -> str:
        return "CredentialTriple(<redacted>)"


class DataSource(str, Enum):
    """Where a device payload came from."""

    REALTIME = "realtime"
    POLLED = "polled"
    EXTERNAL = "external"


@dataclass(frozen=True)
class DataUpdate:
    """A payload delivered to a device, tagged with its origin."""

    device_id: str
    payload: dict[str, object]
    source: DataSource
    timestamp: float = field(default_factory=time.time)


DataCallback = Callable[[dict[str, object], DataSource], Awaitable[None]]
"""Device-facing ``on_data_update(payload, source)`` callback."""
