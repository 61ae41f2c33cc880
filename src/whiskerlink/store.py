"""Credential persistence.

Stores hold a serialized copy of the :class:`~whiskerlink.models.CredentialTriple`
for durability only.  A missing value is a normal state meaning "no prior
session".
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

from whiskerlink import _constants
from whiskerlink.errors import TokenError
from whiskerlink.models import CredentialTriple

_LOGGER = logging.getLogger(__name__)


class CredentialStore(Protocol):
    """Get/set/clear interface over an opaque key-value store."""

    def get(self) -> CredentialTriple | None: ...

    def set(self, tokens: CredentialTriple) -> None: ...

    def clear(self) -> None: ...


class MemoryCredentialStore:
    """Keeps the triple in memory (embedding and tests)."""

    def __init__(self, tokens: CredentialTriple | None = None) -> None:
        self._tokens = tokens

    def get(self) -> CredentialTriple | None:
        return self._tokens

    def set(self, tokens: CredentialTriple) -> None:
        if not isinstance(tokens, CredentialTriple):
            raise TypeError("Expected a CredentialTriple.")
        self._tokens = tokens

    def clear(self) -> None:
        self._tokens = None


class FileCredentialStore:
    """JSON file store, by default ``~/.config/whiskerlink/credentials.json``.

    The file is written with mode ``0600``.  Unreadable or incomplete files
    are treated as "no prior session" and logged.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        # Resolved lazily so tests can monkeypatch the module constant.
        return self._path or _constants.CRED_FILE

    def exists(self) -> bool:
        return self.path.exists()

    def get(self) -> CredentialTriple | None:
        path = self.path
        if not path.exists():
            _LOGGER.debug("No stored credentials at %s", path)
            return None
        try:
            data = json.loads(path.read_text())
            if not isinstance(data, dict):
                raise TokenError("Stored credentials are not a JSON object.")
            return CredentialTriple.from_dict(data)
        except (OSError, ValueError, TokenError) as e:
            _LOGGER.warning("Ignoring unreadable credentials at %s: %s", path, e)
            return None

    def set(self, tokens: CredentialTriple) -> None:
        if not isinstance(tokens, CredentialTriple):
            raise TypeError("Expected a CredentialTriple.")
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(tokens.to_dict(), indent=2))
        path.chmod(0o600)
        _LOGGER.debug("Stored credentials at %s", path)

    def clear(self) -> None:
        path = self.path
        if path.exists():
            path.unlink()
            _LOGGER.info("Cleared stored credentials at %s", path)
