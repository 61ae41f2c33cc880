"""Internal token and signing helpers for Cognito authentication."""

from __future__ import annotations

import base64
import json

from Crypto.Hash import HMAC, SHA256


def secret_hash(username: str, client_id: str, client_secret: str) -> str:
    """Compute the Cognito ``SECRET_HASH`` for app clients with a secret.

    Base64 of HMAC-SHA256(key=client_secret, msg=username + client_id).
    """
    mac = HMAC.new(client_secret.encode("utf-8"), digestmod=SHA256)
    mac.update((username + client_id).encode("utf-8"))
    return base64.b64encode(mac.digest()).decode("ascii")


def decode_jwt_claims(token: str | None) -> dict[str, object] | None:
    """Return the payload claims of a JWT without verifying the signature.

    Returns ``None`` if the token cannot be decoded (not a JWT, malformed
    base64, non-object payload).
    """
    if not token:
        return None
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return None
        # base64url padding: length must be a multiple of 4
        padded = parts[1] + "=" * (-len(parts[1]) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def decode_jwt_exp(token: str | None) -> float | None:
    """Extract the ``exp`` claim as a Unix timestamp, or ``None``."""
    claims = decode_jwt_claims(token)
    if claims is None:
        return None
    try:
        return float(str(claims["exp"]))
    except (KeyError, ValueError):
        return None
