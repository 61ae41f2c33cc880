"""Internal constants for the Whisker cloud API."""

from __future__ import annotations

import os
from pathlib import Path

LR4_ENDPOINT = "https://lr4.iothings.site/graphql"
PET_ENDPOINT = "https://pet-profile.iothings.site/graphql"
LR4_REALTIME_URL = "wss://lr4.iothings.site/graphql/realtime"
LR4_REALTIME_HOST = "lr4.iothings.site"
REALTIME_SUBPROTOCOL = "graphql-ws"

COGNITO_USER_POOL_ID = os.environ.get("WHISKER_COGNITO_USER_POOL_ID", "us-east-1_rjhNnZVAm")
COGNITO_CLIENT_ID = os.environ.get("WHISKER_COGNITO_CLIENT_ID", "4552ujeu3aic90nf8qn53levmn")
COGNITO_CLIENT_SECRET = os.environ.get("WHISKER_COGNITO_CLIENT_SECRET") or None

CRED_DIR = Path.home() / ".config" / "whiskerlink"
CRED_FILE = CRED_DIR / "credentials.json"

APP_HEADERS: dict[str, str] = {
    "Content-Type": "application/json",
    "User-Agent": "whiskerlink/0.1.0",
}

# Session
TOKEN_EXPIRY_BUFFER = 300  # seconds before id token expiry to refresh proactively
HTTP_TIMEOUT = 30.0

# Requests
REQUEST_RETRIES = 3
REQUEST_BACKOFF_BASE = 1.0

# Realtime
CONNECT_TIMEOUT = 30.0
HEARTBEAT_INTERVAL = 45.0
HEARTBEAT_IDLE_TIMEOUT = 90.0
CLOSE_TIMEOUT = 5.0
RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0
RECONNECT_MAX_JITTER = 0.5

# Polling
POLL_INTERVAL = 300.0
REGISTRATION_DEBOUNCE = 0.1
CATCH_UP_DEBOUNCE = 0.15
EXTERNAL_EVENT_DEBOUNCE = 3.0
