from __future__ import annotations

import logging

LOGGER = logging.getLogger("halive")
APP_VERSION = "0.1.0"
AUTH_MODE = "oauth2-pkce"

SERVICE_TYPE = "_home-assistant._tcp.local."
DEFAULT_PORT = 8123
API_PATH = "/api/"
TOKEN_PATH = "/oauth2/token"

MY_HOME_ASSISTANT_URL = "https://my.home-assistant.io"
DEFAULT_AUTHORIZE_URL = f"{MY_HOME_ASSISTANT_URL}/redirect/oauth"
DEFAULT_REDIRECT_URI = "halivenotifications://auth"

DEFAULT_DEBOUNCE_MS = 300
DEFAULT_DEBOUNCE_SECONDS = DEFAULT_DEBOUNCE_MS / 1000
DEFAULT_TIMEOUT_SECONDS = 30.0
