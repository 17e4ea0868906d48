from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

from .constants import (
    DEFAULT_AUTHORIZE_URL,
    DEFAULT_DEBOUNCE_MS,
    DEFAULT_DEBOUNCE_SECONDS,
    DEFAULT_REDIRECT_URI,
    DEFAULT_TIMEOUT_SECONDS,
    LOGGER,
)
from .errors import ConfigurationError


@dataclass
class Settings:
    client_id: str
    redirect_uri: str = DEFAULT_REDIRECT_URI
    authorize_url: str = DEFAULT_AUTHORIZE_URL
    store_path: str = ".connections.json"
    instance_url: str | None = None
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    debounce: float = DEFAULT_DEBOUNCE_SECONDS
    debug: bool = True


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer value.")


def load_env() -> None:
    env_path = Path(__file__).resolve().parent.parent / ".env"
    if not env_path.exists():
        return
    load_dotenv(env_path, override=True)


def validate_env() -> None:
    if not os.getenv("HA_OAUTH2_CLIENT_ID", "").strip():
        raise ConfigurationError("Missing required environment variable: HA_OAUTH2_CLIENT_ID")

    redirect_uri = os.getenv("HA_OAUTH2_REDIRECT_URI", DEFAULT_REDIRECT_URI).strip()
    if not urlparse(redirect_uri).scheme:
        raise ConfigurationError(
            "HA_OAUTH2_REDIRECT_URI must include a scheme (for example: "
            "halivenotifications://auth)."
        )

    authorize_url = os.getenv("HA_OAUTH2_AUTHORIZE_URL", DEFAULT_AUTHORIZE_URL).strip()
    parsed_authorize_url = urlparse(authorize_url)
    if parsed_authorize_url.scheme != "https" or not parsed_authorize_url.netloc:
        raise ConfigurationError("HA_OAUTH2_AUTHORIZE_URL must be an absolute HTTPS URL.")


def load_settings() -> Settings:
    return Settings(
        client_id=os.getenv("HA_OAUTH2_CLIENT_ID", "").strip(),
        redirect_uri=os.getenv("HA_OAUTH2_REDIRECT_URI", DEFAULT_REDIRECT_URI).strip(),
        authorize_url=os.getenv("HA_OAUTH2_AUTHORIZE_URL", DEFAULT_AUTHORIZE_URL).strip(),
        store_path=os.getenv("HA_CONNECTION_STORE_PATH", ".connections.json"),
        instance_url=os.getenv("HA_INSTANCE_URL", "").strip() or None,
        timeout=float(_get_env_int("HA_API_TIMEOUT", int(DEFAULT_TIMEOUT_SECONDS))),
        debounce=_get_env_int("HA_DISCOVERY_DEBOUNCE_MS", DEFAULT_DEBOUNCE_MS) / 1000,
        debug=is_truthy(os.getenv("HA_API_DEBUG", "1")),
    )


def setup_logging() -> bool:
    debug_enabled = is_truthy(os.getenv("HA_API_DEBUG", "1"))
    if debug_enabled:
        logging.basicConfig(level=logging.INFO)
        LOGGER.setLevel(logging.INFO)
    return debug_enabled
