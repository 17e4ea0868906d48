from __future__ import annotations

import urllib.parse
from dataclasses import dataclass, field

from pydantic import AnyHttpUrl, ValidationError

from halive.errors import ConfigurationError


def normalize_base_url(value: str) -> str:
    """Validate an instance URL and return it without a trailing slash."""
    raw = (value or "").strip()
    if not raw:
        raise ConfigurationError("Home Assistant instance URL is not set.")
    try:
        AnyHttpUrl(raw)
    except ValidationError as error:
        raise ConfigurationError(f"Invalid Home Assistant instance URL: {raw}") from error

    parsed = urllib.parse.urlparse(raw)
    if not parsed.scheme or not parsed.hostname:
        raise ConfigurationError(f"Invalid Home Assistant instance URL: {raw}")
    return raw.rstrip("/")


def join_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


@dataclass
class CallbackParams:
    scheme: str
    host: str
    params: dict[str, str] = field(default_factory=dict)

    def get(self, key: str) -> str | None:
        value = self.params.get(key)
        if value is None or not value.strip():
            return None
        return value


def parse_callback_url(url: str) -> CallbackParams:
    parsed = urllib.parse.urlparse(url)
    query = urllib.parse.parse_qs(parsed.query, keep_blank_values=True)
    return CallbackParams(
        scheme=parsed.scheme.lower(),
        host=(parsed.hostname or "").lower(),
        params={key: values[0] for key, values in query.items() if values},
    )


def matches_redirect_uri(callback: CallbackParams, redirect_uri: str) -> bool:
    expected = urllib.parse.urlparse(redirect_uri)
    if callback.scheme != expected.scheme.lower():
        return False
    return callback.host == (expected.hostname or "").lower()
