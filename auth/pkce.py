from __future__ import annotations

import base64
import hashlib
import logging
import random
import secrets
import string

LOGGER = logging.getLogger(__name__)

UNRESERVED_CHARACTERS = string.ascii_letters + string.digits + "-._~"
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128


def _clamp_length(length: int) -> int:
    return max(MIN_VERIFIER_LENGTH, min(length, MAX_VERIFIER_LENGTH))


def _secure_choices(count: int) -> str:
    return "".join(secrets.choice(UNRESERVED_CHARACTERS) for _ in range(count))


def _insecure_choices(count: int) -> str:
    return "".join(random.choice(UNRESERVED_CHARACTERS) for _ in range(count))


def generate_code_verifier(length: int = MAX_VERIFIER_LENGTH) -> str:
    """Return a PKCE code verifier of ``length`` unreserved characters.

    The length is clamped to the 43..128 range RFC 7636 allows. When the OS
    has no secure random source the verifier is built from the ``random``
    module instead, and a warning is logged because that verifier is guessable.
    """
    count = _clamp_length(length)
    try:
        return _secure_choices(count)
    except NotImplementedError:
        LOGGER.warning(
            "Secure random source unavailable; using an insecure fallback for the "
            "PKCE code verifier."
        )
        return _insecure_choices(count)


def base64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64url_encode(digest)
