from __future__ import annotations

import time
import urllib.parse
from dataclasses import dataclass

import httpx

from halive.constants import DEFAULT_AUTHORIZE_URL, TOKEN_PATH
from halive.errors import DecodeError, TokenRequestError, TransportError

from auth.urls import join_url


@dataclass
class TokenResponse:
    access_token: str
    refresh_token: str | None
    token_type: str
    expires_in: int | None
    expires_at: float | None

    @classmethod
    def from_payload(cls, payload: dict) -> "TokenResponse":
        if not isinstance(payload, dict):
            raise DecodeError("Token response must be a JSON object.")

        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        token_type = payload.get("token_type", "Bearer")
        expires_in = payload.get("expires_in")

        if not isinstance(access_token, str) or not access_token:
            raise DecodeError("Token response missing access_token.")
        if refresh_token is not None and not isinstance(refresh_token, str):
            raise DecodeError("Token response refresh_token must be a string.")
        if not isinstance(token_type, str):
            raise DecodeError("Token response token_type must be a string.")
        if expires_in is not None and (
            isinstance(expires_in, bool) or not isinstance(expires_in, int)
        ):
            raise DecodeError("Token response expires_in must be an integer.")

        return cls(
            access_token=access_token,
            refresh_token=refresh_token or None,
            token_type=token_type,
            expires_in=expires_in,
            expires_at=None if expires_in is None else time.time() + expires_in,
        )


def token_url(base_url: str) -> str:
    return join_url(base_url, TOKEN_PATH)


def build_authorization_url(
    client_id: str,
    redirect_uri: str,
    state: str,
    code_challenge: str,
    *,
    authorize_url: str = DEFAULT_AUTHORIZE_URL,
) -> str:
    query = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{authorize_url}?{urllib.parse.urlencode(query)}"


async def _token_request(
    base_url: str,
    payload: dict[str, str],
    *,
    client: httpx.AsyncClient | None = None,
) -> TokenResponse:
    own_client = client is None
    http_client = client or httpx.AsyncClient()

    try:
        response = await http_client.post(token_url(base_url), data=payload)
    except httpx.HTTPError as error:
        raise TransportError(f"Token request failed: {error}") from error
    finally:
        if own_client:
            await http_client.aclose()

    if response.status_code != 200:
        raise TokenRequestError(response.status_code, response.text)

    try:
        body = response.json()
    except ValueError as error:
        raise DecodeError(f"Token response is not valid JSON: {error}") from error
    return TokenResponse.from_payload(body)


async def exchange_code(
    base_url: str,
    client_id: str,
    code: str,
    redirect_uri: str,
    code_verifier: str,
    *,
    client: httpx.AsyncClient | None = None,
) -> TokenResponse:
    return await _token_request(
        base_url,
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": client_id,
            "code_verifier": code_verifier,
        },
        client=client,
    )


async def refresh_token(
    base_url: str,
    client_id: str,
    refresh_token: str,
    *,
    client: httpx.AsyncClient | None = None,
) -> TokenResponse:
    return await _token_request(
        base_url,
        {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
        },
        client=client,
    )
