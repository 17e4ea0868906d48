import time
import urllib.parse

import httpx
import pytest

from auth.ha_oauth2 import (
    TokenResponse,
    build_authorization_url,
    exchange_code,
    refresh_token,
    token_url,
)
from halive.errors import AuthenticationError, DecodeError, TokenRequestError, TransportError

BASE_URL = "http://ha.local:8123"
TOKEN_URL = "http://ha.local:8123/oauth2/token"


def _form(request: httpx.Request) -> dict[str, str]:
    return dict(urllib.parse.parse_qsl(request.content.decode("utf-8")))


def test_token_url_is_on_the_instance() -> None:
    assert token_url(BASE_URL) == TOKEN_URL
    assert token_url(BASE_URL + "/") == TOKEN_URL


def test_build_authorization_url_contains_required_params() -> None:
    url = build_authorization_url(
        client_id="https://halive.example",
        redirect_uri="halivenotifications://auth",
        state="state123",
        code_challenge="challenge123",
    )

    parsed = urllib.parse.urlparse(url)
    query = urllib.parse.parse_qs(parsed.query)

    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == (
        "https://my.home-assistant.io/redirect/oauth"
    )
    assert query["response_type"] == ["code"]
    assert query["client_id"] == ["https://halive.example"]
    assert query["redirect_uri"] == ["halivenotifications://auth"]
    assert query["state"] == ["state123"]
    assert query["code_challenge"] == ["challenge123"]
    assert query["code_challenge_method"] == ["S256"]


@pytest.mark.asyncio
async def test_exchange_code_success(httpx_mock) -> None:
    httpx_mock.add_response(
        url=TOKEN_URL,
        method="POST",
        json={
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "token_type": "Bearer",
            "expires_in": 1800,
        },
    )

    token = await exchange_code(
        BASE_URL,
        client_id="https://halive.example",
        code="code123",
        redirect_uri="halivenotifications://auth",
        code_verifier="verifier123",
    )

    assert token.access_token == "access-1"
    assert token.refresh_token == "refresh-1"
    assert token.token_type == "Bearer"
    assert token.expires_in == 1800
    assert token.expires_at > time.time()

    form = _form(httpx_mock.get_request())
    assert form == {
        "grant_type": "authorization_code",
        "code": "code123",
        "redirect_uri": "halivenotifications://auth",
        "client_id": "https://halive.example",
        "code_verifier": "verifier123",
    }


@pytest.mark.asyncio
async def test_exchange_code_error(httpx_mock) -> None:
    httpx_mock.add_response(url=TOKEN_URL, method="POST", status_code=400, text="invalid_grant")

    with pytest.raises(TokenRequestError, match="Token request failed") as info:
        await exchange_code(
            BASE_URL,
            client_id="id",
            code="bad-code",
            redirect_uri="halivenotifications://auth",
            code_verifier="verifier123",
        )

    assert info.value.status_code == 400
    assert info.value.body == "invalid_grant"
    assert isinstance(info.value, AuthenticationError)


@pytest.mark.asyncio
async def test_refresh_token_without_rotation(httpx_mock) -> None:
    httpx_mock.add_response(
        url=TOKEN_URL,
        method="POST",
        json={"access_token": "access-2", "token_type": "Bearer", "expires_in": 1800},
    )

    token = await refresh_token(BASE_URL, client_id="id", refresh_token="refresh-1")

    assert token.access_token == "access-2"
    assert token.refresh_token is None
    assert _form(httpx_mock.get_request()) == {
        "grant_type": "refresh_token",
        "refresh_token": "refresh-1",
        "client_id": "id",
    }


@pytest.mark.asyncio
async def test_refresh_token_transport_error(httpx_mock) -> None:
    httpx_mock.add_exception(httpx.ConnectError("connection refused"), url=TOKEN_URL)

    with pytest.raises(TransportError):
        await refresh_token(BASE_URL, client_id="id", refresh_token="refresh-1")


@pytest.mark.asyncio
async def test_token_request_invalid_json(httpx_mock) -> None:
    httpx_mock.add_response(url=TOKEN_URL, method="POST", text="<html>")

    with pytest.raises(DecodeError):
        await refresh_token(BASE_URL, client_id="id", refresh_token="refresh-1")


def test_token_response_requires_access_token() -> None:
    with pytest.raises(DecodeError, match="access_token"):
        TokenResponse.from_payload({"token_type": "Bearer", "expires_in": 10})


def test_token_response_rejects_non_integer_expiry() -> None:
    with pytest.raises(DecodeError, match="expires_in"):
        TokenResponse.from_payload({"access_token": "a", "expires_in": "soon"})


def test_token_response_defaults() -> None:
    token = TokenResponse.from_payload({"access_token": "a", "refresh_token": ""})

    assert token.refresh_token is None
    assert token.token_type == "Bearer"
    assert token.expires_in is None
    assert token.expires_at is None
