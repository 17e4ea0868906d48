from __future__ import annotations

import asyncio
import time
import urllib.parse
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from auth import ha_oauth2
from auth.connection_store import Connection
from auth.urls import join_url

from .constants import API_PATH, DEFAULT_TIMEOUT_SECONDS, LOGGER
from .errors import (
    DecodeError,
    HAError,
    HTTPError,
    NoRefreshTokenError,
    RefreshError,
    TransportError,
)
from .http import create_http_client
from .models import APIStatus, HAState

T = TypeVar("T")

PersistFn = Callable[[Connection], Awaitable[None]]


class HomeAssistantClient:
    """REST client bound to one connection.

    A 401 triggers a token refresh that all concurrent callers share, after
    which the request is sent exactly once more.
    """

    def __init__(
        self,
        connection: Connection,
        *,
        client_id: str,
        http_client: httpx.AsyncClient | None = None,
        persist: PersistFn | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.connection = connection
        self._client_id = client_id
        self._own_client = http_client is None
        self._http = http_client or create_http_client(timeout=timeout)
        self._persist = persist
        self._refresh_task: asyncio.Task[str] | None = None

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_task is not None

    async def aclose(self) -> None:
        if self._own_client:
            await self._http.aclose()

    # -- requests --------------------------------------------------------------

    async def perform_request(
        self,
        path: str,
        *,
        method: str = "GET",
        body: Any = None,
        expected_status: int = 200,
        decode: Callable[[Any], T] | None = None,
    ) -> T | None:
        """Send an authenticated request and decode the response.

        With ``decode=None`` the response body is not inspected and ``None`` is
        returned, which is how empty responses are expected.
        """
        return await self._perform(
            path,
            method=method,
            body=body,
            expected_status=expected_status,
            decode=decode,
            is_retry=False,
        )

    async def _perform(
        self,
        path: str,
        *,
        method: str,
        body: Any,
        expected_status: int,
        decode: Callable[[Any], T] | None,
        is_retry: bool,
    ) -> T | None:
        access_token = await self._current_access_token()
        request = self._http.build_request(
            method,
            join_url(self.connection.base_url, path),
            headers={"Authorization": f"Bearer {access_token}"},
            json=body,
        )

        try:
            response = await self._http.send(request)
        except httpx.HTTPError as error:
            raise TransportError(f"Request failed: {error}") from error

        if response.status_code == 401 and not is_retry:
            LOGGER.info("Unauthorized %s %s; refreshing access token.", method, path)
            await self._refresh_after_unauthorized(access_token)
            return await self._perform(
                path,
                method=method,
                body=body,
                expected_status=expected_status,
                decode=decode,
                is_retry=True,
            )

        if response.status_code != expected_status:
            raise HTTPError(response.status_code, response.text)

        if decode is None:
            return None

        try:
            payload = response.json()
        except ValueError as error:
            raise DecodeError(f"Response body is not valid JSON: {error}") from error
        return decode(payload)

    # -- token refresh ---------------------------------------------------------

    async def _current_access_token(self) -> str:
        task = self._refresh_task
        if task is not None:
            return await asyncio.shield(task)
        return self.connection.access_token

    async def _refresh_after_unauthorized(self, rejected_token: str) -> str:
        if self._refresh_task is None and self.connection.access_token != rejected_token:
            # A refresh finished while this request was in flight.
            return self.connection.access_token
        return await self.refresh_access_token()

    async def refresh_access_token(self) -> str:
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh())
        return await asyncio.shield(self._refresh_task)

    async def _refresh(self) -> str:
        try:
            refresh_token = self.connection.refresh_token
            if not refresh_token:
                raise NoRefreshTokenError()

            try:
                tokens = await ha_oauth2.refresh_token(
                    self.connection.base_url,
                    self._client_id,
                    refresh_token,
                    client=self._http,
                )
            except HAError as error:
                raise RefreshError(
                    f"Token refresh failed: {error.message}",
                    status_code=getattr(error, "status_code", None),
                ) from error

            self.connection.access_token = tokens.access_token
            if tokens.refresh_token:
                self.connection.refresh_token = tokens.refresh_token
            self.connection.last_connected_at = time.time()
            LOGGER.info("Access token refreshed for %s.", self.connection.display_name)

            if self._persist is not None:
                try:
                    await self._persist(self.connection)
                except HAError as error:
                    LOGGER.error(
                        "Refreshed token for %s could not be persisted: %s",
                        self.connection.display_name,
                        error,
                    )
            return tokens.access_token
        finally:
            self._refresh_task = None

    # -- endpoints -------------------------------------------------------------

    async def check_api_status(self) -> APIStatus:
        return await self.perform_request(API_PATH, decode=APIStatus.from_payload)

    async def get_states(self) -> list[HAState]:
        return await self.perform_request("/api/states", decode=HAState.list_from_payload)

    async def get_state(self, entity_id: str) -> HAState:
        path = f"/api/states/{urllib.parse.quote(entity_id, safe='')}"
        return await self.perform_request(path, decode=HAState.from_payload)

    async def call_service(
        self,
        domain: str,
        service: str,
        service_data: dict | None = None,
    ) -> list[HAState]:
        path = (
            f"/api/services/{urllib.parse.quote(domain, safe='')}"
            f"/{urllib.parse.quote(service, safe='')}"
        )
        return await self.perform_request(
            path,
            method="POST",
            body=service_data,
            decode=HAState.list_from_payload,
        )
