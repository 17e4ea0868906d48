from __future__ import annotations

import asyncio
import contextlib
import secrets
import time
import urllib.parse
from dataclasses import dataclass
from typing import Awaitable, TypeVar

import httpx

from auth import ha_oauth2, pkce
from auth.connection_store import Connection, ConnectionStore
from auth.models import AuthorizationRequest, PendingOAuthState
from auth.urls import matches_redirect_uri, normalize_base_url, parse_callback_url

from .api_client import HomeAssistantClient
from .constants import (
    DEFAULT_AUTHORIZE_URL,
    DEFAULT_REDIRECT_URI,
    DEFAULT_TIMEOUT_SECONDS,
    LOGGER,
)
from .errors import (
    AuthenticationError,
    ConfigurationError,
    HAError,
    NoRefreshTokenError,
    OAuthStateError,
    StorageError,
)
from .http import create_http_client

T = TypeVar("T")


@dataclass
class OAuthSettings:
    client_id: str
    redirect_uri: str = DEFAULT_REDIRECT_URI
    authorize_url: str = DEFAULT_AUTHORIZE_URL


class Session:
    """Owns the active connection and the API client bound to it.

    A Session is created by the caller and handed to whatever needs it; there
    is no process-wide instance. ``current_connection`` and ``api_client`` are
    only ever replaced together, so one is ``None`` exactly when the other is.
    Failed operations store their error in ``last_error`` and raise it.
    """

    def __init__(
        self,
        store: ConnectionStore,
        oauth: OAuthSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        debug: bool = False,
    ) -> None:
        self.store = store
        self.oauth = oauth
        self.last_error: HAError | None = None
        self.pending_oauth: PendingOAuthState | None = None

        self._own_client = http_client is None
        self._http = http_client or create_http_client(timeout=timeout, debug=debug)
        self._connection: Connection | None = None
        self._api_client: HomeAssistantClient | None = None
        self._busy = 0
        self._lock = asyncio.Lock()

    # -- state -----------------------------------------------------------------

    @property
    def current_connection(self) -> Connection | None:
        return self._connection

    @property
    def api_client(self) -> HomeAssistantClient | None:
        return self._api_client

    @property
    def is_loading(self) -> bool:
        return self._busy > 0

    def _pair_for(
        self, connection: Connection | None
    ) -> tuple[Connection | None, HomeAssistantClient | None]:
        if connection is None:
            return None, None
        if self._api_client is not None and self._api_client.connection is connection:
            return connection, self._api_client
        client = HomeAssistantClient(
            connection,
            client_id=self.oauth.client_id,
            http_client=self._http,
            persist=self._persist_refreshed,
        )
        return connection, client

    def _set_connection(
        self, connection: Connection | None
    ) -> tuple[Connection | None, HomeAssistantClient | None]:
        pair = self._pair_for(connection)
        self._connection, self._api_client = pair
        return pair

    @contextlib.contextmanager
    def _loading(self):
        self._busy += 1
        try:
            yield
        finally:
            self._busy -= 1

    def _record(self, error: HAError) -> HAError:
        self.last_error = error
        return error

    async def _store_call(self, operation: Awaitable[T]) -> T:
        try:
            return await operation
        except HAError:
            raise
        except Exception as error:
            raise StorageError(str(error)) from error

    async def aclose(self) -> None:
        if self._own_client:
            await self._http.aclose()

    # -- connection lifecycle --------------------------------------------------

    async def load_persisted_connection(self) -> Connection | None:
        with self._loading():
            self.last_error = None
            async with self._lock:
                try:
                    connection = await self._store_call(
                        self.store.fetch_most_recently_connected()
                    )
                except HAError as error:
                    self._set_connection(None)
                    LOGGER.error("Failed to load persisted connection: %s", error)
                    raise self._record(error)

                self._set_connection(connection)

        if connection is None:
            LOGGER.info("No persisted connection found.")
        else:
            LOGGER.info("Loaded persisted connection: %s", connection.display_name)
        return connection

    async def save_connection(self, connection: Connection) -> Connection:
        """Persist ``connection`` and make it current once the write commits."""
        with self._loading():
            self.last_error = None
            try:
                base_url = normalize_base_url(connection.base_url)
            except ConfigurationError as error:
                raise self._record(error)

            async with self._lock:
                previous = (connection.base_url, connection.last_connected_at)
                connection.base_url = base_url
                connection.last_connected_at = time.time()
                try:
                    await self._store_call(self.store.insert_or_update(connection))
                    await self._store_call(self.store.save())
                except HAError as error:
                    connection.base_url, connection.last_connected_at = previous
                    LOGGER.error("Failed to save connection: %s", error)
                    raise self._record(error)

                self._set_connection(connection)

        LOGGER.info("Saved connection: %s", connection.display_name)
        return connection

    async def disconnect(self, *, forget: bool = False) -> None:
        """Drop the active connection.

        The stored record is kept so it can be restored on the next load,
        unless ``forget`` is set.
        """
        with self._loading():
            async with self._lock:
                connection = self._connection
                self._set_connection(None)
                if connection is None:
                    return
                LOGGER.info("Disconnected from %s", connection.display_name)
                if forget:
                    try:
                        await self._store_call(self.store.delete(connection.id))
                    except HAError as error:
                        raise self._record(error)

    async def _persist_refreshed(self, connection: Connection) -> None:
        async with self._lock:
            try:
                await self._store_call(self.store.insert_or_update(connection))
                await self._store_call(self.store.save())
            except HAError as error:
                raise self._record(error)

    async def connect_with_token(
        self,
        base_url: str,
        access_token: str,
        *,
        instance_name: str | None = None,
        verify: bool = True,
    ) -> Connection:
        """Connect with a long-lived access token created in the Home Assistant UI."""
        with self._loading():
            self.last_error = None
            try:
                base_url = normalize_base_url(base_url)
                if not access_token.strip():
                    raise ConfigurationError("Access token is required.")
                connection = Connection(
                    base_url=base_url,
                    access_token=access_token.strip(),
                    instance_name=instance_name or urllib.parse.urlparse(base_url).hostname,
                )
                if verify:
                    await self._verify_token(connection)
            except HAError as error:
                raise self._record(error)

            return await self.save_connection(connection)

    async def _verify_token(self, connection: Connection) -> None:
        probe = HomeAssistantClient(
            connection,
            client_id=self.oauth.client_id,
            http_client=self._http,
        )
        try:
            await probe.check_api_status()
        except NoRefreshTokenError as error:
            raise AuthenticationError("Access token was rejected by the server.") from error

    # -- OAuth -----------------------------------------------------------------

    def begin_oauth_flow(self) -> AuthorizationRequest:
        """Start an authorization attempt, replacing any unfinished one."""
        state = secrets.token_urlsafe(24)
        code_verifier = pkce.generate_code_verifier()
        code_challenge = pkce.generate_code_challenge(code_verifier)
        self.pending_oauth = PendingOAuthState(
            state=state,
            code_verifier=code_verifier,
            created_at=time.time(),
        )
        self.last_error = None

        url = ha_oauth2.build_authorization_url(
            client_id=self.oauth.client_id,
            redirect_uri=self.oauth.redirect_uri,
            state=state,
            code_challenge=code_challenge,
            authorize_url=self.oauth.authorize_url,
        )
        return AuthorizationRequest(
            url=url,
            authorize_url=self.oauth.authorize_url,
            client_id=self.oauth.client_id,
            redirect_uri=self.oauth.redirect_uri,
            state=state,
            code_challenge=code_challenge,
        )

    def cancel_oauth_flow(self) -> None:
        self.pending_oauth = None

    async def complete_oauth_flow(
        self,
        callback_url: str,
        *,
        instance_url: str | None = None,
    ) -> Connection:
        """Validate the redirect back from the browser and exchange its code.

        The pending state is consumed by this call whatever the outcome.
        ``instance_url`` is used when the callback does not name the instance.
        """
        pending, self.pending_oauth = self.pending_oauth, None
        with self._loading():
            self.last_error = None
            try:
                return await self._complete_oauth_flow(pending, callback_url, instance_url)
            except HAError as error:
                LOGGER.warning("OAuth flow failed: %s", error)
                raise self._record(error)

    async def _complete_oauth_flow(
        self,
        pending: PendingOAuthState | None,
        callback_url: str,
        instance_url: str | None,
    ) -> Connection:
        callback = parse_callback_url(callback_url)
        if not matches_redirect_uri(callback, self.oauth.redirect_uri):
            raise AuthenticationError("Callback URL does not match the configured redirect URI.")

        if pending is None:
            raise OAuthStateError("No OAuth flow is in progress.")
        state = callback.get("state")
        if state is None or state != pending.state:
            raise OAuthStateError("OAuth state is missing or does not match.")

        error = callback.get("error")
        if error is not None:
            description = callback.get("error_description") or "Unknown OAuth error."
            raise AuthenticationError(f"OAuth error: {error} - {description}")

        code = callback.get("code")
        if code is None:
            raise ConfigurationError("Callback is missing the authorization code.")

        base_url = normalize_base_url(callback.get("instance_url") or instance_url or "")
        tokens = await ha_oauth2.exchange_code(
            base_url,
            client_id=self.oauth.client_id,
            code=code,
            redirect_uri=self.oauth.redirect_uri,
            code_verifier=pending.code_verifier,
            client=self._http,
        )

        connection = Connection(
            base_url=base_url,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            instance_name=urllib.parse.urlparse(base_url).hostname or "Home Assistant",
        )
        return await self.save_connection(connection)
