from __future__ import annotations

import asyncio
import os
from typing import TYPE_CHECKING

from auth.connection_store import FileConnectionStore
from halive.api_client import HomeAssistantClient
from halive.constants import APP_VERSION, AUTH_MODE, LOGGER
from halive.discovery import DiscoveryService
from halive.env import Settings, load_env, load_settings, setup_logging, validate_env
from halive.errors import ConfigurationError, HAError
from halive.session import OAuthSettings, Session

if TYPE_CHECKING:
    from fastmcp import FastMCP


def build_session(settings: Settings) -> Session:
    return Session(
        FileConnectionStore(settings.store_path),
        OAuthSettings(
            client_id=settings.client_id,
            redirect_uri=settings.redirect_uri,
            authorize_url=settings.authorize_url,
        ),
        timeout=settings.timeout,
        debug=settings.debug,
    )


class SessionGateway:
    """Loads the persisted connection on first use and hands out its client."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self._loaded = False

    async def client(self) -> HomeAssistantClient:
        if not self._loaded and self.session.current_connection is None:
            self._loaded = True
            await self.session.load_persisted_connection()
        client = self.session.api_client
        if client is None:
            raise ConfigurationError("No Home Assistant connection is active.")
        return client


def register_tools(mcp: "FastMCP", gateway: SessionGateway, settings: Settings) -> None:
    session = gateway.session

    @mcp.tool(name="ha_api_status", description="Check that the Home Assistant API is reachable.")
    async def api_status() -> dict:
        status = await (await gateway.client()).check_api_status()
        return {"message": status.message}

    @mcp.tool(name="ha_list_states", description="List the current state of every entity.")
    async def list_states() -> list[dict]:
        states = await (await gateway.client()).get_states()
        return [state.to_payload() for state in states]

    @mcp.tool(name="ha_get_state", description="Get the current state of one entity.")
    async def get_state(entity_id: str) -> dict:
        state = await (await gateway.client()).get_state(entity_id)
        return state.to_payload()

    @mcp.tool(
        name="ha_call_service",
        description="Call a Home Assistant service and return the states it changed.",
    )
    async def call_service(domain: str, service: str, service_data: dict | None = None) -> list[dict]:
        states = await (await gateway.client()).call_service(domain, service, service_data)
        return [state.to_payload() for state in states]

    @mcp.tool(
        name="ha_discover_instances",
        description="Browse the local network for Home Assistant instances.",
    )
    async def discover_instances(seconds: float = 3.0) -> list[dict]:
        discovery = DiscoveryService(debounce=settings.debounce)
        await discovery.start_discovery()
        try:
            await asyncio.sleep(max(seconds, settings.debounce))
        finally:
            await discovery.stop_discovery()
        return [instance.to_dict() for instance in discovery.instances]

    @mcp.tool(
        name="ha_connect_with_token",
        description="Connect to an instance with a long-lived access token.",
    )
    async def connect_with_token(base_url: str, access_token: str) -> dict:
        connection = await session.connect_with_token(base_url, access_token)
        return {"base_url": connection.base_url, "instance_name": connection.instance_name}

    @mcp.tool(name="ha_disconnect", description="Disconnect from the active instance.")
    async def disconnect(forget: bool = False) -> dict:
        await session.disconnect(forget=forget)
        return {"connected": False}


def mount_health_route(mcp: "FastMCP", session: Session) -> None:
    from starlette.requests import Request
    from starlette.responses import JSONResponse, Response

    @mcp.custom_route("/health", methods=["GET"])
    async def health_route(request: Request) -> Response:
        del request
        return JSONResponse(
            {
                "status": "ok",
                "version": APP_VERSION,
                "auth_mode": AUTH_MODE,
                "connected": session.current_connection is not None,
            }
        )


def mount_oauth_routes(mcp: "FastMCP", session: Session, settings: Settings) -> None:
    from starlette.requests import Request
    from starlette.responses import JSONResponse, RedirectResponse, Response

    @mcp.custom_route("/auth/login", methods=["GET"])
    async def login_route(request: Request) -> Response:
        del request
        authorization = session.begin_oauth_flow()
        return RedirectResponse(url=authorization.url, status_code=302)

    @mcp.custom_route("/auth/callback", methods=["GET"])
    async def callback_route(request: Request) -> Response:
        try:
            connection = await session.complete_oauth_flow(
                str(request.url),
                instance_url=settings.instance_url,
            )
        except HAError as error:
            return JSONResponse(
                {"error": type(error).__name__, "error_description": error.description},
                status_code=400,
            )
        return JSONResponse(
            {
                "status": "connected",
                "base_url": connection.base_url,
                "instance_name": connection.instance_name,
            }
        )


def create_mcp(session: Session | None = None) -> "FastMCP":
    from fastmcp import FastMCP

    load_env()
    setup_logging()
    validate_env()
    settings = load_settings()

    session = session or build_session(settings)
    gateway = SessionGateway(session)

    mcp = FastMCP(name="Home Assistant Session")
    register_tools(mcp, gateway, settings)
    mount_health_route(mcp, session)
    mount_oauth_routes(mcp, session, settings)
    setattr(mcp, "_session", session)
    LOGGER.info("Home Assistant session server ready (redirect URI %s)", settings.redirect_uri)
    return mcp


def main() -> None:
    host = os.getenv("MCP_HOST", "127.0.0.1")
    port = int(os.getenv("MCP_PORT", "8000"))
    mcp = create_mcp()
    mcp.run(transport="streamable-http", host=host, port=port)


if __name__ == "__main__":
    main()
