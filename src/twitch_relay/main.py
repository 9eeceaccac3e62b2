"""FastAPI app for the Twitch WebSocket relay."""

from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Annotated, List, Optional

from fastapi import Depends, FastAPI, Query, Request, WebSocket, status
from fastapi.responses import JSONResponse

from .auth import ApiError, AuthService, canonical_channel
from .config import ConfigError, LoadedConfig, load_config
from .keys import KeyStore, UnknownKeyError
from .registry import ConnectionRegistry, NoSuchChannelError
from .schemas import (
    ClientEntry,
    ClientsResponse,
    ErrorResponse,
    HealthResponse,
    VersionResponse,
)
from .session import Session
from .twitch_client import ChatBridge

LOG = logging.getLogger("relay")

VERSION = "0.1.0"

# Unauthorized sockets are upgraded, told why, and held open this long.
AUTH_FAILURE_GRACE_SECONDS = 2.0


@dataclass
class RelayState:
    loaded_config: LoadedConfig
    key_store: KeyStore
    auth_service: AuthService
    bridge: ChatBridge
    registry: ConnectionRegistry


def create_state(config_path: Optional[str] = None) -> RelayState:
    loaded = load_config(config_path)
    key_store = KeyStore.load(loaded.data.storage.keys_path)
    auth_service = AuthService(loaded.data.admin.resolved_api_key(), key_store)
    bridge = ChatBridge(loaded.data.twitch)
    registry = ConnectionRegistry(bridge, VERSION)
    return RelayState(
        loaded_config=loaded,
        key_store=key_store,
        auth_service=auth_service,
        bridge=bridge,
        registry=registry,
    )


async def forward_chat_events(state: RelayState) -> None:
    """Hand every inbound chat event to the registry for delivery."""
    async for event in state.bridge.events():
        try:
            await state.registry.deliver(event.channel, event.payload())
        except NoSuchChannelError:
            LOG.debug("No client connected for channel %s", event.channel)
        except Exception as exc:
            LOG.error("Failed to deliver message to channel %s: %s", event.channel, exc)


def create_app(
    config_path: Optional[str] = None,
    *,
    start_chat: bool = True,
) -> FastAPI:
    state = create_state(config_path)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        logging.basicConfig(
            level=state.loaded_config.data.server.log_level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        await state.registry.start()
        pump_task = asyncio.create_task(forward_chat_events(state), name="chat-event-pump")
        if start_chat:
            await state.bridge.start()
        else:
            LOG.info("Skipping Twitch chat startup (start_chat=False)")

        LOG.info("Relay server started using config %s", state.loaded_config.path)
        try:
            yield
        finally:
            if start_chat:
                await state.bridge.stop()
            pump_task.cancel()
            try:
                await pump_task
            except asyncio.CancelledError:
                pass
            await state.registry.stop()
            LOG.info("Relay server stopped")

    app = FastAPI(
        title="Twitch WebSocket Relay",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.relay_state = state

    @app.exception_handler(ApiError)
    async def api_error_handler(_: Request, exc: ApiError) -> JSONResponse:
        body = ErrorResponse(error_code=exc.status_code, description=exc.description)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump())

    def get_state(request: Request) -> RelayState:
        return request.app.state.relay_state

    def require_admin(
        request: Request,
        admin_key: Annotated[Optional[str], Query()] = None,
    ) -> None:
        request.app.state.relay_state.auth_service.require_admin(admin_key)

    @app.get("/health", response_model=HealthResponse)
    async def health(relay_state: RelayState = Depends(get_state)) -> HealthResponse:
        return HealthResponse(
            status="ok",
            version=VERSION,
            config_path=str(relay_state.loaded_config.path),
        )

    @app.get("/setup", response_model=VersionResponse)
    async def setup(
        client_key: Annotated[Optional[str], Query()] = None,
        relay_state: RelayState = Depends(get_state),
    ) -> VersionResponse:
        relay_state.auth_service.require_client(client_key)
        return VersionResponse(version=VERSION)

    @app.get("/addClient", dependencies=[Depends(require_admin)])
    async def add_client(
        twitch_channel: Annotated[Optional[str], Query()] = None,
        relay_state: RelayState = Depends(get_state),
    ) -> dict:
        if twitch_channel is None:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "No twitch channel was supplied.")
        await relay_state.key_store.issue(twitch_channel)
        return {}

    @app.get("/removeClients", dependencies=[Depends(require_admin)])
    async def remove_clients(
        clients: Annotated[Optional[List[str]], Query()] = None,
        relay_state: RelayState = Depends(get_state),
    ) -> dict:
        if not clients or len(clients[0]) < 2:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "No client key was supplied.")
        try:
            await relay_state.key_store.revoke(clients)
        except UnknownKeyError as exc:
            raise ApiError(
                status.HTTP_400_BAD_REQUEST,
                f"The client key {exc.key} does not exist, deletion aborted.",
            ) from exc
        return {}

    @app.get(
        "/clients",
        response_model=ClientsResponse,
        dependencies=[Depends(require_admin)],
    )
    async def list_clients(relay_state: RelayState = Depends(get_state)) -> ClientsResponse:
        connected = await relay_state.registry.connected_channels()
        entries = [
            ClientEntry(
                key=key,
                channel=channel,
                connected=canonical_channel(channel) in connected,
            )
            for key, channel in relay_state.key_store.items()
        ]
        entries.sort(key=lambda entry: not entry.connected)
        return ClientsResponse(clients=entries)

    @app.get("/websocket")
    async def websocket_required() -> None:
        raise ApiError(
            status.HTTP_400_BAD_REQUEST,
            "This URL needs to be used for a websocket connection",
        )

    @app.websocket("/websocket")
    async def websocket_endpoint(
        websocket: WebSocket,
        client_key: Annotated[Optional[str], Query()] = None,
    ) -> None:
        relay_state: RelayState = websocket.app.state.relay_state
        identity = relay_state.auth_service.authenticate(client_key)
        # Clients expect the upgrade to succeed and the rejection to arrive as a frame.
        await websocket.accept()
        if identity is None:
            try:
                await websocket.send_json({"error": "The wrong authorization key submitted"})
                await asyncio.sleep(AUTH_FAILURE_GRACE_SECONDS)
                await websocket.close()
            except Exception as exc:
                LOG.error("Failed to reject unauthorized websocket: %s", exc)
            return
        session = Session(identity.channel, websocket, relay_state.registry, relay_state.bridge)
        await session.run()

    return app


def run() -> None:
    import uvicorn

    try:
        app = create_app(os.getenv("RELAY_CONFIG"))
    except ConfigError as exc:
        raise SystemExit(f"Startup aborted: {exc}") from exc
    server = app.state.relay_state.loaded_config.data.server
    uvicorn.run(app, host=server.bind_host, port=server.bind_port, reload=False)


if __name__ == "__main__":
    run()
