"""
FastAPI server for the realtime voice relay.

This module initializes the FastAPI application that exposes the /realtime-chat
websocket endpoint. Browser clients connect with their access token in the
sub-protocol list; the relay authenticates them, pairs each connection with an
OpenAI Realtime session and shares completed transcripts with the other members
of the requested room.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket
from fastapi.responses import PlainTextResponse

from voice_relay.config.logging_config import configure_logging
from voice_relay.config.settings import RelaySettings, load_settings
from voice_relay.errors import ProtocolError
from voice_relay.websocket_manager import WebSocketManager

# Configure logging
logger = configure_logging()

APP_NAME = "Realtime Voice Relay"
APP_DESCRIPTION = "Websocket relay between browser clients and the OpenAI Realtime API"
APP_VERSION = "1.0.0"
RELAY_PATH = "/realtime-chat"


def create_app(
    settings: Optional[RelaySettings] = None,
    websocket_manager: Optional[WebSocketManager] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use; loaded from the environment when omitted
        websocket_manager: Relay manager to use; built from ``settings`` when omitted
    """
    settings = settings or load_settings()
    manager = websocket_manager or WebSocketManager(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"{APP_NAME} starting up (relay enabled: {manager.relay_enabled}, "
            f"auth mode: {settings.auth_mode})"
        )
        yield
        logger.info(f"{APP_NAME} shutting down...")
        await manager.shutdown()

    app = FastAPI(
        title=APP_NAME,
        description=APP_DESCRIPTION,
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.websocket_manager = manager

    @app.websocket(RELAY_PATH)
    async def realtime_chat(websocket: WebSocket, room: Optional[str] = Query(None)):
        """Relay endpoint pairing a browser client with an OpenAI Realtime session.

        The caller's access token travels as the second entry of the sub-protocol
        list (``["websocket", <token>]``). The optional ``room`` query parameter
        joins a conversation room whose transcripts are shared between members.
        """
        await manager.handle_websocket(websocket, room=room)

    @app.get(RELAY_PATH)
    async def realtime_chat_http():
        """Plain HTTP requests to the relay path lack the websocket upgrade."""
        error = ProtocolError("Expected WebSocket connection")
        return PlainTextResponse(error.message, status_code=error.status_code)

    @app.get("/rooms/{name}/messages")
    async def room_messages(name: str, limit: Optional[int] = Query(None, ge=1, le=1000)):
        """Stored message history of a room, in creation order."""
        store = manager.presence.store
        room = await store.get_room_by_name(name)
        if room is None:
            raise HTTPException(status_code=404, detail=f"Room '{name}' not found")
        messages = await store.list_messages(room.id, limit=limit)
        return {
            "room": room.model_dump(mode="json"),
            "participants": len(manager.presence.participants(room.id)),
            "messages": [message.model_dump(mode="json") for message in messages],
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint for monitoring system status.

        Returns:
            dict: Status information including relay configuration and active connections.
        """
        return {
            "status": "healthy",
            "relay_enabled": manager.relay_enabled,
            "openai_api_key_configured": bool(settings.openai_api_key),
            "auth_mode": settings.auth_mode,
            "active_connections": len(manager.connections),
            "active_rooms": manager.presence.active_rooms,
        }

    @app.get("/")
    async def root():
        """Root endpoint to display basic information about the API."""
        return {
            "name": APP_NAME,
            "description": APP_DESCRIPTION,
            "version": APP_VERSION,
            "endpoints": {
                RELAY_PATH: "WebSocket relay to the OpenAI Realtime API",
                "/rooms/{name}/messages": "Stored message history of a room",
                "/health": "Health check endpoint",
            },
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = app.state.websocket_manager.settings
    logger.info(f"Starting server on http://{settings.host}:{settings.port}")
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        websocket_ping_interval=5,  # Frequent pings to keep connections alive
        websocket_ping_timeout=20,  # Timeout for pings to detect dead connections
        http="h11",
    )
