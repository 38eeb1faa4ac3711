"""
Relay core pairing browser websocket connections with OpenAI Realtime sessions.

For every inbound connection the WebSocketManager:
- Refuses the upgrade when the relay is not configured (HTTP 500) or the caller
  cannot be authenticated (HTTP 401)
- Joins the requested conversation room, if any
- Opens and configures one upstream realtime session
- Runs two forwarding pumps until either side closes:
  client -> frame guard -> upstream, and upstream -> client (+ room broadcast)
- Tears both sides down exactly once
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect, status
from fastapi.responses import PlainTextResponse

from voice_relay.bot.frame_guard import FrameGuard
from voice_relay.bot.realtime_api import RealtimeSession
from voice_relay.config.constants import LOGGER_NAME, WEBSOCKET_PROTOCOL_TAG
from voice_relay.config.settings import RelaySettings
from voice_relay.errors import (
    AdmissionError,
    AuthError,
    ConfigError,
    ProtocolError,
    RelayError,
    UpstreamError,
)
from voice_relay.models.connection import ClientConnection, ConnectionState, Identity
from voice_relay.models.realtime_schemas import SessionConfig
from voice_relay.services.identity import (
    IdentityVerifier,
    extract_bearer_token,
    parse_subprotocols,
)
from voice_relay.services.message_store import InMemoryMessageStore
from voice_relay.services.presence import PresenceHub

logger = logging.getLogger(LOGGER_NAME)

MAX_ROOM_NAME_LENGTH = 64

# Exceptions raised by the ASGI server when the client transport is gone
CLIENT_GONE_ERRORS = (WebSocketDisconnect, OSError)

SHUTDOWN_FLUSH_TIMEOUT = 2.0  # seconds


class WebSocketManager:
    """Manages relay connections between browser clients and OpenAI's Realtime API.

    The frame guard and the presence hub are shared by every connection the
    manager handles; everything else is owned by a single connection.
    """

    def __init__(
        self,
        settings: RelaySettings,
        guard: Optional[FrameGuard] = None,
        presence: Optional[PresenceHub] = None,
        verifier: Optional[IdentityVerifier] = None,
        session_factory: Optional[Callable[[], RealtimeSession]] = None,
    ):
        self.settings = settings
        self.guard = guard or FrameGuard(
            max_frame_size=settings.max_frame_size,
            max_frames=settings.rate_limit_max_frames,
            window_seconds=settings.rate_limit_window_seconds,
        )
        self.presence = presence or PresenceHub(
            InMemoryMessageStore(), history_limit=settings.room_history_limit
        )
        self.session_factory = session_factory or self._create_session
        self.connections: Dict[str, ClientConnection] = {}
        self.sessions: Dict[str, RealtimeSession] = {}

        # Checked once at startup; a missing secret disables the relay route only
        self.config_error: Optional[ConfigError] = None
        try:
            settings.validate_relay()
        except ConfigError as e:
            self.config_error = e
            logger.error(f"Relay disabled: {e}")

        self.verifier = verifier
        if self.verifier is None and settings.identity_provider_url and settings.identity_provider_key:
            self.verifier = IdentityVerifier(
                settings.identity_provider_url, settings.identity_provider_key
            )

        if settings.public_access:
            logger.warning(
                "Relay auth mode is 'public': callers without an access token "
                "are admitted as anonymous"
            )

    @property
    def relay_enabled(self) -> bool:
        return self.config_error is None

    def _create_session(self) -> RealtimeSession:
        config = SessionConfig(
            instructions=self.settings.instructions,
            voice=self.settings.voice,
        )
        return RealtimeSession(
            self.settings.openai_api_key,
            self.settings.realtime_model,
            config=config,
            url=self.settings.realtime_url,
        )

    @staticmethod
    def _offered_subprotocols(websocket: WebSocket) -> list:
        offered = websocket.scope.get("subprotocols")
        if offered:
            return list(offered)
        return parse_subprotocols(websocket.headers.get("sec-websocket-protocol"))

    @staticmethod
    def validate_room_name(room: Optional[str]) -> Optional[str]:
        """
        Normalize the requested room name.

        Raises:
            ProtocolError: If the name is blank or too long
        """
        if room is None:
            return None
        name = room.strip()
        if not name or len(name) > MAX_ROOM_NAME_LENGTH:
            raise ProtocolError(
                f"Room name must be 1-{MAX_ROOM_NAME_LENGTH} characters"
            )
        return name

    async def authenticate(self, websocket: WebSocket) -> Identity:
        """
        Resolve the caller of an upgrade request.

        The token is read from the offered sub-protocols, never from a body. In
        public mode a caller without a token is admitted as anonymous; a token
        that is present but invalid is still rejected.

        Raises:
            AuthError: If the caller cannot be authenticated
        """
        token = extract_bearer_token(
            self._offered_subprotocols(websocket),
            websocket.headers.get("authorization"),
        )
        if token is None and self.settings.public_access:
            host = websocket.client.host if websocket.client else None
            logger.warning(f"Public access: missing access token from {host}")
            return Identity.anonymous_for(host)
        if self.verifier is None:
            raise AuthError("Identity provider not configured")
        return await self.verifier.verify(token)

    async def _deny(self, websocket: WebSocket, error: RelayError) -> None:
        """Reject the upgrade with the HTTP status of ``error``."""
        if "websocket.http.response" in (websocket.scope.get("extensions") or {}):
            await websocket.send_denial_response(
                PlainTextResponse(error.message, status_code=error.status_code)
            )
        else:
            code = (
                status.WS_1008_POLICY_VIOLATION
                if isinstance(error, (AuthError, ProtocolError))
                else status.WS_1011_INTERNAL_ERROR
            )
            await websocket.close(code=code, reason=error.message)

    async def handle_websocket(self, websocket: WebSocket, room: Optional[str] = None) -> None:
        """Handle a relay connection throughout its lifecycle.

        Args:
            websocket: The FastAPI WebSocket connection object, not yet accepted
            room: Optional conversation room to join
        """
        if self.config_error is not None:
            logger.error(f"Rejecting relay connection: {self.config_error}")
            await self._deny(websocket, self.config_error)
            return

        try:
            room_name = self.validate_room_name(room)
            identity = await self.authenticate(websocket)
        except (ProtocolError, AuthError) as e:
            logger.warning(f"Rejecting relay connection: {e}")
            await self._deny(websocket, e)
            return

        offered = self._offered_subprotocols(websocket)
        subprotocol = WEBSOCKET_PROTOCOL_TAG if WEBSOCKET_PROTOCOL_TAG in offered else None
        await websocket.accept(subprotocol=subprotocol)

        connection = ClientConnection(websocket)
        connection.authenticate(identity)
        self.connections[connection.connection_id] = connection
        logger.info(
            f"Relay connection {connection.connection_id} established for {identity.subject}"
        )

        try:
            if room_name:
                await self.presence.join(room_name, connection)
            await self._relay(connection)
        except CLIENT_GONE_ERRORS as e:
            logger.info(f"Client transport closed for {connection.connection_id}: {e}")
        except Exception as e:
            logger.error(f"Error in relay connection: {e}", exc_info=True)
        finally:
            await self.close_connection(connection)

    async def _relay(self, connection: ClientConnection) -> None:
        """Pair the connection with an upstream session and forward until either side ends."""
        connection.transition(ConnectionState.AWAITING_PEER_SESSION)
        session = self.session_factory()
        self.sessions[connection.connection_id] = session

        try:
            await session.connect()
        except UpstreamError as e:
            await self._report_upstream_error(connection, session, e)
            return

        client_task = asyncio.create_task(self._pump_client_to_upstream(connection, session))
        upstream_task = asyncio.create_task(self._pump_upstream_to_client(connection, session))
        tasks = [client_task, upstream_task]
        error: Optional[BaseException] = None
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            for task in tasks:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except UpstreamError as e:
                    await self._report_upstream_error(connection, session, e)
                except CLIENT_GONE_ERRORS as e:
                    logger.info(f"Client transport closed for {connection.connection_id}: {e}")
                except Exception as e:
                    # Await the other pump before surfacing the failure
                    error = error or e
        if error is not None:
            raise error

    async def _pump_client_to_upstream(
        self, connection: ClientConnection, session: RealtimeSession
    ) -> None:
        """Forward client frames upstream in arrival order, through the frame guard."""
        websocket = connection.websocket
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info(f"Client disconnected: {connection.connection_id}")
                return

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is None:
                continue

            try:
                self.guard.check(connection.subject, raw)
                await session.send(raw)
            except AdmissionError as e:
                await connection.send_json(e.to_frame())

    async def _pump_upstream_to_client(
        self, connection: ClientConnection, session: RealtimeSession
    ) -> None:
        """Forward peer frames to the client verbatim and let the room observe them."""
        async for raw, frame in session.frames():
            if (
                connection.state == ConnectionState.AWAITING_PEER_SESSION
                and session.accepts_client_frames
            ):
                connection.transition(ConnectionState.STREAMING)
            await connection.send_frame(raw)
            await self.presence.observe_peer_frame(connection, frame)
        logger.info(f"OpenAI ended the session for connection: {connection.connection_id}")

    async def _report_upstream_error(
        self, connection: ClientConnection, session: RealtimeSession, error: UpstreamError
    ) -> None:
        logger.error(f"OpenAI WebSocket error for {connection.connection_id}: {error}")
        await session.close()
        try:
            await connection.send_json(error.to_frame())
        except CLIENT_GONE_ERRORS as e:
            logger.info(f"Could not report upstream error to {connection.connection_id}: {e}")

    async def close_connection(self, connection: ClientConnection, code: int = 1000) -> bool:
        """
        Tear down a connection and its upstream pairing. Idempotent.

        Returns:
            bool: True if this call performed the teardown
        """
        if connection.teardown_started:
            return False
        connection.teardown_started = True

        self.connections.pop(connection.connection_id, None)
        session = self.sessions.pop(connection.connection_id, None)
        if session is not None:
            await session.close()
        await self.presence.leave(connection)
        try:
            await connection.close(code=code)
        except CLIENT_GONE_ERRORS as e:
            logger.debug(f"Client transport already gone for {connection.connection_id}: {e}")
        logger.info(f"Relay connection closed: {connection.connection_id}")
        return True

    async def shutdown(self) -> None:
        """Close every active connection and release the identity client."""
        try:
            await asyncio.wait_for(self.presence.flush(), timeout=SHUTDOWN_FLUSH_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Room frames still queued at shutdown were dropped")
        for connection in list(self.connections.values()):
            await self.close_connection(connection, code=status.WS_1001_GOING_AWAY)
        if self.verifier is not None:
            await self.verifier.aclose()
