"""
Client connection state for the relay.

A ``ClientConnection`` wraps the FastAPI websocket of one browser client together
with the authenticated identity and the per-connection lifecycle:

    connecting -> authenticated -> awaiting_peer_session -> streaming -> closed

``closed`` is reachable from every state and is terminal.
"""

import json
import logging
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from fastapi import WebSocket
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from voice_relay.config.constants import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)


class Identity(BaseModel):
    """An authenticated principal, or an anonymous caller in public mode."""

    subject: str
    email: Optional[str] = None
    anonymous: bool = False

    @classmethod
    def anonymous_for(cls, host: Optional[str]) -> "Identity":
        return cls(subject=f"anonymous:{host or 'unknown'}", anonymous=True)


class ConnectionState(str, Enum):
    """Lifecycle of a client connection."""
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    AWAITING_PEER_SESSION = "awaiting_peer_session"
    STREAMING = "streaming"
    CLOSED = "closed"


_TRANSITIONS = {
    ConnectionState.CONNECTING: {ConnectionState.AUTHENTICATED, ConnectionState.CLOSED},
    ConnectionState.AUTHENTICATED: {
        ConnectionState.AWAITING_PEER_SESSION,
        ConnectionState.CLOSED,
    },
    ConnectionState.AWAITING_PEER_SESSION: {
        ConnectionState.STREAMING,
        ConnectionState.CLOSED,
    },
    ConnectionState.STREAMING: {ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),
}


class InvalidTransition(ValueError):
    """Raised when a connection is moved along an edge that does not exist."""


# RuntimeError texts Starlette and uvicorn use for a transport that is already closed
TRANSPORT_CLOSED_MESSAGES = (
    "close message has been sent",
    "not connected",
    "after sending 'websocket.close'",
    "response already completed",
)


def is_transport_closed_error(error: RuntimeError) -> bool:
    text = str(error)
    return any(marker in text for marker in TRANSPORT_CLOSED_MESSAGES)


class ClientConnection:
    """
    A live duplex channel to one browser client.

    Sending through a closed connection is a no-op, and ``close`` may be called
    any number of times.
    """

    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None):
        self.connection_id = connection_id or str(uuid.uuid4())
        self.websocket = websocket
        self.identity: Optional[Identity] = None
        self.state = ConnectionState.CONNECTING
        self.room_id: Optional[str] = None
        self.teardown_started = False

    @property
    def is_closed(self) -> bool:
        return self.state == ConnectionState.CLOSED

    @property
    def subject(self) -> str:
        return self.identity.subject if self.identity else "unauthenticated"

    def transition(self, new_state: ConnectionState) -> None:
        """
        Move the connection to ``new_state``.

        Raises:
            InvalidTransition: If the edge is not part of the lifecycle
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Connection {self.connection_id}: {self.state.value} -> {new_state.value}"
            )
        logger.debug(
            f"Connection {self.connection_id}: {self.state.value} -> {new_state.value}"
        )
        self.state = new_state

    def authenticate(self, identity: Identity) -> None:
        self.identity = identity
        self.transition(ConnectionState.AUTHENTICATED)

    def _transport_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def _transport_send(self, send: Callable[[Any], Awaitable[None]], data: Any) -> bool:
        if self.is_closed or not self._transport_open():
            return False
        try:
            await send(data)
        except RuntimeError as e:
            if not is_transport_closed_error(e):
                raise
            # The client went away between the state check and the send
            logger.debug(f"Connection {self.connection_id} transport closed during send: {e}")
            return False
        return True

    async def send_text(self, text: str) -> bool:
        """
        Send a raw text frame to the client.

        Returns:
            bool: True if the frame was handed to the transport
        """
        return await self._transport_send(self.websocket.send_text, text)

    async def send_frame(self, raw: Union[str, bytes]) -> bool:
        """Relay a frame to the client without altering it."""
        if isinstance(raw, bytes):
            return await self._transport_send(self.websocket.send_bytes, raw)
        return await self.send_text(raw)

    async def send_json(self, frame: Dict[str, Any]) -> bool:
        return await self.send_text(json.dumps(frame))

    async def close(self, code: int = 1000) -> bool:
        """
        Close the client side of the connection.

        Returns:
            bool: True if this call performed the close, False if it was already closed
        """
        if self.is_closed:
            return False
        should_close_transport = self._transport_open()
        self.state = ConnectionState.CLOSED
        if should_close_transport:
            try:
                await self.websocket.close(code=code)
            except RuntimeError as e:
                if not is_transport_closed_error(e):
                    raise
                # The transport finished closing between the check and the call
                logger.debug(f"Connection {self.connection_id} already closed: {e}")
        logger.info(f"Client connection closed: {self.connection_id}")
        return True
