"""
Upstream session management for the OpenAI Realtime API.

A ``RealtimeSession`` owns exactly one websocket link to the speech peer for one
client connection. The peer's lifecycle frames drive an explicit state machine:

    uninitialized --session.created--> created --(send session.update)--> configured
    configured --session.updated--> active
    any --link closed--> closed

Client frames are only written upstream in ``active``. Anything the client sends
earlier is held in a bounded queue and flushed, in order, right after the peer
acknowledges the configuration.
"""

import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Deque, Dict, Optional, Tuple, Union

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from voice_relay.config.constants import (
    DEFAULT_REALTIME_URL,
    FRAME_ERROR,
    FRAME_SESSION_CREATED,
    FRAME_SESSION_UPDATED,
    LOGGER_NAME,
    MAX_PENDING_FRAMES,
)
from voice_relay.errors import AdmissionError, UpstreamError
from voice_relay.models.realtime_schemas import (
    PeerFrame,
    SessionConfig,
    SessionUpdateMessage,
    parse_frame,
)

logger = logging.getLogger(LOGGER_NAME)

CONNECTION_TIMEOUT = 30  # seconds
SEND_TIMEOUT = 5.0  # seconds

# WebSocket configuration for low latency
WS_MAX_SIZE = 16 * 1024 * 1024  # 16MB - large enough for audio deltas
WS_PING_INTERVAL = 5  # seconds between pings
WS_PING_TIMEOUT = 10


class SessionState(str, Enum):
    """Lifecycle of an upstream realtime session."""
    UNINITIALIZED = "uninitialized"
    CREATED = "created"
    CONFIGURED = "configured"
    ACTIVE = "active"
    CLOSED = "closed"


RawFrame = Union[str, bytes]


class RealtimeSession:
    """
    Paired link to the realtime speech peer for one client connection.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        config: Optional[SessionConfig] = None,
        url: str = DEFAULT_REALTIME_URL,
        max_pending: int = MAX_PENDING_FRAMES,
    ):
        self.api_key = api_key
        self.model = model
        self.config = config or SessionConfig()
        self.url = url
        self.max_pending = max_pending
        self.ws = None
        self.state = SessionState.UNINITIALIZED
        self._pending: Deque[RawFrame] = deque()
        self._transitions: Dict[
            Tuple[SessionState, str], Callable[[PeerFrame], Awaitable[None]]
        ] = {
            (SessionState.UNINITIALIZED, FRAME_SESSION_CREATED): self._on_session_created,
            (SessionState.CONFIGURED, FRAME_SESSION_UPDATED): self._on_session_updated,
        }
        logger.info(f"RealtimeSession initialized with model: {model}")

    @property
    def endpoint(self) -> str:
        return f"{self.url}?model={self.model}"

    @property
    def accepts_client_frames(self) -> bool:
        return self.state == SessionState.ACTIVE

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def connect(self) -> None:
        """
        Open the websocket link to the realtime peer.

        Raises:
            UpstreamError: If the peer cannot be reached or rejects the handshake
        """
        if self.state != SessionState.UNINITIALIZED or self.ws is not None:
            raise UpstreamError("Upstream session already started")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        logger.info(f"Connecting to OpenAI Realtime API with model: {self.model}")
        logger.debug("Using headers: Authorization: Bearer [API_KEY_HIDDEN], OpenAI-Beta: realtime=v1")

        connection_start = time.time()
        try:
            self.ws = await asyncio.wait_for(
                websockets.connect(
                    self.endpoint,
                    max_size=WS_MAX_SIZE,
                    ping_interval=WS_PING_INTERVAL,
                    ping_timeout=WS_PING_TIMEOUT,
                    compression=None,  # Disable compression for lower latency
                    additional_headers=headers,
                ),
                timeout=CONNECTION_TIMEOUT,
            )
        except asyncio.TimeoutError as e:
            self.state = SessionState.CLOSED
            logger.error(f"Timeout while connecting to OpenAI Realtime API (after {CONNECTION_TIMEOUT}s)")
            raise UpstreamError("OpenAI connection error") from e
        except (WebSocketException, OSError) as e:
            self.state = SessionState.CLOSED
            logger.error(f"Failed to connect to OpenAI Realtime API: {e}")
            raise UpstreamError("OpenAI connection error") from e

        logger.debug(f"WebSocket connection established in {time.time() - connection_start:.2f} seconds")
        logger.info("Successfully connected to OpenAI Realtime API")

    async def handle_peer_frame(self, frame: Optional[PeerFrame]) -> None:
        """
        Apply the lifecycle transition, if any, triggered by a peer frame.

        Frames that do not match an edge of the state machine leave the state unchanged.
        """
        if frame is None or self.state == SessionState.CLOSED:
            return
        handler = self._transitions.get((self.state, frame.type))
        if handler is not None:
            await handler(frame)
        elif frame.type == FRAME_ERROR:
            logger.error(f"Received error from OpenAI: {frame.error or frame.model_dump()}")

    async def _on_session_created(self, frame: PeerFrame) -> None:
        self._set_state(SessionState.CREATED)
        update = SessionUpdateMessage(session=self.config)
        logger.info("Session created, sending configuration")
        await self._send_raw(update.model_dump_json())
        self._set_state(SessionState.CONFIGURED)

    async def _on_session_updated(self, frame: PeerFrame) -> None:
        self._set_state(SessionState.ACTIVE)
        logger.info("Session configured successfully")
        await self._flush_pending()

    def _set_state(self, new_state: SessionState) -> None:
        logger.debug(f"Upstream session: {self.state.value} -> {new_state.value}")
        self.state = new_state

    async def _flush_pending(self) -> None:
        if self._pending:
            logger.debug(f"Flushing {len(self._pending)} frames held during configuration")
        while self._pending and self.state == SessionState.ACTIVE:
            await self._send_raw(self._pending.popleft())

    async def send(self, raw: RawFrame) -> bool:
        """
        Forward a client frame to the peer verbatim.

        Args:
            raw: The frame exactly as the client sent it

        Returns:
            bool: True if the frame was written upstream, False if it was queued
                  until the session is active and the queue is drained

        Raises:
            AdmissionError: If the session is not active and the queue is full
            UpstreamError: If the session is closed or the write fails
        """
        if self.state == SessionState.CLOSED:
            raise UpstreamError("Upstream session closed")
        # Queue behind any frames still being flushed so arrival order holds
        if not self.accepts_client_frames or self._pending:
            if len(self._pending) >= self.max_pending:
                raise AdmissionError(
                    "Session not ready. Please wait for the session to be configured"
                )
            self._pending.append(raw)
            return False
        await self._send_raw(raw)
        return True

    async def _send_raw(self, raw: RawFrame) -> None:
        if self.ws is None:
            raise UpstreamError("Upstream session not connected")
        try:
            await asyncio.wait_for(self.ws.send(raw), timeout=SEND_TIMEOUT)
        except asyncio.TimeoutError as e:
            logger.warning("Timeout while sending to OpenAI")
            raise UpstreamError("OpenAI connection error") from e
        except ConnectionClosed as e:
            logger.warning(f"Connection closed while sending to OpenAI: {e}")
            raise UpstreamError("OpenAI connection error") from e

    async def frames(self) -> AsyncIterator[Tuple[RawFrame, Optional[PeerFrame]]]:
        """
        Iterate over peer frames in arrival order.

        The lifecycle transition for each frame is applied before it is yielded,
        so the configuration is always on the wire before the caller sees
        ``session.created``.

        Yields:
            (raw, parsed) pairs; ``parsed`` is None for non-JSON frames

        Raises:
            UpstreamError: If the link closes abnormally
        """
        if self.ws is None:
            raise UpstreamError("Upstream session not connected")
        try:
            async for raw in self.ws:
                frame = parse_frame(raw)
                await self.handle_peer_frame(frame)
                yield raw, frame
        except ConnectionClosedOK:
            logger.info("OpenAI connection closed normally")
        except ConnectionClosed as e:
            if self.state == SessionState.CLOSED:
                return
            logger.warning(f"OpenAI connection closed unexpectedly: {e}")
            raise UpstreamError("OpenAI connection error") from e

    async def close(self) -> bool:
        """
        Close the peer link. Safe to call on an already-closed session.

        Returns:
            bool: True if this call performed the close
        """
        if self.state == SessionState.CLOSED and self.ws is None:
            return False
        self._set_state(SessionState.CLOSED)
        self._pending.clear()
        ws, self.ws = self.ws, None
        if ws is not None:
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"OpenAI link already closed: {e}")
        logger.info("OpenAI Realtime session closed")
        return True
