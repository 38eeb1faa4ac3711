import asyncio
import json
import logging
from types import SimpleNamespace

import pytest
from starlette.websockets import WebSocketState
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from voice_relay.bot.realtime_api import RealtimeSession
from voice_relay.config.settings import RelaySettings
from voice_relay.errors import AuthError
from voice_relay.models.connection import Identity


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before each test"""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    logging.basicConfig(level=logging.NOTSET)
    yield


class RecordingWebSocket:
    """A websocket stand-in that records what the relay sends to the client."""

    def __init__(self, incoming=None, subprotocols=None, headers=None, host="127.0.0.1", hold_open=False):
        self.sent = []
        self.hold_open = hold_open
        self.incoming = list(incoming or [])
        self.scope = {"type": "websocket", "subprotocols": list(subprotocols or [])}
        self.headers = dict(headers or {})
        self.client = SimpleNamespace(host=host, port=50000)
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.close_codes = []
        self.accepted_subprotocol = None
        self.denied_status = None

    async def accept(self, subprotocol=None):
        self.accepted_subprotocol = subprotocol

    async def send_text(self, text):
        self.sent.append(text)

    async def send_bytes(self, data):
        self.sent.append(data)

    async def close(self, code=1000, reason=None):
        self.close_codes.append(code)
        self.application_state = WebSocketState.DISCONNECTED

    async def send_denial_response(self, response):
        self.denied_status = response.status_code

    async def receive(self):
        if self.incoming:
            item = self.incoming.pop(0)
            if isinstance(item, bytes):
                return {"type": "websocket.receive", "bytes": item}
            if isinstance(item, dict):
                item = json.dumps(item)
            return {"type": "websocket.receive", "text": item}
        if self.hold_open:
            # A client that stays connected without sending anything
            await asyncio.Event().wait()
        self.client_state = WebSocketState.DISCONNECTED
        return {"type": "websocket.disconnect", "code": 1000}

    def frames(self):
        return [json.loads(text) for text in self.sent]

    def frames_of_type(self, frame_type):
        return [frame for frame in self.frames() if frame.get("type") == frame_type]


class FakePeer:
    """An upstream websocket that replays a fixed list of frames."""

    def __init__(self, messages=(), error=None):
        self.sent = []
        self.closed = False
        self._messages = [
            json.dumps(m) if isinstance(m, dict) else m for m in messages
        ]
        self._error = error

    async def send(self, raw):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(raw)

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self._messages:
            yield message
        if self._error is not None:
            raise self._error

    def sent_frames(self):
        return [json.loads(raw) for raw in self.sent]


class ScriptedPeer:
    """
    An upstream websocket that answers like the realtime API would.

    - session.update -> session.updated
    - input_audio_buffer.commit -> a user transcript, an audio burst and an
      assistant transcript
    - test.hangup -> closes the link normally
    - test.fail -> closes the link abnormally
    - anything else -> test.ack naming the received type
    """

    def __init__(self):
        self.sent = []
        self.closed = False
        self._queue = None

    @property
    def queue(self):
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    def emit(self, frame):
        self.queue.put_nowait(json.dumps(frame))

    async def send(self, raw):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(raw)
        try:
            frame_type = json.loads(raw).get("type")
        except ValueError:
            frame_type = None
        if frame_type == "session.update":
            self.emit({"type": "session.updated"})
        elif frame_type == "test.hangup":
            self.queue.put_nowait(None)
        elif frame_type == "test.fail":
            self.queue.put_nowait(ConnectionClosedError(None, None))
        elif frame_type == "input_audio_buffer.commit":
            self.emit({
                "type": "conversation.item.input_audio_transcription.completed",
                "transcript": "What is the weather like?",
            })
            self.emit({"type": "response.audio.delta", "delta": "AAAA"})
            self.emit({"type": "response.audio_transcript.done", "transcript": "Sunny all day."})
            self.emit({"type": "response.audio.done"})
        else:
            self.emit({"type": "test.ack", "received": frame_type})

    async def close(self):
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(None)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self.queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    def sent_types(self):
        types = []
        for raw in self.sent:
            try:
                types.append(json.loads(raw).get("type"))
            except ValueError:
                types.append(None)
        return types


class ScriptedSession(RealtimeSession):
    """RealtimeSession wired to a ScriptedPeer instead of the network."""

    def __init__(self, **kwargs):
        super().__init__("test-api-key", "gpt-4o-realtime-test", **kwargs)
        self.peer = ScriptedPeer()

    async def connect(self):
        self.ws = self.peer
        self.peer.emit({"type": "session.created", "session": {"id": "sess_test"}})


class StubVerifier:
    """Identity verifier accepting a fixed set of tokens."""

    def __init__(self, tokens=None):
        self.tokens = dict(tokens or {})
        self.calls = []

    async def verify(self, token):
        self.calls.append(token)
        if token in self.tokens:
            return Identity(subject=self.tokens[token])
        raise AuthError("Invalid or expired access token")

    async def aclose(self):
        pass


@pytest.fixture
def recording_websocket():
    """Factory for RecordingWebSocket instances."""
    return RecordingWebSocket


@pytest.fixture
def fake_peer():
    """Factory for FakePeer instances."""
    return FakePeer


@pytest.fixture
def relay_settings():
    """Settings with every relay secret present."""
    return RelaySettings(
        openai_api_key="test-api-key",
        identity_provider_url="https://identity.example.com",
        identity_provider_key="test-public-key",
    )


@pytest.fixture
def stub_verifier():
    return StubVerifier({"valid-token": "user-123", "other-token": "user-456"})


@pytest.fixture
def scripted_sessions():
    """List collecting every ScriptedSession created by a session factory."""
    return []


@pytest.fixture
def scripted_session_factory(scripted_sessions):
    def factory():
        session = ScriptedSession()
        scripted_sessions.append(session)
        return session
    return factory
