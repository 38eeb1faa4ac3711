"""
Models module for data structures and state management in the realtime voice relay.

Key components:
- realtime_schemas: Pydantic models for the OpenAI Realtime API frames the relay
  builds (session configuration, error frames) or inspects (transcripts, deltas).
- connection: Client connection wrapper, caller identity and the per-connection
  lifecycle state machine.
- room: Conversation rooms, immutable messages and presence entries.

Usage examples:
```python
from voice_relay.models.realtime_schemas import SessionConfig, SessionUpdateMessage

update = SessionUpdateMessage(session=SessionConfig(voice="alloy"))
await upstream.send(update.model_dump_json())

from voice_relay.models.realtime_schemas import parse_frame

frame = parse_frame(raw)
if frame and frame.type == "conversation.item.input_audio_transcription.completed":
    print(frame.transcript)
```
"""

from voice_relay.models.connection import (
    ClientConnection,
    ConnectionState,
    Identity,
    InvalidTransition,
)
from voice_relay.models.realtime_schemas import (
    ErrorFrame,
    InputAudioTranscription,
    PeerFrame,
    SessionConfig,
    SessionUpdateMessage,
    TurnDetection,
    parse_frame,
)
from voice_relay.models.room import (
    ConversationRoom,
    Message,
    MessageRole,
    PresenceEntry,
)
