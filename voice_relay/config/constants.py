"""
Constants and configuration values used throughout the application.

This module defines constants that are used across different parts of the application,
providing a centralized location for configuration values and making it easier to
maintain consistent naming throughout the codebase.
"""

# Logger name used throughout the application
LOGGER_NAME = "voice_relay"

# Upstream realtime API
DEFAULT_REALTIME_MODEL = "gpt-4o-realtime-preview-2024-10-01"
DEFAULT_REALTIME_URL = "wss://api.openai.com/v1/realtime"
DEFAULT_INSTRUCTIONS = (
    "You are a helpful AI assistant. Keep your responses conversational and natural."
)
DEFAULT_VOICE = "alloy"
DEFAULT_TRANSCRIPTION_MODEL = "whisper-1"
AUDIO_FORMAT_PCM16 = "pcm16"

# Admission limits
MAX_FRAME_SIZE = 10 * 1024  # 10 KiB
RATE_LIMIT_MAX_FRAMES = 10
RATE_LIMIT_WINDOW_SECONDS = 60

# Frames held while the upstream session is still being configured
MAX_PENDING_FRAMES = 32

# Number of stored messages replayed to a client joining a room
ROOM_HISTORY_LIMIT = 100

# Live room frames a member may have queued before it is disconnected
MEMBER_QUEUE_SIZE = 256

# Sub-protocol tag browsers send alongside the access token
WEBSOCKET_PROTOCOL_TAG = "websocket"

# Auth modes
AUTH_MODE_REQUIRED = "required"
AUTH_MODE_PUBLIC = "public"

# Upstream frame types
FRAME_SESSION_CREATED = "session.created"
FRAME_SESSION_UPDATED = "session.updated"
FRAME_AUDIO_DELTA = "response.audio.delta"
FRAME_AUDIO_DONE = "response.audio.done"
FRAME_AUDIO_TRANSCRIPT_DONE = "response.audio_transcript.done"
FRAME_TEXT_DONE = "response.text.done"
FRAME_INPUT_TRANSCRIPTION_COMPLETED = "conversation.item.input_audio_transcription.completed"
FRAME_ERROR = "error"

# Relay-originated room frame types
FRAME_ROOM_MESSAGE = "room.message"
FRAME_ROOM_PRESENCE = "room.presence"
FRAME_ROOM_SPEAKING = "room.speaking"
