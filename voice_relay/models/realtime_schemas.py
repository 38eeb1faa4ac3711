"""
Pydantic models for OpenAI Realtime API frames.

Only the frames the relay builds itself or inspects are modelled here. Every
other frame is forwarded verbatim as raw text, so these models never reject
fields they do not know about.
"""

import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from voice_relay.config.constants import (
    AUDIO_FORMAT_PCM16,
    DEFAULT_INSTRUCTIONS,
    DEFAULT_TRANSCRIPTION_MODEL,
    DEFAULT_VOICE,
)


class InputAudioTranscription(BaseModel):
    """Automatic transcription settings for user audio."""

    model: str = DEFAULT_TRANSCRIPTION_MODEL


class TurnDetection(BaseModel):
    """Voice-activity based turn detection parameters."""

    type: Literal["server_vad"] = "server_vad"
    threshold: float = Field(0.5, ge=0.0, le=1.0)
    prefix_padding_ms: int = Field(300, ge=0)
    silence_duration_ms: int = Field(1000, ge=0)


class SessionConfig(BaseModel):
    """Session configuration sent upstream in a ``session.update`` frame."""

    modalities: List[str] = Field(default_factory=lambda: ["text", "audio"])
    instructions: str = DEFAULT_INSTRUCTIONS
    voice: str = DEFAULT_VOICE
    input_audio_format: str = AUDIO_FORMAT_PCM16
    output_audio_format: str = AUDIO_FORMAT_PCM16
    input_audio_transcription: InputAudioTranscription = Field(
        default_factory=InputAudioTranscription
    )
    turn_detection: TurnDetection = Field(default_factory=TurnDetection)
    temperature: float = Field(0.8, ge=0.0, le=2.0)
    # "inf" is the upstream sentinel for an unbounded budget
    max_response_output_tokens: Union[int, Literal["inf"]] = "inf"


class SessionUpdateMessage(BaseModel):
    """Outbound ``session.update`` frame."""

    type: Literal["session.update"] = "session.update"
    session: SessionConfig


class ErrorFrame(BaseModel):
    """Relay-originated error frame."""

    type: Literal["error"] = "error"
    message: str


class PeerFrame(BaseModel):
    """
    Loosely typed view over an upstream frame.

    The peer is untrusted input: every field other than ``type`` is optional and
    extra fields are kept so the original payload is never altered.
    """

    model_config = ConfigDict(extra="allow")

    type: str = "unknown"
    transcript: Optional[str] = None
    text: Optional[str] = None
    delta: Optional[str] = None
    item_id: Optional[str] = None
    response_id: Optional[str] = None
    error: Optional[Dict[str, Any]] = None


def parse_frame(raw: Union[str, bytes]) -> Optional[PeerFrame]:
    """
    Parse a raw frame into a ``PeerFrame``.

    Args:
        raw: Text or binary frame as received

    Returns:
        The parsed frame, or None if it is not a JSON object
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    if not isinstance(data.get("type"), str):
        data["type"] = "unknown"
    try:
        return PeerFrame(**data)
    except ValueError:
        return None
