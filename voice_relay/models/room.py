"""
Room, message and presence models for the broadcast layer.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from voice_relay.config.constants import FRAME_ROOM_MESSAGE


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    """Role of a message author."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ConversationRoom(BaseModel):
    """A named collaboration space. At most one room exists per name."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    creator: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class Message(BaseModel):
    """An immutable entry in a room's message log."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    room_id: str
    author: Optional[str] = None
    role: MessageRole
    content: str
    created_at: datetime = Field(default_factory=_utcnow)
    sequence: int = 0

    def to_frame(self) -> dict:
        """Render the message as a ``room.message`` frame."""
        return {
            "type": FRAME_ROOM_MESSAGE,
            "message": self.model_dump(mode="json"),
        }


class PresenceEntry(BaseModel):
    """One active participant in a room."""

    connection_id: str
    identity: str
    joined_at: datetime = Field(default_factory=_utcnow)
