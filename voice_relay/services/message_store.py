"""
Message history storage for conversation rooms.

Storage is an external collaborator of the relay: ``MessageStore`` is the contract
the presence layer relies on, and ``InMemoryMessageStore`` is the process-local
implementation used by default and in tests.
"""

import abc
import asyncio
import itertools
import logging
from typing import Dict, List, Optional

from voice_relay.config.constants import LOGGER_NAME
from voice_relay.models.room import ConversationRoom, Message, MessageRole

logger = logging.getLogger(LOGGER_NAME)


class MessageStore(abc.ABC):
    """Contract for room and message persistence."""

    @abc.abstractmethod
    async def get_or_create_room(
        self, name: str, creator: Optional[str] = None
    ) -> ConversationRoom:
        """Return the room called ``name``, creating it if absent."""

    @abc.abstractmethod
    async def get_room_by_name(self, name: str) -> Optional[ConversationRoom]:
        """Return the room called ``name`` or None."""

    @abc.abstractmethod
    async def append_message(
        self,
        room_id: str,
        role: MessageRole,
        content: str,
        author: Optional[str] = None,
    ) -> Message:
        """Append an immutable message to a room's log."""

    @abc.abstractmethod
    async def list_messages(
        self, room_id: str, limit: Optional[int] = None
    ) -> List[Message]:
        """Messages of a room in creation order; with ``limit``, the most recent ones."""


class InMemoryMessageStore(MessageStore):
    """
    Process-local store. Rooms are unique by name; messages carry a store-wide
    monotonic sequence number.
    """

    def __init__(self):
        self._rooms_by_name: Dict[str, ConversationRoom] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._sequence = itertools.count(1)

    async def get_or_create_room(
        self, name: str, creator: Optional[str] = None
    ) -> ConversationRoom:
        room = self._rooms_by_name.get(name)
        if room is None:
            # Simulate the round trip of a remote store
            await asyncio.sleep(0)
            # First writer wins if another join created it meanwhile
            candidate = ConversationRoom(name=name, creator=creator)
            room = self._rooms_by_name.setdefault(name, candidate)
            if room is candidate:
                logger.info(f"Created room '{name}' ({room.id})")
        return room

    async def get_room_by_name(self, name: str) -> Optional[ConversationRoom]:
        return self._rooms_by_name.get(name)

    async def append_message(
        self,
        room_id: str,
        role: MessageRole,
        content: str,
        author: Optional[str] = None,
    ) -> Message:
        message = Message(
            room_id=room_id,
            author=author,
            role=role,
            content=content,
            sequence=next(self._sequence),
        )
        self._messages.setdefault(room_id, []).append(message)
        return message

    async def list_messages(
        self, room_id: str, limit: Optional[int] = None
    ) -> List[Message]:
        messages = self._messages.get(room_id, [])
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return list(messages)
