"""
Room presence and transcript broadcast.

The ``PresenceHub`` multiplexes one logical conversation across every client
connected to the same room. It tracks who is present, replays stored history to
newcomers, and turns completed transcripts observed on any member's upstream
session into persisted messages that are pushed to the other members.

Each member has its own bounded outbox drained by a dedicated writer task, so a
slow member never holds up the speaker or anyone else in the room. A member whose
outbox overflows is disconnected.

Rooms outlive their participants: leaving only removes the presence entry, the
stored room and its messages stay in the ``MessageStore``.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from fastapi import WebSocketDisconnect, status

from voice_relay.config.constants import (
    FRAME_AUDIO_DELTA,
    FRAME_AUDIO_DONE,
    FRAME_AUDIO_TRANSCRIPT_DONE,
    FRAME_INPUT_TRANSCRIPTION_COMPLETED,
    FRAME_ROOM_PRESENCE,
    FRAME_ROOM_SPEAKING,
    FRAME_TEXT_DONE,
    LOGGER_NAME,
    MEMBER_QUEUE_SIZE,
    ROOM_HISTORY_LIMIT,
)
from voice_relay.models.connection import ClientConnection
from voice_relay.models.realtime_schemas import PeerFrame
from voice_relay.models.room import ConversationRoom, Message, MessageRole, PresenceEntry
from voice_relay.services.message_store import MessageStore

logger = logging.getLogger(LOGGER_NAME)


class _Member:
    """A connection present in a room.

    Until its history backfill has been queued, frames published to the member
    are parked in ``backlog`` so live messages never overtake history. After
    that, frames go to ``outbox`` and the ``writer`` task sends them in order.
    """

    def __init__(self, connection: ClientConnection, entry: PresenceEntry, maxsize: int):
        self.connection = connection
        self.entry = entry
        self.ready = False
        self.speaking = False
        self.backlog: List[Tuple[Optional[int], Dict[str, Any]]] = []
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.writer: Optional[asyncio.Task] = None


class RoomPresence:
    """Live registry of one room's members."""

    def __init__(self, room: ConversationRoom):
        self.room = room
        self.members: Dict[str, _Member] = {}

    @property
    def participant_count(self) -> int:
        return len(self.members)


class PresenceHub:
    """
    Join/leave tracking and fan-out for conversation rooms.
    """

    def __init__(
        self,
        store: MessageStore,
        history_limit: int = ROOM_HISTORY_LIMIT,
        queue_size: int = MEMBER_QUEUE_SIZE,
    ):
        self.store = store
        self.history_limit = history_limit
        self.queue_size = queue_size
        self._rooms: Dict[str, RoomPresence] = {}
        self._evictions: Set[asyncio.Task] = set()
        self._frame_handlers = {
            FRAME_INPUT_TRANSCRIPTION_COMPLETED: self._on_user_transcript,
            FRAME_AUDIO_TRANSCRIPT_DONE: self._on_assistant_transcript,
            FRAME_TEXT_DONE: self._on_assistant_text,
            FRAME_AUDIO_DELTA: self._on_audio_delta,
            FRAME_AUDIO_DONE: self._on_audio_done,
        }

    def participants(self, room_id: str) -> List[PresenceEntry]:
        """Presence entries of a room, in join order."""
        presence = self._rooms.get(room_id)
        if presence is None:
            return []
        return [member.entry for member in presence.members.values()]

    @property
    def active_rooms(self) -> int:
        return len(self._rooms)

    async def join(self, room_name: str, connection: ClientConnection) -> ConversationRoom:
        """
        Add a connection to a room, creating the room on first use.

        The joining connection first receives the room's stored messages in
        creation order, then every member receives the new participant count.

        Args:
            room_name: Name of the room to join
            connection: The authenticated client connection

        Returns:
            ConversationRoom: The resolved room
        """
        if connection.room_id is not None:
            await self.leave(connection)

        room = await self.store.get_or_create_room(room_name, creator=connection.subject)
        presence = self._rooms.setdefault(room.id, RoomPresence(room))
        member = _Member(
            connection,
            PresenceEntry(connection_id=connection.connection_id, identity=connection.subject),
            # Room for a full backfill on top of the live allowance
            maxsize=self.history_limit + self.queue_size,
        )
        member.writer = asyncio.create_task(self._write_frames(member))
        presence.members[connection.connection_id] = member
        connection.room_id = room.id
        logger.info(
            f"Connection {connection.connection_id} joined room '{room.name}' "
            f"({presence.participant_count} present)"
        )

        history = await self.store.list_messages(room.id, limit=self.history_limit)
        if presence.members.get(connection.connection_id) is not member:
            # Evicted or left while the history was loading
            return room
        for message in history:
            member.outbox.put_nowait(message.to_frame())
        if not self._drain_backlog(presence, member, history[-1].sequence if history else 0):
            return room

        self._publish_presence(presence, "join", member.entry)
        return room

    def _drain_backlog(self, presence: RoomPresence, member: _Member, last_sequence: int) -> bool:
        backlog, member.backlog = member.backlog, []
        member.ready = True
        for sequence, frame in backlog:
            if sequence is not None and sequence <= last_sequence:
                continue
            if not self._enqueue(member, frame):
                self._evict(presence, member)
                return False
        return True

    async def leave(self, connection: ClientConnection) -> bool:
        """
        Remove a connection's presence entry. Safe to call more than once.

        Returns:
            bool: True if an entry was removed
        """
        room_id = connection.room_id
        presence = self._rooms.get(room_id) if room_id else None
        if presence is None:
            connection.room_id = None
            return False

        member = self._remove(presence, connection)
        if member is None:
            return False

        logger.info(
            f"Connection {connection.connection_id} left room '{presence.room.name}' "
            f"({presence.participant_count} present)"
        )
        self._announce_departure(presence, member)
        return True

    def _remove(self, presence: RoomPresence, connection: ClientConnection) -> Optional[_Member]:
        member = presence.members.pop(connection.connection_id, None)
        connection.room_id = None
        if member is None:
            return None
        if member.writer is not None:
            member.writer.cancel()
        # Frames nobody will send any more
        while not member.outbox.empty():
            member.outbox.get_nowait()
            member.outbox.task_done()
        return member

    def _announce_departure(self, presence: RoomPresence, member: _Member) -> None:
        if member.speaking:
            self._publish(presence, self._speaking_frame(presence, member.connection, False))
        if presence.members:
            self._publish_presence(presence, "leave", member.entry)
        else:
            # The stored room and its history remain
            self._rooms.pop(presence.room.id, None)

    def _evict(self, presence: RoomPresence, member: _Member) -> None:
        """Drop a member that cannot keep up and close its connection."""
        connection = member.connection
        if presence.members.get(connection.connection_id) is not member:
            return
        logger.warning(
            f"Disconnecting connection {connection.connection_id} from room "
            f"'{presence.room.name}': outbox full ({member.outbox.maxsize} frames)"
        )
        self._remove(presence, connection)
        self._announce_departure(presence, member)
        task = asyncio.create_task(connection.close(code=status.WS_1013_TRY_AGAIN_LATER))
        self._evictions.add(task)
        task.add_done_callback(self._evictions.discard)

    async def flush(self) -> None:
        """Wait until every queued room frame has been handed to its transport."""
        members = [m for presence in self._rooms.values() for m in presence.members.values()]
        await asyncio.gather(*(member.outbox.join() for member in members))
        if self._evictions:
            await asyncio.gather(*list(self._evictions))

    async def observe_peer_frame(
        self, connection: ClientConnection, frame: Optional[PeerFrame]
    ) -> Optional[Message]:
        """
        Let the room react to a frame the connection's upstream session produced.

        Returns:
            The persisted message, if the frame completed a transcript
        """
        if frame is None or connection.room_id is None:
            return None
        presence = self._rooms.get(connection.room_id)
        if presence is None:
            return None
        handler = self._frame_handlers.get(frame.type)
        if handler is None:
            return None
        return await handler(presence, connection, frame)

    async def _on_user_transcript(self, presence, connection, frame):
        return await self._record(
            presence, connection, MessageRole.USER, frame.transcript, connection.subject
        )

    async def _on_assistant_transcript(self, presence, connection, frame):
        return await self._record(presence, connection, MessageRole.ASSISTANT, frame.transcript)

    async def _on_assistant_text(self, presence, connection, frame):
        return await self._record(presence, connection, MessageRole.ASSISTANT, frame.text)

    async def _on_audio_delta(self, presence, connection, frame):
        self._set_speaking(presence, connection, True)
        return None

    async def _on_audio_done(self, presence, connection, frame):
        self._set_speaking(presence, connection, False)
        return None

    def _set_speaking(self, presence: RoomPresence, connection: ClientConnection, speaking: bool) -> None:
        member = presence.members.get(connection.connection_id)
        if member is None or member.speaking == speaking:
            return
        member.speaking = speaking
        self._publish(
            presence,
            self._speaking_frame(presence, connection, speaking),
            exclude=connection.connection_id,
        )

    async def _record(
        self,
        presence: RoomPresence,
        connection: ClientConnection,
        role: MessageRole,
        content: Optional[str],
        author: Optional[str] = None,
    ) -> Optional[Message]:
        if not content or not content.strip():
            return None
        message = await self.store.append_message(
            presence.room.id, role, content.strip(), author=author
        )
        logger.debug(f"Stored {role.value} message {message.id} in room '{presence.room.name}'")
        self._publish(
            presence,
            message.to_frame(),
            exclude=connection.connection_id,
            sequence=message.sequence,
        )
        return message

    @staticmethod
    def _speaking_frame(presence: RoomPresence, connection: ClientConnection, speaking: bool) -> dict:
        return {
            "type": FRAME_ROOM_SPEAKING,
            "room_id": presence.room.id,
            "connection_id": connection.connection_id,
            "speaking": speaking,
        }

    def _publish_presence(self, presence: RoomPresence, event: str, entry: PresenceEntry) -> None:
        self._publish(
            presence,
            {
                "type": FRAME_ROOM_PRESENCE,
                "room_id": presence.room.id,
                "room": presence.room.name,
                "event": event,
                "identity": entry.identity,
                "joined_at": entry.joined_at.isoformat(),
                "participants": presence.participant_count,
            },
        )

    def _publish(
        self,
        presence: RoomPresence,
        frame: Dict[str, Any],
        exclude: Optional[str] = None,
        sequence: Optional[int] = None,
    ) -> None:
        """Queue ``frame`` for every member except ``exclude``. Never waits."""
        overflowed = []
        for connection_id, member in list(presence.members.items()):
            if connection_id == exclude:
                continue
            if not member.ready:
                member.backlog.append((sequence, frame))
                continue
            if not self._enqueue(member, frame):
                overflowed.append(member)
        for member in overflowed:
            self._evict(presence, member)

    @staticmethod
    def _enqueue(member: _Member, frame: Dict[str, Any]) -> bool:
        try:
            member.outbox.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True

    async def _write_frames(self, member: _Member) -> None:
        """Writer task: send a member's queued frames in order until cancelled."""
        connection = member.connection
        while True:
            frame = await member.outbox.get()
            try:
                await connection.send_json(frame)
            except (WebSocketDisconnect, OSError) as e:
                # The member's own teardown removes it from the room
                logger.warning(
                    f"Dropped {frame.get('type')} frame for connection "
                    f"{connection.connection_id}: {e}"
                )
            except Exception as e:
                logger.error(
                    f"Error sending {frame.get('type')} frame to connection "
                    f"{connection.connection_id}: {e}",
                    exc_info=True,
                )
            finally:
                member.outbox.task_done()
