"""Conversation rooms: which connections receive a conversation's events.

A room exists only while it has at least one member. Membership is held
weakly so a connection that vanishes without being unregistered can never
be kept alive (or sent to) by a stale room entry.
"""
import asyncio
import logging
import weakref
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel

from .exceptions import DeliveryFailure

if TYPE_CHECKING:
    from .registry import Connection

logger = logging.getLogger(__name__)

# Called with each connection whose send failed during fan-out
FailureHandler = Callable[["Connection"], Awaitable[None]]


class RoomManager:
    """Conversation id -> set of subscribed connections."""

    def __init__(self) -> None:
        self._rooms: Dict[int, "weakref.WeakSet[Connection]"] = {}
        self._on_failure: Optional[FailureHandler] = None

    def set_failure_handler(self, handler: FailureHandler) -> None:
        """Install the callback that tears down connections that fail a send."""
        self._on_failure = handler

    def join(self, conversation_id: int, connection: "Connection") -> bool:
        """Subscribe a connection to a conversation room.

        Participation must have been checked by the caller.

        Returns:
            True if the connection was not already a member.
        """
        if not connection.is_open:
            return False
        room = self._rooms.setdefault(conversation_id, weakref.WeakSet())
        if connection in room:
            return False
        room.add(connection)
        connection.rooms.add(conversation_id)
        logger.debug(
            f"[Rooms] {connection.connection_id} joined {conversation_id} ({len(room)} member(s))"
        )
        return True

    def leave(self, conversation_id: int, connection: "Connection") -> bool:
        """Unsubscribe a connection. Empty rooms are discarded.

        Returns:
            True if the connection was a member.
        """
        connection.rooms.discard(conversation_id)
        room = self._rooms.get(conversation_id)
        if room is None or connection not in room:
            return False
        room.discard(connection)
        if not room:
            del self._rooms[conversation_id]
        logger.debug(f"[Rooms] {connection.connection_id} left {conversation_id}")
        return True

    def leave_all(self, connection: "Connection") -> List[int]:
        """Remove a connection from every room it joined.

        Returns:
            Conversation ids it was removed from.
        """
        left = [cid for cid in list(connection.rooms) if self.leave(cid, connection)]
        connection.rooms.clear()
        return left

    def members(self, conversation_id: int) -> List["Connection"]:
        """Snapshot of the room's current members."""
        room = self._rooms.get(conversation_id)
        return list(room) if room is not None else []

    def rooms_for(self, connection: "Connection") -> Set[int]:
        return set(connection.rooms)

    def get_room_count(self) -> int:
        return len(self._rooms)

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def broadcast(
        self,
        conversation_id: int,
        event: BaseModel,
        exclude: Optional["Connection"] = None,
    ) -> int:
        """Send an event to every member of a room except ``exclude``.

        Members are snapshotted before sending so a join or leave during the
        fan-out does not affect this delivery. A failing member is handed to
        the failure handler; the others still receive the event.

        Returns:
            Number of members the event was delivered to.
        """
        targets = [c for c in self.members(conversation_id) if c is not exclude]
        return await self.send_to(targets, event)

    async def send_to(self, connections: Iterable["Connection"], event: BaseModel) -> int:
        """Send an event to an explicit list of connections concurrently."""
        targets = list(connections)
        if not targets:
            return 0

        results = await asyncio.gather(*(self._safe_send(c, event) for c in targets))

        failed = [c for c, ok in zip(targets, results) if not ok]
        for connection in failed:
            await self._handle_failure(connection)
        return len(targets) - len(failed)

    async def _safe_send(self, connection: "Connection", event: BaseModel) -> bool:
        try:
            await connection.send(event)
            return True
        except DeliveryFailure as e:
            logger.warning(f"[Rooms] {e.message}")
            return False

    async def _handle_failure(self, connection: "Connection") -> None:
        if self._on_failure is None:
            self.leave_all(connection)
            return
        await self._on_failure(connection)
