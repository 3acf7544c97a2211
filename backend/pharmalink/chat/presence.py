"""Presence tracker: online/offline status derived from the registry.

Per user: OFFLINE -> ONLINE when the first connection registers,
ONLINE -> OFFLINE when the last one unregisters. Adding a second device
to an online user emits nothing.

Each transition is broadcast as ``presence_changed`` to the rooms of every
conversation the user participates in, so partners who have the
conversation open see the change live. The last-seen time is kept in
memory for the REST layer.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from .events import PresenceChangedEvent, PresencePayload
from .exceptions import ChatError
from .registry import ConnectionRegistry
from .rooms import RoomManager
from .schemas import PresenceResponse
from .store import ChatStore

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Turns registry transitions into presence events and answers queries."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        rooms: RoomManager,
        store: ChatStore,
    ) -> None:
        self._registry = registry
        self._rooms = rooms
        self._store = store
        self._last_seen: Dict[int, datetime] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        # Last state sent to partners, per user
        self._published: Dict[int, bool] = {}
        registry.add_listener(self.on_transition)

    async def on_transition(self, user_id: int, online: bool) -> None:
        """Registry listener: record last-seen and notify conversation partners.

        Emission is serialized per user. A transition that waited behind an
        earlier one publishes the registry's current state, and nothing is
        sent if partners were already told that state.
        """
        self._last_seen[user_id] = datetime.now(timezone.utc)
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            online = self._registry.is_online(user_id)
            if self._published.get(user_id) == online:
                return
            self._published[user_id] = online
            logger.info(f"[Presence] User {user_id} is now {'online' if online else 'offline'}")

            try:
                conversation_ids = await asyncio.to_thread(
                    self._store.conversation_ids_for, user_id
                )
            except ChatError as e:
                logger.warning(
                    f"[Presence] Could not look up conversations of user {user_id}: {e}"
                )
                return

            event = PresenceChangedEvent(payload=PresencePayload(userId=user_id, online=online))
            for conversation_id in conversation_ids:
                await self._rooms.broadcast(conversation_id, event)

    def is_online(self, user_id: int) -> bool:
        return self._registry.is_online(user_id)

    def last_seen(self, user_id: int) -> Optional[datetime]:
        """Now if the user is online, else the time of their last transition."""
        if self._registry.is_online(user_id):
            return datetime.now(timezone.utc)
        return self._last_seen.get(user_id)

    def snapshot(self, user_id: int) -> PresenceResponse:
        return PresenceResponse(
            userId=user_id,
            online=self.is_online(user_id),
            lastSeen=self.last_seen(user_id),
        )
