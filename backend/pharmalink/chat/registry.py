"""Connection registry: who is connected right now.

The registry is the authoritative map of user id -> live connections and
connection id -> connection. A user may hold several connections at once
(phone + tablet); presence is derived from it: a user is online iff the
registry holds at least one of their connections.

Concurrency:
    All mutations are plain synchronous dict operations executed on the
    event loop, so each register/unregister is atomic with respect to any
    other registry operation and to room fan-out. Presence listeners are
    awaited only after the mutation has completed.
"""
import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

from fastapi import WebSocket
from pydantic import BaseModel

from pharmalink.auth import AuthenticatedUser

from .exceptions import DeliveryFailure
from .rooms import RoomManager

logger = logging.getLogger(__name__)

# Listener signature: (user_id, online) -> awaitable
PresenceListener = Callable[[int, bool], Awaitable[None]]


class ConnectionState(str, Enum):
    """Lifecycle of a single socket session.

    CONNECTING -> OPEN -> CLOSING -> CLOSED. Events are only sent while OPEN.
    """
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class Connection:
    """One live socket session of one authenticated user.

    Attributes:
        connection_id: Opaque unique handle.
        user_id: Owning user (fixed for the connection's lifetime).
        user_type: Account role of the owner.
        authenticated_at: When the handshake succeeded (UTC).
        last_activity: Monotonic time of the last inbound or outbound frame.
        rooms: Conversation ids this connection has joined (back-reference
            maintained by RoomManager).
    """

    def __init__(
        self,
        websocket: WebSocket,
        user: AuthenticatedUser,
        connection_id: Optional[str] = None,
    ) -> None:
        self.connection_id = connection_id or uuid.uuid4().hex
        self.websocket = websocket
        self.user_id = user.userId
        self.user_type = user.userType
        self.authenticated_at = datetime.now(timezone.utc)
        self.last_activity = time.monotonic()
        self.state = ConnectionState.CONNECTING
        self.rooms: Set[int] = set()

    def __repr__(self) -> str:
        return f"<Connection {self.connection_id[:8]} user={self.user_id} {self.state.value}>"

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN

    def open(self) -> None:
        """CONNECTING -> OPEN, once the transport has accepted the socket."""
        if self.state != ConnectionState.CONNECTING:
            raise RuntimeError(f"Cannot open connection in state {self.state.value}")
        self.state = ConnectionState.OPEN
        self.touch()

    def begin_close(self) -> None:
        """Stop accepting outbound events; the transport is closed later."""
        if self.state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            self.state = ConnectionState.CLOSING

    def mark_closed(self) -> None:
        """The peer closed the transport; nothing left to close."""
        self.state = ConnectionState.CLOSED

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def idle_seconds(self) -> float:
        return time.monotonic() - self.last_activity

    async def send(self, event: BaseModel) -> None:
        """Send one event as a JSON text frame.

        Raises:
            DeliveryFailure: The connection is not open or the transport failed.
        """
        if self.state != ConnectionState.OPEN:
            raise DeliveryFailure(f"Connection {self.connection_id} is {self.state.value}")
        try:
            await self.websocket.send_text(event.model_dump_json())
        except Exception as e:
            raise DeliveryFailure(f"Send to connection {self.connection_id} failed: {e}") from e
        self.touch()

    async def close(self, code: int = 1000) -> None:
        """Close the transport. Safe to call more than once."""
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSING
        try:
            await self.websocket.close(code=code)
        except Exception as e:
            # Peer already gone or close already sent
            logger.debug(f"[Registry] Close of {self.connection_id} ignored: {e}")
        finally:
            self.state = ConnectionState.CLOSED


class ConnectionRegistry:
    """Maps user id <-> live connections with O(1) lookups both ways."""

    def __init__(self, rooms: RoomManager) -> None:
        self._rooms = rooms
        # user_id -> {connection_id -> Connection}
        self._by_user: Dict[int, Dict[str, Connection]] = {}
        # connection_id -> Connection
        self._by_id: Dict[str, Connection] = {}
        self._listeners: List[PresenceListener] = []

    def add_listener(self, listener: PresenceListener) -> None:
        """Subscribe to offline->online and online->offline transitions."""
        self._listeners.append(listener)

    async def register(self, connection: Connection) -> bool:
        """Add a connection under its owner.

        Re-registering a connection id replaces the prior entry.

        Returns:
            True if this made the owner go offline -> online.
        """
        was_online = self.is_online(connection.user_id)
        previous = self._by_id.get(connection.connection_id)
        left_offline: Optional[int] = None
        if previous is not None and previous is not connection:
            if self._detach(previous) and previous.user_id != connection.user_id:
                left_offline = previous.user_id

        self._by_id[connection.connection_id] = connection
        self._by_user.setdefault(connection.user_id, {})[connection.connection_id] = connection
        logger.info(
            f"[Registry] Registered {connection.connection_id} for user {connection.user_id} "
            f"({len(self._by_user[connection.user_id])} connection(s))"
        )

        if left_offline is not None:
            await self._notify(left_offline, False)
        went_online = not was_online
        if went_online:
            await self._notify(connection.user_id, True)
        return went_online

    async def unregister(self, connection: Connection) -> bool:
        """Remove a connection and every room membership it held.

        Idempotent: unregistering an unknown connection does nothing.

        Returns:
            True if this made the owner go online -> offline.
        """
        if self._by_id.get(connection.connection_id) is not connection:
            return False
        went_offline = self._detach(connection)
        logger.info(
            f"[Registry] Unregistered {connection.connection_id} for user {connection.user_id}"
        )
        if went_offline:
            await self._notify(connection.user_id, False)
        return went_offline

    async def drop(self, connection: Connection, code: int = 1000) -> None:
        """Tear a connection down: stop sends, unregister, close the transport."""
        connection.begin_close()
        await self.unregister(connection)
        await connection.close(code)

    async def close_all(self, code: int = 1001) -> int:
        """Close every live connection (process shutdown).

        Returns:
            Number of connections closed.
        """
        connections = list(self._by_id.values())
        for connection in connections:
            await self.drop(connection, code)
        logger.info(f"[Registry] Closed {len(connections)} connection(s)")
        return len(connections)

    def _detach(self, connection: Connection) -> bool:
        """Synchronously remove all traces of a connection.

        Returns:
            True if the owner has no connections left.
        """
        self._rooms.leave_all(connection)
        self._by_id.pop(connection.connection_id, None)
        bucket = self._by_user.get(connection.user_id)
        if bucket is None:
            return False
        bucket.pop(connection.connection_id, None)
        if bucket:
            return False
        del self._by_user[connection.user_id]
        return True

    async def _notify(self, user_id: int, online: bool) -> None:
        for listener in list(self._listeners):
            try:
                await listener(user_id, online)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    f"[Registry] Presence listener failed for user {user_id} (online={online})"
                )

    # =========================================================================
    # Queries
    # =========================================================================

    def is_online(self, user_id: int) -> bool:
        return bool(self._by_user.get(user_id))

    def connections_for(self, user_id: int) -> List[Connection]:
        """Snapshot of the user's live connections."""
        return list(self._by_user.get(user_id, {}).values())

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._by_id.get(connection_id)

    def get_connection_count(self) -> int:
        """Get the number of live connections across all users."""
        return len(self._by_id)

    def get_online_user_ids(self) -> List[int]:
        return list(self._by_user.keys())
