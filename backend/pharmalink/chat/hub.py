"""Process-wide wiring of the realtime chat components.

One hub owns exactly one registry, room manager, presence tracker, relay
and gateway. It is created on application startup and torn down on
shutdown by closing every live connection.

Usage:
    hub = ChatHub.get_instance()
    await hub.gateway.serve(websocket, token)
"""
import logging
from typing import Optional

from pharmalink.auth import TokenService, get_token_service
from pharmalink.config import ChatSettings, get_config

from .gateway import CLOSE_GOING_AWAY, CLOSE_INTERNAL_ERROR, TransportGateway
from .presence import PresenceTracker
from .registry import Connection, ConnectionRegistry
from .relay import MessageRelay
from .rooms import RoomManager
from .store import ChatStore

logger = logging.getLogger(__name__)


class ChatHub:
    """Container for the chat core of one process."""

    _instance: Optional["ChatHub"] = None

    def __init__(
        self,
        store: ChatStore,
        tokens: TokenService,
        settings: ChatSettings,
    ) -> None:
        self.store = store
        self.settings = settings
        self.rooms = RoomManager()
        self.registry = ConnectionRegistry(self.rooms)
        self.rooms.set_failure_handler(self._on_delivery_failure)
        self.presence = PresenceTracker(self.registry, self.rooms, store)
        self.relay = MessageRelay(store, self.rooms, self.registry, settings)
        self.gateway = TransportGateway(self.registry, self.relay, tokens, settings)

    @classmethod
    def get_instance(cls) -> "ChatHub":
        """Get or create the hub from the current configuration."""
        if cls._instance is None:
            config = get_config()
            cls._instance = cls(
                ChatStore.get_instance(config.database.path),
                get_token_service(),
                config.chat,
            )
            logger.info("[Hub] Chat hub initialized")
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Forget the current hub (tests). Live connections are not closed."""
        cls._instance = None

    async def _on_delivery_failure(self, connection: Connection) -> None:
        # A connection that failed a send is treated as disconnected
        await self.registry.drop(connection, CLOSE_INTERNAL_ERROR)

    async def shutdown(self) -> None:
        """Close every live connection."""
        closed = await self.registry.close_all(CLOSE_GOING_AWAY)
        logger.info(f"[Hub] Shutdown complete, {closed} connection(s) closed")
