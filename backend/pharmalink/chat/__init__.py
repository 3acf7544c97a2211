"""Real-time chat delivery between patients and healthcare professionals."""

from .exceptions import (
    ChatError,
    DeliveryFailure,
    HandshakeRejected,
    InvalidMessage,
    NotParticipant,
    PersistenceFailure,
    StaleConnection,
)
from .hub import ChatHub
from .registry import Connection, ConnectionRegistry, ConnectionState
from .rooms import RoomManager
from .store import ChatStore

__all__ = [
    "ChatError",
    "ChatHub",
    "ChatStore",
    "Connection",
    "ConnectionRegistry",
    "ConnectionState",
    "DeliveryFailure",
    "HandshakeRejected",
    "InvalidMessage",
    "NotParticipant",
    "PersistenceFailure",
    "RoomManager",
    "StaleConnection",
]
