"""Message relay: persist-then-fan-out for inbound chat events.

The relay is the only component that writes messages on behalf of a socket.
For every send it waits for the durable write before any recipient sees the
message, so a client that reconnects and reloads history always finds the
messages that were already delivered to others.

Authorization is delegated to the store (``is_participant``); the relay
never reasons about roles itself.
"""
import asyncio
import logging
from typing import Optional

from pydantic import BaseModel

from pharmalink.config import ChatSettings

from .events import (
    ConversationRef,
    JoinedConversationEvent,
    LeftConversationEvent,
    MessageSentEvent,
    MessageSentPayload,
    TypingEvent,
    TypingNoticePayload,
    error_event,
    new_message_event,
)
from .exceptions import ChatError, InvalidMessage, NotParticipant
from .registry import Connection, ConnectionRegistry
from .rooms import RoomManager
from .schemas import ChatMessage, MessageType
from .store import ChatStore

logger = logging.getLogger(__name__)


class MessageRelay:
    """Handles join/leave/typing/send for one process's connections."""

    def __init__(
        self,
        store: ChatStore,
        rooms: RoomManager,
        registry: ConnectionRegistry,
        settings: ChatSettings,
    ) -> None:
        self._store = store
        self._rooms = rooms
        self._registry = registry
        self._settings = settings

    # =========================================================================
    # Room membership
    # =========================================================================

    async def handle_join(self, connection: Connection, conversation_id: int) -> bool:
        """Subscribe a connection to a conversation it participates in."""
        try:
            await self._require_participant(connection, conversation_id)
        except ChatError as e:
            await self.reply_error(connection, e, conversation_id=conversation_id)
            return False

        self._rooms.join(conversation_id, connection)
        await self.reply(
            connection,
            JoinedConversationEvent(payload=ConversationRef(conversationId=conversation_id)),
        )
        return True

    async def handle_leave(self, connection: Connection, conversation_id: int) -> None:
        self._rooms.leave(conversation_id, connection)
        await self.reply(
            connection,
            LeftConversationEvent(payload=ConversationRef(conversationId=conversation_id)),
        )

    async def handle_typing(
        self, connection: Connection, conversation_id: int, is_typing: bool = True
    ) -> int:
        """Forward a typing indicator to the other members of a joined room."""
        if conversation_id not in connection.rooms:
            await self.reply_error(
                connection,
                NotParticipant("Join the conversation before sending typing indicators"),
                conversation_id=conversation_id,
            )
            return 0
        event = TypingEvent(
            payload=TypingNoticePayload(
                conversationId=conversation_id,
                userId=connection.user_id,
                isTyping=is_typing,
            )
        )
        return await self._rooms.broadcast(conversation_id, event, exclude=connection)

    # =========================================================================
    # Send
    # =========================================================================

    async def handle_send(
        self,
        connection: Connection,
        conversation_id: int,
        content: str,
        attachment_ref: Optional[str] = None,
        *,
        message_type: MessageType = MessageType.TEXT,
        client_id: Optional[str] = None,
    ) -> Optional[ChatMessage]:
        """Validate, persist and fan out one message from a connection.

        Steps:
            1. Validate content and the sender's participation.
            2. Persist (awaited; nothing is sent if this fails).
            3. Broadcast ``new_message`` to the room, excluding ``connection``
               (the sender's other devices still receive it).
            4. Acknowledge to ``connection`` with ``message_sent``.
            5. Bump the conversation's last activity.

        Any failure in 1-2 is reported to ``connection`` only as an ``error``
        event.

        Returns:
            The persisted message, or None if the send was rejected.
        """
        try:
            text = self.validate_content(content)
            await self._require_participant(connection, conversation_id)
            message = await asyncio.to_thread(
                self._store.persist_message,
                conversation_id,
                connection.user_id,
                text,
                message_type,
                attachment_ref,
            )
        except ChatError as e:
            logger.info(
                f"[Relay] Send from user {connection.user_id} to {conversation_id} rejected: "
                f"{e.code} ({e.message})"
            )
            await self.reply_error(
                connection, e, conversation_id=conversation_id, client_id=client_id
            )
            return None

        delivered = await self._rooms.broadcast(
            conversation_id, new_message_event(message, client_id), exclude=connection
        )
        logger.info(
            f"[Relay] Message {message.id} in {conversation_id} delivered to "
            f"{delivered} connection(s)"
        )

        await self.reply(
            connection,
            MessageSentEvent(
                payload=MessageSentPayload(
                    messageId=message.id,
                    conversationId=conversation_id,
                    createdAt=message.createdAt,
                    clientId=client_id,
                )
            ),
        )

        await self._touch_conversation(conversation_id)
        return message

    async def publish_persisted(
        self, message: ChatMessage, exclude: Optional[Connection] = None
    ) -> int:
        """Fan out a message that was already persisted (REST send path)."""
        delivered = await self._rooms.broadcast(
            message.conversationId, new_message_event(message), exclude=exclude
        )
        await self._touch_conversation(message.conversationId)
        return delivered

    async def notify_user(self, user_id: int, event: BaseModel) -> int:
        """Send an event to every live connection of one user."""
        return await self._rooms.send_to(self._registry.connections_for(user_id), event)

    # =========================================================================
    # Helpers
    # =========================================================================

    def validate_content(self, content: str) -> str:
        """Strip a message body and check it against the configured limits.

        Raises:
            InvalidMessage: Blank or longer than ``max_message_length``.
        """
        text = (content or "").strip()
        if not text:
            raise InvalidMessage("Message content cannot be empty")
        if len(text) > self._settings.max_message_length:
            raise InvalidMessage(
                f"Message content exceeds {self._settings.max_message_length} characters"
            )
        return text

    async def _require_participant(self, connection: Connection, conversation_id: int) -> None:
        allowed = await asyncio.to_thread(
            self._store.is_participant, connection.user_id, conversation_id
        )
        if not allowed:
            raise NotParticipant(f"Not a participant of conversation {conversation_id}")

    async def _touch_conversation(self, conversation_id: int) -> None:
        try:
            await asyncio.to_thread(self._store.update_last_activity, conversation_id)
        except ChatError as e:
            logger.warning(f"[Relay] {e.message}")

    async def reply(self, connection: Connection, event: BaseModel) -> bool:
        return await self._rooms.send_to([connection], event) == 1

    async def reply_error(
        self,
        connection: Connection,
        error: ChatError,
        *,
        conversation_id: Optional[int] = None,
        client_id: Optional[str] = None,
    ) -> bool:
        return await self.reply(
            connection,
            error_event(
                error.code,
                error.message,
                conversation_id=conversation_id,
                client_id=client_id,
            ),
        )
