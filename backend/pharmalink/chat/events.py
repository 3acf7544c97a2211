"""WebSocket event envelopes.

Every frame, in either direction, is one JSON object::

    {"type": "<kind>", "payload": {...}}

Both directions are closed tagged unions discriminated on ``type``. Inbound
frames are parsed with :func:`parse_inbound`, which raises InvalidMessage for
anything outside the union; outbound events are built from the models below
and serialized with ``model_dump_json()``.

Inbound (client -> server):
    - join_conversation: subscribe this connection to a conversation room
    - leave_conversation: unsubscribe
    - send_message: persist and fan out a message
    - typing: typing indicator (not persisted)
    - ping: heartbeat

Outbound (server -> client):
    - connected: handshake accepted
    - joined_conversation / left_conversation: room membership confirmations
    - new_message: a persisted message from another connection
    - message_sent: acknowledgement to the sending connection
    - presence_changed: a conversation partner went online/offline
    - typing: typing indicator from another participant
    - conversation_created: a patient opened a conversation with this user
    - pong: heartbeat reply
    - error: request from this connection failed
"""
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .exceptions import InvalidMessage
from .schemas import ChatMessage, Conversation, MessageType


# =============================================================================
# Inbound
# =============================================================================


class ConversationRef(BaseModel):
    conversationId: int = Field(..., ge=1)


class SendMessagePayload(BaseModel):
    conversationId: int = Field(..., ge=1)
    content: str = Field(..., description="Message text")
    messageType: MessageType = MessageType.TEXT
    attachmentRef: Optional[str] = Field(None, max_length=2048)
    # Provisional id generated by the client, echoed back so it can match
    # the acknowledgement and drop duplicates of its own retries.
    clientId: Optional[str] = Field(None, max_length=64)


class TypingPayload(BaseModel):
    conversationId: int = Field(..., ge=1)
    isTyping: bool = True


class JoinConversation(BaseModel):
    type: Literal["join_conversation"]
    payload: ConversationRef


class LeaveConversation(BaseModel):
    type: Literal["leave_conversation"]
    payload: ConversationRef


class SendMessage(BaseModel):
    type: Literal["send_message"]
    payload: SendMessagePayload


class Typing(BaseModel):
    type: Literal["typing"]
    payload: TypingPayload


class Ping(BaseModel):
    type: Literal["ping"]
    payload: dict = Field(default_factory=dict)


InboundEvent = Annotated[
    Union[JoinConversation, LeaveConversation, SendMessage, Typing, Ping],
    Field(discriminator="type"),
]

_inbound_adapter = TypeAdapter(InboundEvent)


def parse_inbound(raw: str) -> InboundEvent:
    """Parse one inbound text frame.

    Raises:
        InvalidMessage: Malformed JSON, unknown type or bad payload.
    """
    try:
        return _inbound_adapter.validate_json(raw)
    except ValidationError as e:
        raise InvalidMessage(f"Invalid message format: {e.error_count()} error(s)") from e


# =============================================================================
# Outbound
# =============================================================================


class ConnectedPayload(BaseModel):
    userId: int
    userType: str
    connectionId: str
    timestamp: datetime


class NewMessagePayload(ChatMessage):
    clientId: Optional[str] = None


class MessageSentPayload(BaseModel):
    messageId: int
    conversationId: int
    createdAt: datetime
    clientId: Optional[str] = None


class PresencePayload(BaseModel):
    userId: int
    online: bool


class TypingNoticePayload(BaseModel):
    conversationId: int
    userId: int
    isTyping: bool


class ErrorPayload(BaseModel):
    code: str
    message: str
    conversationId: Optional[int] = None
    clientId: Optional[str] = None


class ConnectedEvent(BaseModel):
    type: Literal["connected"] = "connected"
    payload: ConnectedPayload


class JoinedConversationEvent(BaseModel):
    type: Literal["joined_conversation"] = "joined_conversation"
    payload: ConversationRef


class LeftConversationEvent(BaseModel):
    type: Literal["left_conversation"] = "left_conversation"
    payload: ConversationRef


class NewMessageEvent(BaseModel):
    type: Literal["new_message"] = "new_message"
    payload: NewMessagePayload


class MessageSentEvent(BaseModel):
    type: Literal["message_sent"] = "message_sent"
    payload: MessageSentPayload


class PresenceChangedEvent(BaseModel):
    type: Literal["presence_changed"] = "presence_changed"
    payload: PresencePayload


class TypingEvent(BaseModel):
    type: Literal["typing"] = "typing"
    payload: TypingNoticePayload


class ConversationCreatedEvent(BaseModel):
    type: Literal["conversation_created"] = "conversation_created"
    payload: Conversation


class PongEvent(BaseModel):
    type: Literal["pong"] = "pong"
    payload: dict = Field(default_factory=dict)


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    payload: ErrorPayload


OutboundEvent = Annotated[
    Union[
        ConnectedEvent,
        JoinedConversationEvent,
        LeftConversationEvent,
        NewMessageEvent,
        MessageSentEvent,
        PresenceChangedEvent,
        TypingEvent,
        ConversationCreatedEvent,
        PongEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]


def new_message_event(message: ChatMessage, client_id: Optional[str] = None) -> NewMessageEvent:
    return NewMessageEvent(
        payload=NewMessagePayload(**message.model_dump(), clientId=client_id)
    )


def error_event(
    code: str,
    message: str,
    *,
    conversation_id: Optional[int] = None,
    client_id: Optional[str] = None,
) -> ErrorEvent:
    return ErrorEvent(
        payload=ErrorPayload(
            code=code,
            message=message,
            conversationId=conversation_id,
            clientId=client_id,
        )
    )


_outbound_adapter = TypeAdapter(OutboundEvent)


def parse_outbound(raw: str) -> OutboundEvent:
    """Parse one server frame back into its event model (clients, tooling).

    Raises:
        InvalidMessage: The frame is not a known outbound event.
    """
    try:
        return _outbound_adapter.validate_json(raw)
    except ValidationError as e:
        raise InvalidMessage(f"Invalid event format: {e.error_count()} error(s)") from e
