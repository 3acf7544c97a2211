"""Pydantic schemas for conversations and messages.

Records (ChatMessage, Conversation) mirror rows of the message store and use
camelCase field names because they are sent to the mobile client as-is,
both from the REST endpoints and inside realtime events.

Request bodies keep the snake_case field names of the existing PharmaLink
REST API.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class MessageType(str, Enum):
    """Kind of chat message content."""
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    PRESCRIPTION = "prescription"


class ConversationType(str, Enum):
    """Topic of a conversation, chosen by the patient when opening it."""
    GENERAL = "general"
    PRESCRIPTION = "prescription"
    APPOINTMENT = "appointment"
    EMERGENCY = "emergency"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


# =============================================================================
# Records
# =============================================================================


class ChatMessage(BaseModel):
    """A persisted chat message.

    Attributes:
        id: Store-assigned message id.
        conversationId: Conversation the message belongs to.
        senderId: User id of the sender.
        content: Message text.
        messageType: Kind of content.
        attachmentRef: Optional URL/reference of an uploaded attachment.
        isRead: True once the other participant has read it.
        readAt: When it was marked read.
        createdAt: When it was persisted (UTC).
    """
    id: int = Field(..., description="Message ID")
    conversationId: int = Field(..., description="Conversation ID")
    senderId: int = Field(..., description="Sender user ID")
    content: str = Field(..., description="Message content")
    messageType: MessageType = Field(default=MessageType.TEXT)
    attachmentRef: Optional[str] = Field(default=None)
    isRead: bool = Field(default=False)
    readAt: Optional[datetime] = Field(default=None)
    createdAt: datetime = Field(..., description="Creation time (UTC)")


class Conversation(BaseModel):
    """A conversation between a patient and a healthcare professional."""
    id: int
    patientId: int
    professionalId: int
    facilityId: Optional[int] = None
    subject: str
    conversationType: ConversationType = ConversationType.GENERAL
    status: ConversationStatus = ConversationStatus.ACTIVE
    createdAt: datetime
    lastActivity: datetime

    def participant_ids(self) -> List[int]:
        return [self.patientId, self.professionalId]


class ConversationSummary(Conversation):
    """Conversation list entry with its latest message and unread count."""
    lastMessage: Optional[str] = None
    lastMessageAt: Optional[datetime] = None
    unreadCount: int = 0


# =============================================================================
# Requests
# =============================================================================


class ConversationCreate(BaseModel):
    """Body of POST /chat/conversations (patients only)."""
    professional_id: int = Field(..., ge=1)
    facility_id: Optional[int] = Field(None, ge=1)
    subject: str = Field(..., min_length=5, max_length=100)
    initial_message: str = Field(..., min_length=10, max_length=500)
    message_type: ConversationType = ConversationType.GENERAL


class MessageCreate(BaseModel):
    """Body of POST /chat/conversations/{id}/messages."""
    message: str = Field(..., min_length=1)
    message_type: MessageType = MessageType.TEXT
    attachment_url: Optional[str] = Field(None, max_length=2048)


# =============================================================================
# Responses
# =============================================================================


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class ConversationListResponse(BaseModel):
    conversations: List[ConversationSummary]
    pagination: Pagination


class ConversationDetailResponse(BaseModel):
    conversation: Conversation
    messages: List[ChatMessage]
    pagination: Pagination


class ConversationCreatedResponse(BaseModel):
    conversationId: int
    messageId: int


class UnreadCountResponse(BaseModel):
    total_unread: int = 0
    conversations_with_unread: int = 0


class MarkReadResponse(BaseModel):
    updated_count: int = 0


class PresenceResponse(BaseModel):
    userId: int
    online: bool
    lastSeen: Optional[datetime] = None
