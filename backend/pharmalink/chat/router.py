"""Chat router providing the conversation REST API and the realtime socket.

This module provides:
    - GET /chat/conversations: Conversations of the caller
    - POST /chat/conversations: Open a conversation (patients only)
    - GET /chat/conversations/{conversation_id}: Conversation with message history
    - POST /chat/conversations/{conversation_id}/messages: Send a message over REST
    - PATCH /chat/conversations/{conversation_id}/read: Mark messages as read
    - GET /chat/unread-count: Unread totals of the caller
    - WebSocket /ws/chat: Real-time delivery

REST and socket share the same message store: a message sent over REST is
fanned out to live sockets exactly like one sent over the socket, and a
message sent over the socket shows up in the REST history.

Protocol Message Types (socket, client -> server):
    - join_conversation: Subscribe to a conversation's events
    - leave_conversation: Unsubscribe
    - send_message: Persist and deliver a message
    - typing: Typing indicator
    - ping: Heartbeat
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket

from pharmalink.auth import AuthenticatedUser, UserType, get_current_user

from .events import ConversationCreatedEvent
from .exceptions import InvalidMessage, PersistenceFailure
from .hub import ChatHub
from .schemas import (
    ChatMessage,
    Conversation,
    ConversationCreate,
    ConversationCreatedResponse,
    ConversationDetailResponse,
    ConversationListResponse,
    MarkReadResponse,
    MessageCreate,
    UnreadCountResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


async def _load_conversation(
    hub: ChatHub, conversation_id: int, user: AuthenticatedUser
) -> Conversation:
    """Fetch a conversation the caller participates in.

    Raises:
        HTTPException 404: Unknown conversation.
        HTTPException 403: Caller is not a participant.
    """
    conversation = await asyncio.to_thread(hub.store.get_conversation, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if user.userId not in conversation.participant_ids():
        raise HTTPException(status_code=403, detail="Access denied")
    return conversation


@router.get("/chat/conversations", response_model=ConversationListResponse)
async def list_conversations(
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(20, ge=1, le=100, description="Conversations per page"),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ConversationListResponse:
    """List the caller's conversations, most recent activity first.

    Each entry carries the latest message and the number of unread messages
    from the other participant.
    """
    hub = ChatHub.get_instance()
    conversations, pagination = await asyncio.to_thread(
        hub.store.list_conversations, user.userId, page, limit
    )
    return ConversationListResponse(conversations=conversations, pagination=pagination)


@router.post(
    "/chat/conversations",
    response_model=ConversationCreatedResponse,
    status_code=201,
)
async def create_conversation(
    request: ConversationCreate,
    user: AuthenticatedUser = Depends(get_current_user),
) -> ConversationCreatedResponse:
    """Open a conversation with a healthcare professional.

    Only patients may open conversations, and only one active conversation
    per professional. The professional's live connections receive a
    ``conversation_created`` event.

    Raises:
        HTTPException 403: Caller is not a patient.
        HTTPException 409: An active conversation already exists.
        HTTPException 500: The store failed to save it.
    """
    if user.userType != UserType.PATIENT:
        raise HTTPException(status_code=403, detail="Only patients can start conversations")
    if request.professional_id == user.userId:
        raise HTTPException(status_code=400, detail="Cannot start a conversation with yourself")

    hub = ChatHub.get_instance()
    try:
        conversation, message = await asyncio.to_thread(
            hub.store.create_conversation, user.userId, request
        )
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PersistenceFailure as e:
        raise HTTPException(status_code=500, detail=e.message)

    await hub.relay.notify_user(
        conversation.professionalId, ConversationCreatedEvent(payload=conversation)
    )
    return ConversationCreatedResponse(conversationId=conversation.id, messageId=message.id)


@router.get(
    "/chat/conversations/{conversation_id}",
    response_model=ConversationDetailResponse,
)
async def get_conversation(
    conversation_id: int,
    page: int = Query(1, ge=1, description="Page number"),
    limit: Optional[int] = Query(None, ge=1, description="Messages per page"),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ConversationDetailResponse:
    """Get a conversation with its messages, oldest first.

    Opening a conversation marks the other participant's messages as read.

    Example:
        GET /chat/conversations/42?page=1&limit=50
    """
    hub = ChatHub.get_instance()
    conversation = await _load_conversation(hub, conversation_id, user)
    limit = min(limit or hub.settings.default_page_size, hub.settings.max_page_size)

    await asyncio.to_thread(hub.store.mark_read, conversation_id, user.userId)
    messages, pagination = await asyncio.to_thread(
        hub.store.get_messages, conversation_id, page, limit
    )
    return ConversationDetailResponse(
        conversation=conversation, messages=messages, pagination=pagination
    )


@router.post(
    "/chat/conversations/{conversation_id}/messages",
    response_model=ChatMessage,
    status_code=201,
)
async def send_message(
    conversation_id: int,
    request: MessageCreate,
    user: AuthenticatedUser = Depends(get_current_user),
) -> ChatMessage:
    """Send a message without a socket.

    The message is persisted first, then delivered to every connection that
    has the conversation open.
    """
    hub = ChatHub.get_instance()
    await _load_conversation(hub, conversation_id, user)

    try:
        content = hub.relay.validate_content(request.message)
    except InvalidMessage as e:
        raise HTTPException(status_code=400, detail=e.message)

    try:
        message = await asyncio.to_thread(
            hub.store.persist_message,
            conversation_id,
            user.userId,
            content,
            request.message_type,
            request.attachment_url,
        )
    except PersistenceFailure as e:
        raise HTTPException(status_code=500, detail=e.message)

    delivered = await hub.relay.publish_persisted(message)
    logger.info(
        f"[Chat] REST message {message.id} in {conversation_id} delivered to "
        f"{delivered} connection(s)"
    )
    return message


@router.patch(
    "/chat/conversations/{conversation_id}/read",
    response_model=MarkReadResponse,
)
async def mark_messages_read(
    conversation_id: int,
    user: AuthenticatedUser = Depends(get_current_user),
) -> MarkReadResponse:
    hub = ChatHub.get_instance()
    await _load_conversation(hub, conversation_id, user)
    updated = await asyncio.to_thread(hub.store.mark_read, conversation_id, user.userId)
    return MarkReadResponse(updated_count=updated)


@router.get("/chat/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    user: AuthenticatedUser = Depends(get_current_user),
) -> UnreadCountResponse:
    hub = ChatHub.get_instance()
    counts = await asyncio.to_thread(hub.store.unread_counts, user.userId)
    return UnreadCountResponse(**counts)


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Access token"),
) -> None:
    """WebSocket endpoint for real-time chat.

    Protocol Flow:
        1. Client connects with ?token=<jwt>
           → Invalid token: handshake closed with 1008
           → Server sends: {type: "connected", payload: {userId, userType, connectionId}}
        2. Client sends: {type: "join_conversation", payload: {conversationId}}
           → Server sends: {type: "joined_conversation", ...}
        3. Client sends: {type: "send_message", payload: {conversationId, content}}
           → Other members receive: {type: "new_message", payload: {...}}
           → Sender receives: {type: "message_sent", payload: {messageId, ...}}
        4. On disconnect, partners receive {type: "presence_changed", online: false}
           when it was the user's last connection.

    Args:
        websocket: The WebSocket connection.
        token: Access token from the query string.
    """
    await ChatHub.get_instance().gateway.serve(websocket, token)
