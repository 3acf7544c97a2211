"""Transport gateway: one socket session from handshake to teardown.

Handshake:
    The token is validated BEFORE the socket is accepted. A missing,
    invalid or expired token, a failing token service, or a user already at
    the connection cap closes the handshake with code 1008 and leaves no
    trace in the registry.

Session:
    After accept the connection is registered (presence is updated by the
    registry listener) and a ``connected`` event is sent. Inbound frames are
    handled one at a time, so events from one connection are processed in
    the order they arrived.

Teardown:
    Client close, transport error, idle timeout and unexpected exceptions
    all end the same way: the connection is unregistered and its transport
    closed. Nothing raised while serving one connection reaches the server.
"""
import asyncio
import logging
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect

from pharmalink.auth import AuthenticatedUser, TokenService
from pharmalink.config import ChatSettings

from .events import (
    ConnectedEvent,
    ConnectedPayload,
    JoinConversation,
    LeaveConversation,
    Ping,
    PongEvent,
    SendMessage,
    Typing,
    error_event,
    parse_inbound,
)
from .exceptions import HandshakeRejected, InvalidMessage, StaleConnection
from .registry import Connection, ConnectionRegistry
from .relay import MessageRelay

logger = logging.getLogger(__name__)

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011


class TransportGateway:
    """Accepts socket sessions and feeds their events to the relay."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        relay: MessageRelay,
        tokens: TokenService,
        settings: ChatSettings,
    ) -> None:
        self._registry = registry
        self._relay = relay
        self._tokens = tokens
        self._settings = settings

    def authenticate(self, token: Optional[str]) -> AuthenticatedUser:
        """Resolve a handshake token to a user allowed to open a connection.

        Raises:
            HandshakeRejected: Missing/invalid token, token service failure,
                or the user is at the per-user connection cap.
        """
        if not token:
            raise HandshakeRejected("Missing token")
        try:
            user = self._tokens.validate_token(token)
        except Exception as e:
            raise HandshakeRejected(f"Token validation failed: {e}") from e
        if user is None:
            raise HandshakeRejected("Invalid or expired token")

        self._check_capacity(user.userId)
        return user

    def _check_capacity(self, user_id: int) -> None:
        cap = self._settings.max_connections_per_user
        if cap and len(self._registry.connections_for(user_id)) >= cap:
            raise HandshakeRejected(f"User {user_id} already has {cap} open connection(s)")

    async def serve(self, websocket: WebSocket, token: Optional[str]) -> None:
        """Run one socket session to completion."""
        try:
            user = self.authenticate(token)
        except HandshakeRejected as e:
            logger.warning(f"[WS] Handshake rejected: {e.message}")
            await websocket.close(code=CLOSE_POLICY_VIOLATION)
            return

        await websocket.accept()
        try:
            # Other handshakes of this user may have registered during accept
            self._check_capacity(user.userId)
        except HandshakeRejected as e:
            logger.warning(f"[WS] Handshake rejected after accept: {e.message}")
            await websocket.close(code=CLOSE_POLICY_VIOLATION)
            return

        connection = Connection(websocket, user)
        connection.open()

        close_code = CLOSE_NORMAL
        try:
            await self._registry.register(connection)
            logger.info(
                f"[WS] User {user.userId} ({user.userType.value}) connected as "
                f"{connection.connection_id}"
            )
            await self._relay.reply(
                connection,
                ConnectedEvent(
                    payload=ConnectedPayload(
                        userId=user.userId,
                        userType=user.userType.value,
                        connectionId=connection.connection_id,
                        timestamp=connection.authenticated_at,
                    )
                ),
            )
            await self._receive_loop(connection)
        except WebSocketDisconnect as e:
            connection.mark_closed()
            logger.info(f"[WS] {connection.connection_id} disconnected (code {e.code})")
        except StaleConnection as e:
            close_code = CLOSE_GOING_AWAY
            logger.info(f"[WS] Closing {connection.connection_id}: {e.message}")
        except Exception:
            close_code = CLOSE_INTERNAL_ERROR
            logger.exception(f"[WS] Error serving {connection.connection_id}")
        finally:
            # Runs to completion even if the session task is being cancelled
            await asyncio.shield(self._registry.drop(connection, close_code))

    async def _receive_loop(self, connection: Connection) -> None:
        idle_timeout = self._settings.idle_timeout_seconds
        while connection.is_open:
            remaining = idle_timeout - connection.idle_seconds()
            if remaining <= 0:
                raise StaleConnection(f"No traffic for {idle_timeout:.0f}s")
            try:
                message = await asyncio.wait_for(connection.websocket.receive(), remaining)
            except asyncio.TimeoutError:
                # Outbound traffic may have refreshed last_activity meanwhile
                continue

            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", CLOSE_NORMAL))
            connection.touch()

            text = message.get("text")
            if text is None:
                await self._relay.reply(
                    connection,
                    error_event(InvalidMessage.code, "Only text frames are supported"),
                )
                continue
            await self._dispatch(connection, text)

    async def _dispatch(self, connection: Connection, raw: str) -> None:
        try:
            event = parse_inbound(raw)
        except InvalidMessage as e:
            logger.debug(f"[WS] Bad frame from {connection.connection_id}: {e.message}")
            await self._relay.reply(connection, error_event(e.code, e.message))
            return

        if isinstance(event, SendMessage):
            payload = event.payload
            await self._relay.handle_send(
                connection,
                payload.conversationId,
                payload.content,
                payload.attachmentRef,
                message_type=payload.messageType,
                client_id=payload.clientId,
            )
        elif isinstance(event, JoinConversation):
            await self._relay.handle_join(connection, event.payload.conversationId)
        elif isinstance(event, LeaveConversation):
            await self._relay.handle_leave(connection, event.payload.conversationId)
        elif isinstance(event, Typing):
            await self._relay.handle_typing(
                connection, event.payload.conversationId, event.payload.isTyping
            )
        elif isinstance(event, Ping):
            await self._relay.reply(connection, PongEvent())
