"""DuckDB-based message store for conversations and chat messages.

This is the durable source of truth shared by the REST conversation API and
the realtime relay, so both paths observe the same data. The service follows
the singleton pattern so only one database connection exists per process.

Database Schema:
    chat_conversations table:
        - id: Auto-incrementing primary key
        - patient_id: User ID of the patient who opened the conversation
        - professional_id: User ID of the doctor/pharmacist answering it
        - facility_id: Optional healthcare facility reference
        - subject, conversation_type, status
        - created_at, last_activity: UTC timestamps

    chat_messages table:
        - id: Auto-incrementing primary key
        - conversation_id, sender_id
        - message, message_type, attachment_url
        - is_read, read_at
        - created_at: UTC timestamp

Thread Safety:
    A DuckDB connection is NOT safe for concurrent use. Every public method
    holds ``self._lock`` for its whole duration, which also makes each call
    atomic with respect to the others (no torn writes). The async chat core
    calls these methods through ``asyncio.to_thread``.

Usage:
    store = ChatStore.get_instance()
    message = store.persist_message(42, sender_id=7, content="Hello")
    store.is_participant(7, 42)
"""
import logging
import math
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import duckdb

from .exceptions import PersistenceFailure
from .schemas import (
    ChatMessage,
    Conversation,
    ConversationCreate,
    ConversationStatus,
    ConversationSummary,
    MessageType,
    Pagination,
)

logger = logging.getLogger(__name__)

_CONVERSATION_COLUMNS = (
    "id, patient_id, professional_id, facility_id, subject, "
    "conversation_type, status, created_at, last_activity"
)
_MESSAGE_COLUMNS = (
    "id, conversation_id, sender_id, message, message_type, "
    "attachment_url, is_read, read_at, created_at"
)


def _utcnow() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP column type."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def paginate(page: int, limit: int, total: int) -> Pagination:
    return Pagination(
        page=page,
        limit=limit,
        total=total,
        pages=math.ceil(total / limit) if limit else 0,
    )


class ChatStore:
    """Singleton service persisting conversations and messages in DuckDB.

    Attributes:
        _instance: Singleton instance of the service.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["ChatStore"] = None
    _db_path: str = "pharmalink_chat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the store, creating the schema if it doesn't exist.

        Args:
            db_path: Path to DuckDB file (":memory:" for an ephemeral store).
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "ChatStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the database connection and clear the singleton (tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create sequences and tables. Safe to call multiple times."""
        with self._lock:
            conn = self._get_connection()
            conn.execute("CREATE SEQUENCE IF NOT EXISTS chat_conversations_seq START 1")
            conn.execute("CREATE SEQUENCE IF NOT EXISTS chat_messages_seq START 1")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chat_conversations (
                    id INTEGER DEFAULT nextval('chat_conversations_seq') PRIMARY KEY,
                    patient_id INTEGER NOT NULL,
                    professional_id INTEGER NOT NULL,
                    facility_id INTEGER,
                    subject VARCHAR NOT NULL,
                    conversation_type VARCHAR NOT NULL,
                    status VARCHAR NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    last_activity TIMESTAMP NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chat_messages (
                    id INTEGER DEFAULT nextval('chat_messages_seq') PRIMARY KEY,
                    conversation_id INTEGER NOT NULL,
                    sender_id INTEGER NOT NULL,
                    message VARCHAR NOT NULL,
                    message_type VARCHAR NOT NULL,
                    attachment_url VARCHAR,
                    is_read BOOLEAN NOT NULL DEFAULT false,
                    read_at TIMESTAMP,
                    created_at TIMESTAMP NOT NULL
                )
            """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    # =========================================================================
    # Row mapping
    # =========================================================================

    @staticmethod
    def _to_conversation(row: Tuple[Any, ...]) -> Conversation:
        return Conversation(
            id=row[0],
            patientId=row[1],
            professionalId=row[2],
            facilityId=row[3],
            subject=row[4],
            conversationType=row[5],
            status=row[6],
            createdAt=row[7],
            lastActivity=row[8],
        )

    @staticmethod
    def _to_message(row: Tuple[Any, ...]) -> ChatMessage:
        return ChatMessage(
            id=row[0],
            conversationId=row[1],
            senderId=row[2],
            content=row[3],
            messageType=row[4],
            attachmentRef=row[5],
            isRead=row[6],
            readAt=row[7],
            createdAt=row[8],
        )

    # =========================================================================
    # Conversations
    # =========================================================================

    def create_conversation(
        self, patient_id: int, request: ConversationCreate
    ) -> Tuple[Conversation, ChatMessage]:
        """Open a conversation and store its initial message in one transaction.

        Raises:
            ValueError: An active conversation between the patient and the
                professional already exists.
            PersistenceFailure: The database write failed.
        """
        now = _utcnow()
        with self._lock:
            conn = self._get_connection()
            existing = conn.execute(
                """
                SELECT id FROM chat_conversations
                WHERE patient_id = ? AND professional_id = ? AND status = ?
                """,
                [patient_id, request.professional_id, ConversationStatus.ACTIVE.value],
            ).fetchone()
            if existing:
                raise ValueError("An active conversation already exists with this professional")

            try:
                conn.execute("BEGIN TRANSACTION")
                row = conn.execute(
                    f"""
                    INSERT INTO chat_conversations (
                        patient_id, professional_id, facility_id, subject,
                        conversation_type, status, created_at, last_activity
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    RETURNING {_CONVERSATION_COLUMNS}
                    """,
                    [
                        patient_id,
                        request.professional_id,
                        request.facility_id,
                        request.subject,
                        request.message_type.value,
                        ConversationStatus.ACTIVE.value,
                        now,
                        now,
                    ],
                ).fetchone()
                conversation = self._to_conversation(row)
                message_row = conn.execute(
                    f"""
                    INSERT INTO chat_messages (
                        conversation_id, sender_id, message, message_type, created_at
                    ) VALUES (?, ?, ?, ?, ?)
                    RETURNING {_MESSAGE_COLUMNS}
                    """,
                    [conversation.id, patient_id, request.initial_message,
                     MessageType.TEXT.value, now],
                ).fetchone()
                conn.execute("COMMIT")
            except duckdb.Error as e:
                conn.execute("ROLLBACK")
                logger.error(f"[Store] Failed to create conversation: {e}")
                raise PersistenceFailure("Failed to create conversation") from e

        logger.info(
            f"[Store] Conversation {conversation.id} opened by patient {patient_id} "
            f"with professional {request.professional_id}"
        )
        return conversation, self._to_message(message_row)

    def get_conversation(self, conversation_id: int) -> Optional[Conversation]:
        with self._lock:
            row = self._get_connection().execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM chat_conversations WHERE id = ?",
                [conversation_id],
            ).fetchone()
        return self._to_conversation(row) if row else None

    def is_participant(self, user_id: int, conversation_id: int) -> bool:
        """True if the user is the patient or the professional of the conversation.

        Raises:
            PersistenceFailure: The lookup failed.
        """
        try:
            with self._lock:
                row = self._get_connection().execute(
                    """
                    SELECT 1 FROM chat_conversations
                    WHERE id = ? AND (patient_id = ? OR professional_id = ?)
                    """,
                    [conversation_id, user_id, user_id],
                ).fetchone()
        except duckdb.Error as e:
            logger.error(f"[Store] Participant lookup for conversation {conversation_id} failed: {e}")
            raise PersistenceFailure("Failed to check conversation membership") from e
        return row is not None

    def conversation_ids_for(self, user_id: int) -> List[int]:
        """IDs of every conversation the user participates in.

        Raises:
            PersistenceFailure: The lookup failed.
        """
        try:
            with self._lock:
                rows = self._get_connection().execute(
                    """
                    SELECT id FROM chat_conversations
                    WHERE patient_id = ? OR professional_id = ?
                    ORDER BY id
                    """,
                    [user_id, user_id],
                ).fetchall()
        except duckdb.Error as e:
            logger.error(f"[Store] Conversation lookup for user {user_id} failed: {e}")
            raise PersistenceFailure("Failed to list conversations") from e
        return [row[0] for row in rows]

    def list_conversations(
        self, user_id: int, page: int = 1, limit: int = 20
    ) -> Tuple[List[ConversationSummary], Pagination]:
        """Conversations of a user, most recent activity first.

        Each entry carries the latest message and the number of messages
        from the other participant that this user has not read yet.
        """
        offset = (page - 1) * limit
        with self._lock:
            conn = self._get_connection()
            rows = conn.execute(
                f"""
                SELECT
                    cc.id, cc.patient_id, cc.professional_id, cc.facility_id, cc.subject,
                    cc.conversation_type, cc.status, cc.created_at, cc.last_activity,
                    (SELECT cm.message FROM chat_messages cm
                     WHERE cm.conversation_id = cc.id
                     ORDER BY cm.id DESC LIMIT 1) AS last_message,
                    (SELECT cm.created_at FROM chat_messages cm
                     WHERE cm.conversation_id = cc.id
                     ORDER BY cm.id DESC LIMIT 1) AS last_message_at,
                    (SELECT COUNT(*) FROM chat_messages cm
                     WHERE cm.conversation_id = cc.id
                       AND cm.is_read = false AND cm.sender_id != ?) AS unread_count
                FROM chat_conversations cc
                WHERE cc.patient_id = ? OR cc.professional_id = ?
                ORDER BY cc.last_activity DESC, cc.id DESC
                LIMIT ? OFFSET ?
                """,
                [user_id, user_id, user_id, limit, offset],
            ).fetchall()
            total = conn.execute(
                """
                SELECT COUNT(*) FROM chat_conversations
                WHERE patient_id = ? OR professional_id = ?
                """,
                [user_id, user_id],
            ).fetchone()[0]

        summaries = [
            ConversationSummary(
                **self._to_conversation(row[:9]).model_dump(),
                lastMessage=row[9],
                lastMessageAt=row[10],
                unreadCount=row[11],
            )
            for row in rows
        ]
        return summaries, paginate(page, limit, total)

    def update_last_activity(self, conversation_id: int) -> None:
        try:
            with self._lock:
                self._get_connection().execute(
                    "UPDATE chat_conversations SET last_activity = ? WHERE id = ?",
                    [_utcnow(), conversation_id],
                )
        except duckdb.Error as e:
            raise PersistenceFailure(
                f"Failed to update last activity of conversation {conversation_id}"
            ) from e

    # =========================================================================
    # Messages
    # =========================================================================

    def persist_message(
        self,
        conversation_id: int,
        sender_id: int,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        attachment_ref: Optional[str] = None,
    ) -> ChatMessage:
        """Durably store one message and return the stored record.

        Raises:
            PersistenceFailure: The write did not complete.
        """
        try:
            with self._lock:
                row = self._get_connection().execute(
                    f"""
                    INSERT INTO chat_messages (
                        conversation_id, sender_id, message, message_type,
                        attachment_url, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    RETURNING {_MESSAGE_COLUMNS}
                    """,
                    [conversation_id, sender_id, content,
                     MessageType(message_type).value, attachment_ref, _utcnow()],
                ).fetchone()
        except duckdb.Error as e:
            logger.error(f"[Store] Failed to save message to conversation {conversation_id}: {e}")
            raise PersistenceFailure("Failed to save message") from e

        return self._to_message(row)

    def get_messages(
        self, conversation_id: int, page: int = 1, limit: int = 50
    ) -> Tuple[List[ChatMessage], Pagination]:
        """Messages of a conversation, oldest first."""
        offset = (page - 1) * limit
        with self._lock:
            conn = self._get_connection()
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM chat_messages
                WHERE conversation_id = ?
                ORDER BY id ASC
                LIMIT ? OFFSET ?
                """,
                [conversation_id, limit, offset],
            ).fetchall()
            total = self.count_messages(conversation_id)
        return [self._to_message(row) for row in rows], paginate(page, limit, total)

    def count_messages(self, conversation_id: int) -> int:
        with self._lock:
            return self._get_connection().execute(
                "SELECT COUNT(*) FROM chat_messages WHERE conversation_id = ?",
                [conversation_id],
            ).fetchone()[0]

    def mark_read(self, conversation_id: int, reader_id: int) -> int:
        """Mark the other participant's unread messages as read.

        Returns:
            Number of messages updated.
        """
        with self._lock:
            conn = self._get_connection()
            unread = conn.execute(
                """
                SELECT COUNT(*) FROM chat_messages
                WHERE conversation_id = ? AND sender_id != ? AND is_read = false
                """,
                [conversation_id, reader_id],
            ).fetchone()[0]
            if unread:
                conn.execute(
                    """
                    UPDATE chat_messages SET is_read = true, read_at = ?
                    WHERE conversation_id = ? AND sender_id != ? AND is_read = false
                    """,
                    [_utcnow(), conversation_id, reader_id],
                )
        return unread

    def unread_counts(self, user_id: int) -> Dict[str, int]:
        """Unread totals across all conversations of a user."""
        with self._lock:
            row = self._get_connection().execute(
                """
                SELECT COUNT(*), COUNT(DISTINCT cc.id)
                FROM chat_messages cm
                JOIN chat_conversations cc ON cm.conversation_id = cc.id
                WHERE (cc.patient_id = ? OR cc.professional_id = ?)
                  AND cm.sender_id != ? AND cm.is_read = false
                """,
                [user_id, user_id, user_id],
            ).fetchone()
        return {"total_unread": row[0], "conversations_with_unread": row[1]}
