"""Shared test fixtures and configuration for backend tests."""
import json
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from pharmalink.auth import AuthenticatedUser, UserType, get_token_service
from pharmalink.chat.hub import ChatHub
from pharmalink.chat.registry import Connection
from pharmalink.chat.store import ChatStore
from pharmalink.config import (
    AppSettings,
    DatabaseSettings,
    JWTSecrets,
    Secrets,
    reset_config,
    set_config,
)
from pharmalink.main import app

TEST_SECRET = "pharmalink-test-secret-0123456789abcdef"

DOCTOR_ID = 1
PATIENT_ID = 2
OTHER_PATIENT_ID = 3
CONVERSATION_ID = 42


class FakeWebSocket:
    """Stands in for a FastAPI WebSocket in unit tests.

    Records every event sent to it (decoded) and the close code.
    """

    def __init__(self, fail: bool = False) -> None:
        self.sent = []
        self.closed_with = None
        self.fail = fail

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise RuntimeError("connection reset by peer")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def events(self, event_type: str):
        return [e for e in self.sent if e["type"] == event_type]


def insert_conversation(
    store: ChatStore,
    conversation_id: int,
    patient_id: int = PATIENT_ID,
    professional_id: int = DOCTOR_ID,
    subject: str = "Blood pressure medication",
) -> None:
    """Insert a conversation with a fixed id directly into the store."""
    now = datetime(2024, 1, 1, 12, 0, 0)
    store._get_connection().execute(
        """
        INSERT INTO chat_conversations (
            id, patient_id, professional_id, facility_id, subject,
            conversation_type, status, created_at, last_activity
        ) VALUES (?, ?, ?, NULL, ?, 'general', 'active', ?, ?)
        """,
        [conversation_id, patient_id, professional_id, subject, now, now],
    )


@pytest.fixture(autouse=True)
def chat_config():
    """Use in-memory settings, store and hub for each test."""
    config = AppSettings(
        database=DatabaseSettings(path=":memory:"),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )
    set_config(config)
    ChatHub.reset_instance()
    ChatStore.reset_instance()
    ChatStore.get_instance(db_path=":memory:")
    yield config
    ChatHub.reset_instance()
    ChatStore.reset_instance()
    reset_config()


@pytest.fixture
def store() -> ChatStore:
    return ChatStore.get_instance()


@pytest.fixture
def conversation(store) -> int:
    """Conversation 42 between PATIENT_ID and DOCTOR_ID."""
    insert_conversation(store, CONVERSATION_ID)
    return CONVERSATION_ID


@pytest.fixture
def make_token():
    """Mint access tokens signed with the test secret."""
    service = get_token_service()

    def _make(user_id: int, user_type: UserType = UserType.PATIENT, expires_minutes: float = 60) -> str:
        return service.create_access_token(user_id, user_type, expires_minutes=expires_minutes)

    return _make


@pytest.fixture
def auth_headers(make_token):
    def _headers(user_id: int, user_type: UserType = UserType.PATIENT) -> dict:
        return {"Authorization": f"Bearer {make_token(user_id, user_type)}"}

    return _headers


@pytest.fixture
def hub() -> ChatHub:
    return ChatHub.get_instance()


@pytest.fixture
def make_connection():
    """Build an OPEN connection backed by a FakeWebSocket."""

    def _make(user_id: int, user_type: UserType = UserType.PATIENT, fail: bool = False) -> Connection:
        connection = Connection(
            FakeWebSocket(fail=fail),
            AuthenticatedUser(userId=user_id, userType=user_type),
        )
        connection.open()
        return connection

    return _make


@pytest.fixture
def client(chat_config):
    """TestClient running the app lifespan; all sockets share one event loop."""
    with TestClient(app) as test_client:
        yield test_client
