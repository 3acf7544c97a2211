"""Tests for the message relay (persist-then-fan-out)."""
import pytest
import pytest_asyncio

from pharmalink.auth import UserType
from pharmalink.chat.events import ConversationCreatedEvent
from pharmalink.chat.exceptions import PersistenceFailure

from conftest import CONVERSATION_ID, DOCTOR_ID, OTHER_PATIENT_ID, PATIENT_ID


@pytest_asyncio.fixture
async def members(hub, conversation, make_connection):
    """Doctor on two devices and the patient, all joined to conversation 42."""
    doctor_phone = make_connection(DOCTOR_ID, UserType.DOCTOR)
    doctor_desktop = make_connection(DOCTOR_ID, UserType.DOCTOR)
    patient = make_connection(PATIENT_ID)
    for connection in (doctor_phone, doctor_desktop, patient):
        await hub.registry.register(connection)
    for connection in (doctor_phone, doctor_desktop, patient):
        assert await hub.relay.handle_join(connection, CONVERSATION_ID)
    return doctor_phone, doctor_desktop, patient


def _new_messages(connection):
    return [e["payload"] for e in connection.websocket.events("new_message")]


@pytest.mark.asyncio
async def test_join_requires_participation(hub, conversation, make_connection):
    outsider = make_connection(OTHER_PATIENT_ID)
    await hub.registry.register(outsider)

    assert await hub.relay.handle_join(outsider, CONVERSATION_ID) is False
    assert hub.rooms.members(CONVERSATION_ID) == []
    errors = outsider.websocket.events("error")
    assert errors[0]["payload"]["code"] == "not_participant"


@pytest.mark.asyncio
async def test_join_and_leave_are_acknowledged(hub, conversation, make_connection):
    patient = make_connection(PATIENT_ID)
    await hub.registry.register(patient)

    await hub.relay.handle_join(patient, CONVERSATION_ID)
    await hub.relay.handle_leave(patient, CONVERSATION_ID)

    assert [e["type"] for e in patient.websocket.sent] == [
        "joined_conversation",
        "left_conversation",
    ]
    assert hub.rooms.members(CONVERSATION_ID) == []


@pytest.mark.asyncio
async def test_send_fans_out_to_other_devices_and_partner(hub, store, members):
    doctor_phone, doctor_desktop, patient = members

    message = await hub.relay.handle_send(doctor_phone, CONVERSATION_ID, "  Take it twice daily  ")

    assert message is not None
    assert message.content == "Take it twice daily"
    assert _new_messages(doctor_phone) == []
    for recipient in (doctor_desktop, patient):
        [payload] = _new_messages(recipient)
        assert payload["id"] == message.id
        assert payload["conversationId"] == CONVERSATION_ID
        assert payload["senderId"] == DOCTOR_ID
        assert payload["content"] == "Take it twice daily"

    [ack] = doctor_phone.websocket.events("message_sent")
    assert ack["payload"]["messageId"] == message.id
    assert store.count_messages(CONVERSATION_ID) == 1


@pytest.mark.asyncio
async def test_client_id_is_echoed(hub, members):
    doctor_phone, doctor_desktop, _ = members

    await hub.relay.handle_send(doctor_phone, CONVERSATION_ID, "Hello", client_id="tmp-1")

    assert _new_messages(doctor_desktop)[0]["clientId"] == "tmp-1"
    assert doctor_phone.websocket.events("message_sent")[0]["payload"]["clientId"] == "tmp-1"


@pytest.mark.asyncio
async def test_ack_follows_fan_out(hub, members):
    doctor_phone, _, patient = members
    patient.websocket.sent.clear()
    doctor_phone.websocket.sent.clear()

    await hub.relay.handle_send(patient, CONVERSATION_ID, "Thank you")

    assert [e["type"] for e in patient.websocket.sent] == ["message_sent"]
    assert [e["type"] for e in doctor_phone.websocket.sent] == ["new_message"]


@pytest.mark.parametrize("content", ["", "   ", "x" * 501])
@pytest.mark.asyncio
async def test_invalid_content_is_rejected(hub, store, members, content):
    doctor_phone, doctor_desktop, patient = members

    assert await hub.relay.handle_send(patient, CONVERSATION_ID, content) is None

    assert patient.websocket.events("error")[0]["payload"]["code"] == "invalid_message"
    assert _new_messages(doctor_phone) == []
    assert store.count_messages(CONVERSATION_ID) == 0


@pytest.mark.asyncio
async def test_non_participant_send_is_rejected(hub, store, members, make_connection):
    doctor_phone, _, _ = members
    outsider = make_connection(OTHER_PATIENT_ID)
    await hub.registry.register(outsider)

    assert await hub.relay.handle_send(outsider, CONVERSATION_ID, "Let me in") is None

    [error] = outsider.websocket.events("error")
    assert error["payload"]["code"] == "not_participant"
    assert error["payload"]["conversationId"] == CONVERSATION_ID
    assert _new_messages(doctor_phone) == []
    assert store.count_messages(CONVERSATION_ID) == 0


@pytest.mark.asyncio
async def test_no_broadcast_without_persistence(hub, members, monkeypatch):
    doctor_phone, doctor_desktop, patient = members

    def failing_write(*args, **kwargs):
        raise PersistenceFailure("Failed to save message")

    monkeypatch.setattr(hub.store, "persist_message", failing_write)

    assert await hub.relay.handle_send(patient, CONVERSATION_ID, "Is this safe?", client_id="c1") is None

    [error] = patient.websocket.events("error")
    assert error["payload"]["code"] == "persistence_failure"
    assert error["payload"]["clientId"] == "c1"
    for connection in members:
        assert _new_messages(connection) == []
        assert connection.websocket.events("message_sent") == []


@pytest.mark.asyncio
async def test_last_activity_failure_is_only_logged(hub, members, monkeypatch):
    doctor_phone, _, patient = members

    def failing_update(conversation_id):
        raise PersistenceFailure("Failed to update last activity")

    monkeypatch.setattr(hub.store, "update_last_activity", failing_update)

    message = await hub.relay.handle_send(patient, CONVERSATION_ID, "Still delivered")

    assert message is not None
    assert patient.websocket.events("error") == []
    assert len(_new_messages(doctor_phone)) == 1


@pytest.mark.asyncio
async def test_send_updates_last_activity(hub, store, members):
    _, _, patient = members
    before = store.get_conversation(CONVERSATION_ID).lastActivity

    await hub.relay.handle_send(patient, CONVERSATION_ID, "Any update?")

    assert store.get_conversation(CONVERSATION_ID).lastActivity > before


@pytest.mark.asyncio
async def test_messages_keep_send_order(hub, store, members):
    doctor_phone, _, patient = members

    for text in ("first", "second", "third"):
        await hub.relay.handle_send(patient, CONVERSATION_ID, text)

    assert [p["content"] for p in _new_messages(doctor_phone)] == ["first", "second", "third"]
    messages, _ = store.get_messages(CONVERSATION_ID)
    assert [m.content for m in messages] == ["first", "second", "third"]


@pytest.mark.asyncio
async def test_typing_goes_to_others_only(hub, members, make_connection):
    doctor_phone, doctor_desktop, patient = members

    assert await hub.relay.handle_typing(patient, CONVERSATION_ID, True) == 2

    assert patient.websocket.events("typing") == []
    [notice] = doctor_phone.websocket.events("typing")
    assert notice["payload"] == {
        "conversationId": CONVERSATION_ID,
        "userId": PATIENT_ID,
        "isTyping": True,
    }


@pytest.mark.asyncio
async def test_typing_requires_join(hub, conversation, make_connection):
    patient = make_connection(PATIENT_ID)
    await hub.registry.register(patient)

    assert await hub.relay.handle_typing(patient, CONVERSATION_ID) == 0
    assert patient.websocket.events("error")[0]["payload"]["code"] == "not_participant"


@pytest.mark.asyncio
async def test_publish_persisted_reaches_every_member(hub, store, members):
    message = store.persist_message(CONVERSATION_ID, PATIENT_ID, "Sent from the web app")

    assert await hub.relay.publish_persisted(message) == 3
    for connection in members:
        assert _new_messages(connection)[0]["id"] == message.id


@pytest.mark.asyncio
async def test_notify_user_reaches_all_devices(hub, store, members):
    doctor_phone, doctor_desktop, patient = members
    conversation = store.get_conversation(CONVERSATION_ID)

    delivered = await hub.relay.notify_user(DOCTOR_ID, ConversationCreatedEvent(payload=conversation))

    assert delivered == 2
    assert doctor_phone.websocket.events("conversation_created")
    assert doctor_desktop.websocket.events("conversation_created")
    assert patient.websocket.events("conversation_created") == []


@pytest.mark.asyncio
async def test_failed_recipient_is_dropped_and_others_still_receive(hub, conversation, make_connection):
    sender = make_connection(PATIENT_ID)
    healthy = make_connection(DOCTOR_ID, UserType.DOCTOR)
    broken = make_connection(DOCTOR_ID, UserType.DOCTOR, fail=True)
    for connection in (sender, healthy, broken):
        await hub.registry.register(connection)
        hub.rooms.join(CONVERSATION_ID, connection)

    message = await hub.relay.handle_send(sender, CONVERSATION_ID, "Hello doctor")

    assert message is not None
    assert len(_new_messages(healthy)) == 1
    assert hub.registry.get(broken.connection_id) is None
    assert broken.websocket.closed_with == 1011
    assert hub.registry.is_online(DOCTOR_ID)
