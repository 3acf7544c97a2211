"""Error taxonomy for the realtime chat core.

Each error carries a stable ``code`` that is sent to clients inside an
``error`` event, so the UI can react (e.g. mark a message "failed to send")
without parsing human-readable text.
"""


class ChatError(Exception):
    """Base class for chat errors reported to a single connection."""

    code = "chat_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class HandshakeRejected(ChatError):
    """Missing/invalid/expired token, or the user is over the connection cap.

    The connection never enters the registry. The reason is logged but not
    disclosed to the client.
    """

    code = "handshake_rejected"


class InvalidMessage(ChatError):
    """Inbound frame could not be parsed, or its content failed validation."""

    code = "invalid_message"


class NotParticipant(ChatError):
    """Sender is not a participant of the target conversation."""

    code = "not_participant"


class PersistenceFailure(ChatError):
    """The message store failed to durably write a message."""

    code = "persistence_failure"


class DeliveryFailure(ChatError):
    """Sending an event to one connection failed."""

    code = "delivery_failure"


class StaleConnection(ChatError):
    """Connection exceeded the idle threshold without any traffic."""

    code = "stale_connection"
