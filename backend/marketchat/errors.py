"""Error taxonomy shared by the messaging server and client.

Every domain error carries an HTTP status and a short machine-readable
code so the API layer can render it without knowing the concrete type.
Client-side transport errors use status 0 (they never reach HTTP).
"""


class MessagingError(Exception):
    """Base exception for messaging errors."""
    code = "messaging_error"

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class Unauthorized(MessagingError):
    """Missing or invalid credential."""
    code = "unauthorized"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, status_code=401)


class Forbidden(MessagingError):
    """Caller may not access the conversation."""
    code = "forbidden"

    def __init__(self, message: str = "Not a participant of this conversation"):
        super().__init__(message, status_code=403)


class NotParticipant(Forbidden):
    """Sender is not one of the conversation's two participants."""
    code = "not_participant"

    def __init__(self, user_id: str, conversation_id: str):
        self.user_id = user_id
        self.conversation_id = conversation_id
        super().__init__(f"User {user_id} is not a participant of conversation {conversation_id}")


class InvalidMessage(MessagingError):
    """Message text is empty after trimming or exceeds the length limit."""
    code = "invalid_message"

    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class InvalidParticipants(MessagingError):
    """A conversation needs two distinct, non-blank users."""
    code = "invalid_participants"

    def __init__(self, message: str = "A conversation needs two distinct participants"):
        super().__init__(message, status_code=400)


class NotFound(MessagingError):
    """Conversation or message does not exist."""
    code = "not_found"

    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class TransportError(MessagingError):
    """Socket disconnected or timed out. Recoverable."""
    code = "transport_error"

    def __init__(self, message: str):
        super().__init__(message, status_code=0)


class ConnectivityError(MessagingError):
    """REST endpoint unreachable. Recoverable for reads."""
    code = "connectivity_error"

    def __init__(self, message: str):
        super().__init__(message, status_code=0)


class SendFailed(MessagingError):
    """A send did not persist. Surfaced to the caller, never retried."""
    code = "send_failed"

    def __init__(self, cause: Exception):
        self.cause = cause
        status = cause.status_code if isinstance(cause, MessagingError) else 0
        super().__init__(f"Failed to send message: {cause}", status_code=status)


_BY_CODE = {
    cls.code: cls
    for cls in (Unauthorized, Forbidden, InvalidMessage, InvalidParticipants, NotFound)
}


def error_from_response(status_code: int, body: dict) -> MessagingError:
    """Rebuild a domain error from an API error body ``{"error", "detail"}``."""
    code = body.get("error", "") if isinstance(body, dict) else ""
    detail = body.get("detail", "") if isinstance(body, dict) else ""
    if code == NotParticipant.code:
        return Forbidden(detail or "Not a participant of this conversation")
    cls = _BY_CODE.get(code)
    if cls is Unauthorized or (cls is None and status_code == 401):
        return Unauthorized(detail or "Authentication required")
    if cls is Forbidden or (cls is None and status_code == 403):
        return Forbidden(detail or "Forbidden")
    if cls is NotFound or (cls is None and status_code == 404):
        return NotFound(detail or "Not found")
    if cls is InvalidParticipants:
        return InvalidParticipants(detail)
    if cls is InvalidMessage or (cls is None and status_code == 400):
        return InvalidMessage(detail or "Invalid request")
    return MessagingError(detail or f"Unexpected response ({status_code})", status_code=status_code)
