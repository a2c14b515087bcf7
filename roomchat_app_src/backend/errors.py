"""Error taxonomy for room commands and the notices users see for them."""

FAILURE_MARKER = "❌"


class RoomChatError(Exception):
    """Base error. ``room_wide`` decides whether the notice goes to the whole room."""

    prefix = "Error"

    def __init__(self, message: str, room_wide: bool = False):
        super().__init__(message)
        self.message = message
        self.room_wide = room_wide


class ValidationError(RoomChatError):
    """Malformed command fields. The user should fix the input."""

    prefix = "Invalid command"


class NotFoundError(RoomChatError):
    prefix = "Not found"


class DuplicateError(RoomChatError):
    prefix = "Already exists"


class AuthError(RoomChatError):
    prefix = "Login failed"


class PersistenceError(RoomChatError):
    """Storage unreachable or a write failed. Safe to retry later."""

    prefix = "Server error, please try again later"


def format_notice(error: RoomChatError) -> str:
    return f"{FAILURE_MARKER} {error.prefix}: {error.message}"
