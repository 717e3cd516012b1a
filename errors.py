class PresenceError(Exception):
    """Base class for realtime presence and room errors."""


class StoreUnavailable(PresenceError):
    """The shared key-value store cannot be reached (down, timed out, or cooling off)."""

    def __init__(self, operation: str, reason: str = "store unavailable"):
        self.operation = operation
        self.reason = reason
        super().__init__(f"{operation}: {reason}")


class InvalidRoomTransition(PresenceError):
    """A session event arrived in a state that cannot honour it (e.g. leave with no room)."""

    def __init__(self, connection_id: str, action: str, state: str):
        self.connection_id = connection_id
        self.action = action
        self.state = state
        super().__init__(f"cannot {action} while {state} (connection {connection_id})")


class UnauthorizedRoomJoin(PresenceError):
    """The user may not occupy the requested room. No state was changed."""

    def __init__(self, room_id: str, user_id: str, reason: str = "not a team member"):
        self.room_id = room_id
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"user {user_id} may not join room {room_id}: {reason}")
