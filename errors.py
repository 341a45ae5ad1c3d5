class ChatError(Exception):
    """Base class for errors raised by the room core."""


class InvalidInput(ChatError):
    """Missing or malformed fields; rejected before reaching the core."""


class RoomNotFound(ChatError):
    """The room never existed, has expired or was destroyed."""

    def __init__(self, room_id: str):
        super().__init__(f"Room {room_id} not found")
        self.room_id = room_id


class StoreUnavailable(ChatError):
    """Transient failure of the expiring store. Callers may retry."""


class BroadcastUnavailable(ChatError):
    """The publish path is down. Never rolls back a store mutation."""
