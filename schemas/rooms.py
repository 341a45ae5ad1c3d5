from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class Room(BaseModel):
    room_id: str
    created_at: float  # epoch seconds
    ttl_seconds: int

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def remaining(self, now: float) -> float:
        """Seconds of lifetime left at ``now``, clamped to zero."""
        return max(0.0, self.ttl_seconds - (now - self.created_at))

class CreateRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: Optional[str] = Field(default=None, alias="roomId", min_length=1, max_length=128)

class RoomResponse(BaseModel):
    room_id: str
    created_at: str
    expires_at: str
    ttl: int

    @classmethod
    def from_room(cls, room: Room, remaining: float) -> "RoomResponse":
        return cls(
            room_id=room.room_id,
            created_at=datetime.fromtimestamp(room.created_at, tz=timezone.utc).isoformat(),
            expires_at=datetime.fromtimestamp(room.expires_at, tz=timezone.utc).isoformat(),
            ttl=int(remaining),
        )

class TTLResponse(BaseModel):
    ttl: int

class SuccessResponse(BaseModel):
    success: bool = True
