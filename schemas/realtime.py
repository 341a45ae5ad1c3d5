from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator


class TypingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(min_length=1, max_length=100)
    is_typing: StrictBool = Field(alias="isTyping")

    @field_validator("sender")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

class RealtimeEvent(BaseModel):
    """Envelope carried on a room's pub/sub channel and relayed to WebSocket viewers."""

    event: str  # "chat.message" | "chat.typing" | "chat.destroy"
    channel: str  # room id
    data: dict
