from pydantic import BaseModel, ConfigDict, Field, field_validator


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    sender: str
    text: str
    timestamp: int  # epoch milliseconds
    room_id: str = Field(alias="roomId")

    @property
    def seq(self) -> int:
        return int(self.id.rsplit("-", 1)[1])

    @property
    def sort_key(self) -> tuple:
        # seq, not the id string, so ordering survives more than 999999 messages
        return (self.timestamp, self.seq)

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True)

class SendMessageRequest(BaseModel):
    sender: str = Field(min_length=1, max_length=100)
    text: str = Field(min_length=1)

    @field_validator("sender", "text")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

class MessageResponse(BaseModel):
    message: Message

class MessagesResponse(BaseModel):
    messages: list[Message]
