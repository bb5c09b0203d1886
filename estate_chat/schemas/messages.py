from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from estate_chat.schemas.common import UtcDatetime


class SendMessageRequest(BaseModel):
    client_message_id: str = Field(min_length=8, max_length=64)
    body: str = Field(min_length=1, max_length=2000)

    @field_validator("body")
    @classmethod
    def reject_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message body must not be blank")
        return value


class MessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    sender_id: str
    recipient_id: str
    client_message_id: str
    body: str
    is_read: bool = False
    created_at: UtcDatetime


class MessageListResponse(BaseModel):
    messages: list[MessageRead]


class LastMessagePreview(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    body: str
    sender_id: str
    created_at: UtcDatetime


class ReadStatusResult(BaseModel):
    conversation_id: str
    updated: int


class UnreadCount(BaseModel):
    unread_count: int
