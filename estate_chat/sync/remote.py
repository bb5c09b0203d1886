from __future__ import annotations

from typing import Awaitable, Callable, Protocol

from pydantic import BaseModel, Field

from estate_chat.core.errors import SubscriptionError
from estate_chat.schemas.changes import ChangeEventRead, ChangeFilter, ChangeTable
from estate_chat.schemas.conversations import ConversationSummary
from estate_chat.schemas.messages import MessageRead

ChangeCallback = Callable[[ChangeEventRead], Awaitable[None]]
ErrorCallback = Callable[[SubscriptionError], None]


class MessageDraft(BaseModel):
    conversation_id: str
    sender_id: str
    recipient_id: str
    client_message_id: str = Field(min_length=8, max_length=64)
    body: str = Field(min_length=1)


class Subscription(Protocol):
    @property
    def closed(self) -> bool: ...

    async def close(self) -> None: ...


class RemoteStore(Protocol):
    """The calls the conversation view-model needs from the remote data store."""

    async def list_conversations(self, viewer_id: str) -> list[ConversationSummary]: ...

    async def list_messages(self, conversation_id: str) -> list[MessageRead]: ...

    async def insert_message(self, draft: MessageDraft) -> MessageRead: ...

    async def update_read_status(self, conversation_id: str, viewer_id: str) -> int: ...

    async def subscribe(
        self,
        table: ChangeTable,
        change_filter: ChangeFilter,
        callback: ChangeCallback,
        *,
        on_error: ErrorCallback | None = None,
    ) -> Subscription: ...
