from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
import uuid

from estate_chat.schemas.messages import MessageRead

PENDING_ID_PREFIX = "temp-"


class LoadState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"


class MessageEntry(MessageRead):
    """A message as displayed: committed rows from the store, or a local pending send."""

    pending: bool = False

    @classmethod
    def committed(cls, message: MessageRead) -> MessageEntry:
        return cls.model_validate({**message.model_dump(), "pending": False})

    @classmethod
    def pending_send(
        cls,
        *,
        conversation_id: str,
        sender_id: str,
        recipient_id: str,
        body: str,
        client_message_id: str | None = None,
    ) -> MessageEntry:
        client_message_id = client_message_id or uuid.uuid4().hex
        return cls(
            id=f"{PENDING_ID_PREFIX}{client_message_id}",
            conversation_id=conversation_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            client_message_id=client_message_id,
            body=body,
            is_read=False,
            created_at=datetime.now(UTC),
            pending=True,
        )

    @property
    def send_key(self) -> tuple[str, str]:
        return self.sender_id, self.client_message_id
