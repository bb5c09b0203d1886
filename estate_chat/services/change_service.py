from __future__ import annotations

from datetime import UTC, datetime
import json
import logging

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from estate_chat.models import ChangeEvent, Conversation, Message
from estate_chat.schemas.changes import ChangeFilter
from estate_chat.schemas.common import ensure_utc

logger = logging.getLogger(__name__)


def _serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def _enqueue_event(
    db: Session,
    *,
    table_name: str,
    event_type: str,
    conversation: Conversation,
    record: dict[str, object],
) -> None:
    db.add(
        ChangeEvent(
            table_name=table_name,
            event_type=event_type,
            conversation_id=conversation.id,
            participant_one=conversation.participant_one,
            participant_two=conversation.participant_two,
            record_json=json.dumps(record, separators=(",", ":"), sort_keys=True),
            next_attempt_at=datetime.now(UTC),
        )
    )


def message_record(message: Message) -> dict[str, object]:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "sender_id": message.sender_id,
        "recipient_id": message.recipient_id,
        "client_message_id": message.client_message_id,
        "body": message.body,
        "is_read": message.is_read,
        "created_at": _serialize_datetime(message.created_at),
    }


def conversation_record(conversation: Conversation) -> dict[str, object]:
    return {
        "id": conversation.id,
        "participant_one": conversation.participant_one,
        "participant_two": conversation.participant_two,
        "listing_id": conversation.listing_id,
        "updated_at": _serialize_datetime(conversation.updated_at),
    }


def enqueue_message_inserted(db: Session, *, conversation: Conversation, message: Message) -> None:
    _enqueue_event(
        db,
        table_name="messages",
        event_type="INSERT",
        conversation=conversation,
        record=message_record(message),
    )


def enqueue_conversation_changed(db: Session, *, conversation: Conversation, event_type: str = "UPDATE") -> None:
    _enqueue_event(
        db,
        table_name="conversations",
        event_type=event_type,
        conversation=conversation,
        record=conversation_record(conversation),
    )


def serialize_event(event: ChangeEvent) -> dict[str, object]:
    record = json.loads(event.record_json)
    if not isinstance(record, dict):
        raise ValueError("Change event record_json must decode to an object")
    return {
        "id": event.id,
        "event_id": event.event_id,
        "table": event.table_name,
        "event_type": event.event_type,
        "conversation_id": event.conversation_id,
        "occurred_at": _serialize_datetime(event.created_at),
        "record": record,
    }


def event_topics(event: ChangeEvent) -> list[str]:
    topics = [f"{event.table_name}:conversation_id=eq.{event.conversation_id}"]
    for participant_id in dict.fromkeys([event.participant_one, event.participant_two]):
        topics.append(f"{event.table_name}:participant_id=eq.{participant_id}")
    return topics


def latest_cursor(db: Session) -> int:
    return db.scalar(select(func.coalesce(func.max(ChangeEvent.id), 0))) or 0


def list_changes(
    db: Session,
    *,
    table: str,
    change_filter: ChangeFilter,
    after_id: int,
    limit: int,
) -> list[ChangeEvent]:
    query = select(ChangeEvent).where(ChangeEvent.table_name == table).where(ChangeEvent.id > after_id)
    if change_filter.column == "conversation_id":
        query = query.where(ChangeEvent.conversation_id == change_filter.value)
    else:
        query = query.where(
            or_(
                ChangeEvent.participant_one == change_filter.value,
                ChangeEvent.participant_two == change_filter.value,
            )
        )
    rows = db.scalars(query.order_by(ChangeEvent.id.asc()).limit(limit)).all()
    logger.debug(
        "Listed changes table=%s filter=%s after_id=%s returned=%s",
        table,
        change_filter.topic_suffix,
        after_id,
        len(rows),
    )
    return list(rows)
