from __future__ import annotations

from datetime import UTC, datetime
import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from estate_chat.core.errors import APIError
from estate_chat.models import Conversation, Message
from estate_chat.services import change_service

logger = logging.getLogger(__name__)


def list_messages(db: Session, *, conversation_id: str) -> list[Message]:
    logger.debug("Listing messages conversation_id=%s", conversation_id)
    return list(
        db.scalars(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.asc(), Message.id.asc())
        ).all()
    )


def _find_by_client_id(db: Session, *, sender_id: str, client_message_id: str) -> Message | None:
    return db.scalar(
        select(Message).where(
            Message.sender_id == sender_id,
            Message.client_message_id == client_message_id,
        )
    )


def _idempotent_hit(existing: Message, *, conversation_id: str) -> Message:
    if existing.conversation_id != conversation_id:
        logger.warning(
            "client_message_id conflict sender_id=%s client_message_id=%s existing_conversation=%s requested_conversation=%s",
            existing.sender_id,
            existing.client_message_id,
            existing.conversation_id,
            conversation_id,
        )
        raise APIError(
            status_code=409,
            code="client_message_conflict",
            message="client_message_id already used for a different conversation",
        )
    logger.debug("Idempotent send hit message_id=%s", existing.id)
    return existing


def send_message(
    db: Session,
    *,
    conversation: Conversation,
    sender_id: str,
    client_message_id: str,
    body: str,
) -> tuple[Message, bool]:
    logger.info(
        "Send message attempt conversation_id=%s sender_id=%s client_message_id=%s",
        conversation.id,
        sender_id,
        client_message_id,
    )
    existing = _find_by_client_id(db, sender_id=sender_id, client_message_id=client_message_id)
    if existing is not None:
        return _idempotent_hit(existing, conversation_id=conversation.id), False

    now = datetime.now(UTC)
    message = Message(
        conversation_id=conversation.id,
        sender_id=sender_id,
        recipient_id=conversation.other_participant(sender_id),
        listing_id=conversation.listing_id,
        client_message_id=client_message_id,
        body=body,
        is_read=False,
        created_at=now,
    )
    db.add(message)
    conversation.updated_at = now
    db.flush()

    change_service.enqueue_message_inserted(db, conversation=conversation, message=message)
    change_service.enqueue_conversation_changed(db, conversation=conversation)

    try:
        db.commit()
        logger.info("Message persisted message_id=%s conversation_id=%s", message.id, conversation.id)
    except IntegrityError:
        logger.warning(
            "IntegrityError on send; attempting idempotent conflict recovery sender_id=%s client_message_id=%s",
            sender_id,
            client_message_id,
        )
        db.rollback()
        existing_after_conflict = _find_by_client_id(db, sender_id=sender_id, client_message_id=client_message_id)
        if existing_after_conflict is not None:
            return _idempotent_hit(existing_after_conflict, conversation_id=conversation.id), False
        raise

    return message, True


def mark_conversation_read(db: Session, *, conversation: Conversation, viewer_id: str) -> int:
    result = db.execute(
        update(Message)
        .where(Message.conversation_id == conversation.id)
        .where(Message.recipient_id == viewer_id)
        .where(Message.is_read.is_(False))
        .values(is_read=True)
    )
    updated = result.rowcount or 0
    if updated:
        # Unread counts changed; both participants' lists need to hear about it.
        change_service.enqueue_conversation_changed(db, conversation=conversation)
    db.commit()
    logger.debug(
        "Marked messages read conversation_id=%s viewer_id=%s updated=%s",
        conversation.id,
        viewer_id,
        updated,
    )
    return updated


def count_unread(db: Session, *, viewer_id: str) -> int:
    return db.scalar(
        select(func.count()).select_from(Message).where(Message.recipient_id == viewer_id).where(Message.is_read.is_(False))
    ) or 0
