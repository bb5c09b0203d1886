from __future__ import annotations

from datetime import datetime
import logging
from typing import TypedDict

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, aliased

from estate_chat.core.errors import APIError
from estate_chat.core.settings import get_settings
from estate_chat.models import Conversation, Listing, Message, Profile
from estate_chat.services import change_service, profile_service

logger = logging.getLogger(__name__)


class ConversationPayload(TypedDict):
    id: str
    participant_one: str
    participant_two: str
    listing_id: str
    updated_at: datetime
    listing: dict[str, object] | None
    other_participant: dict[str, object] | None
    last_message: dict[str, object] | None
    unread_count: int


def _ordered_pair(first_id: str, second_id: str) -> tuple[str, str]:
    return (first_id, second_id) if first_id <= second_id else (second_id, first_id)


def _preview(body: str) -> str:
    limit = get_settings().preview_max_length
    return body if len(body) <= limit else body[: limit - 1].rstrip() + "\u2026"


def _latest_messages(db: Session, conversation_ids: list[str]) -> dict[str, Message]:
    if not conversation_ids:
        return {}

    ranked = (
        select(
            Message,
            func.row_number()
            .over(
                partition_by=Message.conversation_id,
                order_by=(Message.created_at.desc(), Message.id.desc()),
            )
            .label("rank"),
        )
        .where(Message.conversation_id.in_(conversation_ids))
        .subquery()
    )
    latest = aliased(Message, ranked)
    rows = db.scalars(select(latest).where(ranked.c.rank == 1)).all()
    return {row.conversation_id: row for row in rows}


def _unread_counts(db: Session, *, viewer_id: str, conversation_ids: list[str]) -> dict[str, int]:
    if not conversation_ids:
        return {}

    rows = db.execute(
        select(Message.conversation_id, func.count())
        .where(Message.conversation_id.in_(conversation_ids))
        .where(Message.recipient_id == viewer_id)
        .where(Message.is_read.is_(False))
        .group_by(Message.conversation_id)
    ).all()
    return {conversation_id: count for conversation_id, count in rows}


def _build_conversation_payloads(
    db: Session,
    *,
    viewer_id: str,
    conversation_rows: list[Conversation],
) -> list[ConversationPayload]:
    conversation_ids = [conversation.id for conversation in conversation_rows]
    latest_by_conversation = _latest_messages(db, conversation_ids)
    unread_by_conversation = _unread_counts(db, viewer_id=viewer_id, conversation_ids=conversation_ids)

    counterpart_ids = profile_service.collect_counterpart_ids(conversation_rows, viewer_id=viewer_id)
    profiles_by_id = {
        profile.id: profile_service.serialize_profile_snapshot(profile)
        for profile in profile_service.fetch_profiles_by_ids(db, counterpart_ids)
    }

    listing_ids = {conversation.listing_id for conversation in conversation_rows}
    listings_by_id = {
        listing.id: {"id": listing.id, "title": listing.title, "owner_id": listing.owner_id}
        for listing in db.scalars(select(Listing).where(Listing.id.in_(listing_ids))).all()
    } if listing_ids else {}

    payload: list[ConversationPayload] = []
    for conversation in conversation_rows:
        latest = latest_by_conversation.get(conversation.id)
        payload.append(
            {
                "id": conversation.id,
                "participant_one": conversation.participant_one,
                "participant_two": conversation.participant_two,
                "listing_id": conversation.listing_id,
                "updated_at": conversation.updated_at,
                "listing": listings_by_id.get(conversation.listing_id),
                "other_participant": profiles_by_id.get(conversation.other_participant(viewer_id)),
                "last_message": (
                    {"body": _preview(latest.body), "sender_id": latest.sender_id, "created_at": latest.created_at}
                    if latest is not None
                    else None
                ),
                "unread_count": unread_by_conversation.get(conversation.id, 0),
            }
        )
    return payload


def require_participant(db: Session, *, viewer_id: str, conversation_id: str) -> Conversation:
    logger.debug("Checking participation viewer_id=%s conversation_id=%s", viewer_id, conversation_id)
    conversation = db.get(Conversation, conversation_id)
    if conversation is None or not conversation.has_participant(viewer_id):
        logger.warning("Participation check failed viewer_id=%s conversation_id=%s", viewer_id, conversation_id)
        raise APIError(status_code=404, code="conversation_not_found", message="Conversation not found")
    return conversation


def participant_conversation_ids(db: Session, *, viewer_id: str, conversation_ids: list[str]) -> set[str]:
    if not conversation_ids:
        return set()
    return set(
        db.scalars(
            select(Conversation.id)
            .where(Conversation.id.in_(conversation_ids))
            .where(or_(Conversation.participant_one == viewer_id, Conversation.participant_two == viewer_id))
        ).all()
    )


def list_viewer_conversations(db: Session, viewer_id: str) -> list[ConversationPayload]:
    logger.debug("Listing conversations for viewer_id=%s", viewer_id)
    conversation_rows = db.scalars(
        select(Conversation)
        .where(or_(Conversation.participant_one == viewer_id, Conversation.participant_two == viewer_id))
        .order_by(Conversation.updated_at.desc(), Conversation.id.asc())
    ).all()
    payload = _build_conversation_payloads(db, viewer_id=viewer_id, conversation_rows=list(conversation_rows))
    logger.debug("Found %s conversations for viewer_id=%s", len(payload), viewer_id)
    return payload


def open_conversation(
    db: Session,
    *,
    viewer_id: str,
    other_participant_id: str,
    listing_id: str,
) -> tuple[ConversationPayload, bool]:
    logger.info(
        "Open or create conversation viewer_id=%s other_participant_id=%s listing_id=%s",
        viewer_id,
        other_participant_id,
        listing_id,
    )
    if viewer_id == other_participant_id:
        logger.warning("Cannot open conversation with self viewer_id=%s", viewer_id)
        raise APIError(status_code=400, code="invalid_target", message="Cannot open a conversation with yourself")

    if db.get(Profile, other_participant_id) is None:
        logger.warning("Conversation target not found other_participant_id=%s", other_participant_id)
        raise APIError(status_code=404, code="profile_not_found", message="Profile not found")
    if db.get(Listing, listing_id) is None:
        logger.warning("Conversation listing not found listing_id=%s", listing_id)
        raise APIError(status_code=404, code="listing_not_found", message="Listing not found")

    participant_one, participant_two = _ordered_pair(viewer_id, other_participant_id)
    existing = db.scalar(
        select(Conversation).where(
            Conversation.participant_one == participant_one,
            Conversation.participant_two == participant_two,
            Conversation.listing_id == listing_id,
        )
    )
    if existing is not None:
        logger.debug("Returning existing conversation conversation_id=%s", existing.id)
        return _build_conversation_payloads(db, viewer_id=viewer_id, conversation_rows=[existing])[0], False

    conversation = Conversation(
        participant_one=participant_one,
        participant_two=participant_two,
        listing_id=listing_id,
    )
    db.add(conversation)
    db.flush()
    change_service.enqueue_conversation_changed(db, conversation=conversation, event_type="INSERT")
    db.commit()
    logger.info("Conversation created conversation_id=%s listing_id=%s", conversation.id, listing_id)
    return _build_conversation_payloads(db, viewer_id=viewer_id, conversation_rows=[conversation])[0], True
