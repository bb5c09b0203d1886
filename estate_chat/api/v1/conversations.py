from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from estate_chat.api.deps import get_viewer
from estate_chat.core.errors import success_response
from estate_chat.db.session import get_db
from estate_chat.models import Profile
from estate_chat.schemas.conversations import ConversationOpenRequest, ConversationSummary
from estate_chat.services import conversation_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("")
def list_conversations(
    db: Session = Depends(get_db),
    viewer: Profile = Depends(get_viewer),
):
    logger.info("List conversations endpoint hit viewer_id=%s", viewer.id)
    conversations = conversation_service.list_viewer_conversations(db, viewer.id)
    payload = [ConversationSummary.model_validate(item).model_dump(mode="json") for item in conversations]
    return success_response(payload)


@router.post("")
def open_conversation(
    payload: ConversationOpenRequest,
    db: Session = Depends(get_db),
    viewer: Profile = Depends(get_viewer),
):
    logger.info(
        "Open conversation endpoint hit viewer_id=%s other_participant_id=%s listing_id=%s",
        viewer.id,
        payload.other_participant_id,
        payload.listing_id,
    )
    conversation, created = conversation_service.open_conversation(
        db,
        viewer_id=viewer.id,
        other_participant_id=payload.other_participant_id,
        listing_id=payload.listing_id,
    )
    status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return success_response(
        ConversationSummary.model_validate(conversation).model_dump(mode="json"),
        status_code=status_code,
    )
