from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from estate_chat.api.deps import get_viewer
from estate_chat.core.errors import success_response
from estate_chat.db.session import get_db
from estate_chat.models import Profile
from estate_chat.schemas.messages import (
    MessageListResponse,
    MessageRead,
    ReadStatusResult,
    SendMessageRequest,
    UnreadCount,
)
from estate_chat.services import conversation_service, message_service

router = APIRouter(tags=["messages"])


@router.get("/conversations/{conversation_id}/messages")
def list_messages(
    conversation_id: str,
    db: Session = Depends(get_db),
    viewer: Profile = Depends(get_viewer),
):
    conversation_service.require_participant(db, viewer_id=viewer.id, conversation_id=conversation_id)
    messages = message_service.list_messages(db, conversation_id=conversation_id)
    payload = MessageListResponse(messages=[MessageRead.model_validate(message) for message in messages])
    return success_response(payload.model_dump(mode="json"))


@router.post("/conversations/{conversation_id}/messages")
def send_message(
    conversation_id: str,
    payload: SendMessageRequest,
    db: Session = Depends(get_db),
    viewer: Profile = Depends(get_viewer),
):
    conversation = conversation_service.require_participant(db, viewer_id=viewer.id, conversation_id=conversation_id)
    message, created = message_service.send_message(
        db,
        conversation=conversation,
        sender_id=viewer.id,
        client_message_id=payload.client_message_id,
        body=payload.body,
    )

    response = MessageRead.model_validate(message).model_dump(mode="json")
    status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return success_response(response, status_code=status_code)


@router.post("/conversations/{conversation_id}/read")
def mark_read(
    conversation_id: str,
    db: Session = Depends(get_db),
    viewer: Profile = Depends(get_viewer),
):
    conversation = conversation_service.require_participant(db, viewer_id=viewer.id, conversation_id=conversation_id)
    updated = message_service.mark_conversation_read(db, conversation=conversation, viewer_id=viewer.id)
    return success_response(ReadStatusResult(conversation_id=conversation_id, updated=updated).model_dump())


@router.get("/messages/unread-count")
def unread_count(
    db: Session = Depends(get_db),
    viewer: Profile = Depends(get_viewer),
):
    count = message_service.count_unread(db, viewer_id=viewer.id)
    return success_response(UnreadCount(unread_count=count).model_dump())
