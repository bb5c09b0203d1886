from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from estate_chat.api.deps import get_viewer
from estate_chat.core.errors import APIError, success_response
from estate_chat.core.settings import get_settings
from estate_chat.db.session import get_db
from estate_chat.models import Profile
from estate_chat.schemas.changes import ChangeEventRead, ChangeFeed, ChangeFilter, ChangeTable
from estate_chat.services import change_service, conversation_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/changes", tags=["changes"])


def _resolve_filter(
    db: Session,
    *,
    viewer_id: str,
    conversation_id: str | None,
    participant_id: str | None,
) -> ChangeFilter:
    if (conversation_id is None) == (participant_id is None):
        raise APIError(
            status_code=422,
            code="invalid_filter",
            message="Exactly one of conversation_id or participant_id is required",
        )

    if conversation_id is not None:
        conversation_service.require_participant(db, viewer_id=viewer_id, conversation_id=conversation_id)
        return ChangeFilter(column="conversation_id", value=conversation_id)

    if participant_id != viewer_id:
        logger.warning("Change feed participant mismatch viewer_id=%s participant_id=%s", viewer_id, participant_id)
        raise APIError(status_code=403, code="forbidden_filter", message="Cannot follow another participant's changes")
    return ChangeFilter(column="participant_id", value=participant_id)


@router.get("")
def list_changes(
    table: ChangeTable = Query(),
    conversation_id: str | None = Query(default=None, min_length=1, max_length=64),
    participant_id: str | None = Query(default=None, min_length=1, max_length=64),
    after_id: int | None = Query(default=None, ge=0),
    limit: int = Query(default=100, ge=1),
    db: Session = Depends(get_db),
    viewer: Profile = Depends(get_viewer),
):
    settings = get_settings()
    change_filter = _resolve_filter(
        db,
        viewer_id=viewer.id,
        conversation_id=conversation_id,
        participant_id=participant_id,
    )

    if after_id is None:
        # No cursor yet: hand back the head so the caller only sees changes from now on.
        cursor = change_service.latest_cursor(db)
        logger.debug("Change feed cursor bootstrap viewer_id=%s cursor=%s", viewer.id, cursor)
        return success_response(ChangeFeed(cursor=cursor).model_dump(mode="json"))

    events = change_service.list_changes(
        db,
        table=table,
        change_filter=change_filter,
        after_id=after_id,
        limit=min(limit, settings.changes_max_limit),
    )
    serialized = [ChangeEventRead.model_validate(change_service.serialize_event(event)) for event in events]
    cursor = serialized[-1].id if serialized else after_id
    logger.debug(
        "Change feed response viewer_id=%s table=%s filter=%s events=%s cursor=%s",
        viewer.id,
        table,
        change_filter.topic_suffix,
        len(serialized),
        cursor,
    )
    return success_response(ChangeFeed(cursor=cursor, events=serialized).model_dump(mode="json"))
