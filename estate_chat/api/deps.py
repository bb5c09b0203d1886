from __future__ import annotations

import logging

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from estate_chat.core.errors import APIError
from estate_chat.db.session import get_db
from estate_chat.models import Profile

logger = logging.getLogger(__name__)

VIEWER_HEADER = "X-Viewer-Id"


def get_viewer(
    viewer_id: str | None = Header(default=None, alias=VIEWER_HEADER),
    db: Session = Depends(get_db),
) -> Profile:
    # Identity is asserted by the caller; access policy lives in front of this service.
    if viewer_id is None or not viewer_id.strip():
        logger.warning("Request without viewer id header")
        raise APIError(status_code=401, code="viewer_required", message=f"{VIEWER_HEADER} header is required")

    viewer = db.get(Profile, viewer_id.strip())
    if viewer is None:
        logger.warning("Viewer profile not found viewer_id=%s", viewer_id)
        raise APIError(status_code=401, code="unknown_viewer", message="Viewer profile was not found")

    logger.debug("Resolved viewer viewer_id=%s", viewer.id)
    return viewer
