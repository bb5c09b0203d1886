from __future__ import annotations

import logging
from typing import Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from estate_chat.core.settings import get_settings
from estate_chat.models import Profile

logger = logging.getLogger(__name__)

AVATAR_BUCKET = "user_avatars"


def resolve_avatar_url(path: str | None) -> str:
    settings = get_settings()
    if path is None or not path.strip():
        return settings.default_avatar_path

    path = path.strip()
    if path.startswith(("http://", "https://")):
        return path

    bucket_prefix = f"{AVATAR_BUCKET}/"
    if bucket_prefix in path:
        path = path.split(bucket_prefix, 1)[1]
    path = path.lstrip("/")
    if not path:
        return settings.default_avatar_path
    return f"{settings.storage_public_url.rstrip('/')}/{AVATAR_BUCKET}/{path}"


def collect_counterpart_ids(conversations: Iterable[object], *, viewer_id: str) -> set[str]:
    profile_ids: set[str] = set()
    for conversation in conversations:
        for attribute in ("participant_one", "participant_two"):
            if isinstance(conversation, Mapping):
                participant_id = conversation.get(attribute)
            else:
                participant_id = getattr(conversation, attribute, None)
            if isinstance(participant_id, str) and participant_id and participant_id != viewer_id:
                profile_ids.add(participant_id)
    return profile_ids


def fetch_profiles_by_ids(db: Session, profile_ids: Iterable[str]) -> list[Profile]:
    normalized_ids = [profile_id.strip() for profile_id in profile_ids if isinstance(profile_id, str) and profile_id.strip()]
    if not normalized_ids:
        return []

    deduped_ids = list(dict.fromkeys(normalized_ids))
    rows = db.scalars(select(Profile).where(Profile.id.in_(deduped_ids)).order_by(Profile.id.asc())).all()
    logger.debug("Fetched profiles requested=%s returned=%s", len(deduped_ids), len(rows))
    return list(rows)


def serialize_profile_snapshot(profile: Profile) -> dict[str, object]:
    return {
        "id": profile.id,
        "full_name": profile.full_name,
        "avatar_url": resolve_avatar_url(profile.avatar_url),
    }
