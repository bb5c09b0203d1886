from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated

from pydantic import AfterValidator


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# SQLite hands back naive datetimes; everything crossing a boundary is UTC-aware.
UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]
