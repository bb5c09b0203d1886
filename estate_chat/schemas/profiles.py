from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class ProfileSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    full_name: str | None = None
    avatar_url: str | None = None


class ListingSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    owner_id: str
