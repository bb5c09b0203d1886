from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from estate_chat.schemas.common import UtcDatetime
from estate_chat.schemas.messages import LastMessagePreview
from estate_chat.schemas.profiles import ListingSnapshot, ProfileSnapshot


class ConversationOpenRequest(BaseModel):
    other_participant_id: str = Field(min_length=1, max_length=64)
    listing_id: str = Field(min_length=1, max_length=64)


class ConversationSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    participant_one: str
    participant_two: str
    listing_id: str
    updated_at: UtcDatetime
    listing: ListingSnapshot | None = None
    other_participant: ProfileSnapshot | None = None
    last_message: LastMessagePreview | None = None
    unread_count: int = Field(default=0, ge=0)

    def other_participant_id(self, viewer_id: str) -> str:
        return self.participant_two if self.participant_one == viewer_id else self.participant_one
