from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from estate_chat.schemas.common import UtcDatetime

ChangeTable = Literal["messages", "conversations"]
ChangeType = Literal["INSERT", "UPDATE"]
FilterColumn = Literal["conversation_id", "participant_id"]


class ChangeFilter(BaseModel):
    column: FilterColumn
    value: str = Field(min_length=1, max_length=64)

    @property
    def topic_suffix(self) -> str:
        return f"{self.column}=eq.{self.value}"


class ChangeEventRead(BaseModel):
    id: int
    event_id: str
    table: ChangeTable
    event_type: ChangeType
    conversation_id: str
    occurred_at: UtcDatetime
    record: dict[str, object]


class ChangeFeed(BaseModel):
    cursor: int
    events: list[ChangeEventRead] = Field(default_factory=list)


def topic_for(table: str, change_filter: ChangeFilter) -> str:
    return f"{table}:{change_filter.topic_suffix}"
