from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from estate_chat.db.session import Base


class Conversation(Base):
    __tablename__ = "conversations"
    # participant_one always holds the lexically smaller id.
    __table_args__ = (
        UniqueConstraint("participant_one", "participant_two", "listing_id", name="uq_conversation_pair_listing"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    participant_one: Mapped[str] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    participant_two: Mapped[str] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    listing_id: Mapped[str] = mapped_column(ForeignKey("listings.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))

    listing = relationship("Listing")
    messages = relationship("Message", back_populates="conversation", cascade="all, delete-orphan")

    def other_participant(self, viewer_id: str) -> str:
        return self.participant_two if self.participant_one == viewer_id else self.participant_one

    def has_participant(self, profile_id: str) -> bool:
        return profile_id in (self.participant_one, self.participant_two)
