# src/activity_exchange/models/outbox.py
"""SQLAlchemy model for locally authored activities awaiting delivery."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, VARCHAR, BigInteger, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from activity_exchange.db.session import Base
from activity_exchange.db.time import utcnow

OUTBOX_STATUS_PENDING = "pending"
OUTBOX_STATUS_PROCESSING = "processing"
OUTBOX_STATUS_PUBLISHED = "published"


class OutboxItem(Base):
    """One outbound activity and its delivery progress."""

    __tablename__ = "outbox_item"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g., 'Create'
    actor_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    activity: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(
        VARCHAR(20), nullable=False, default=OUTBOX_STATUS_PENDING
    )  # 'pending', 'processing', 'published'
    # Offset of the next follower page; cleared once the last page went out.
    batch_offset: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def activity_id(self) -> str | None:
        ident = self.activity.get("id") if self.activity else None
        return ident if isinstance(ident, str) else None
