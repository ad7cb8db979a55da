# src/activity_exchange/models/inbox.py
"""Models for de-duplicated inbound activities and their local recipients."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, VARCHAR, BigInteger, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from activity_exchange.db.session import Base
from activity_exchange.db.time import utcnow

VISIBILITY_PUBLIC = "public"
VISIBILITY_PRIVATE = "private"

CONTEXT_INBOX = "inbox"
CONTEXT_SHARED_INBOX = "shared_inbox"

# Recipient id representing the site-wide actor.
SITE_ACTOR_ID = 0


class InboxItem(Base):
    """An inbound activity, stored once per origin identifier."""

    __tablename__ = "inbox_item"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Not unique: concurrent deliveries may race, see InboxStore.deduplicate.
    origin_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    remote_actor: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    visibility: Mapped[str] = mapped_column(
        VARCHAR(20), nullable=False, default=VISIBILITY_PUBLIC
    )  # 'public', 'private'
    context: Mapped[str] = mapped_column(
        VARCHAR(20), nullable=False, default=CONTEXT_INBOX
    )  # 'inbox', 'shared_inbox'
    errors: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    recipients: Mapped[list["InboxRecipient"]] = relationship(
        back_populates="item",
        cascade="all, delete-orphan",
        order_by="InboxRecipient.actor_id",
    )


class InboxRecipient(Base):
    """Membership of a local actor in an inbox item's recipient set."""

    __tablename__ = "inbox_recipient"

    inbox_item_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("inbox_item.id", ondelete="CASCADE"),
        primary_key=True,
    )
    actor_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)

    item: Mapped[InboxItem] = relationship(back_populates="recipients")
