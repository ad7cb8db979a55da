# src/activity_exchange/models/block.py
"""Block list entries consulted by the moderation gate."""

from sqlalchemy import BigInteger, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from activity_exchange.db.session import Base

BLOCK_KIND_DOMAIN = "domain"
BLOCK_KIND_ACTOR = "actor"
BLOCK_KIND_KEYWORD = "keyword"
BLOCK_KINDS = (BLOCK_KIND_DOMAIN, BLOCK_KIND_ACTOR, BLOCK_KIND_KEYWORD)


class SiteBlock(Base):
    """Block applying to every local actor."""

    __tablename__ = "site_block"
    __table_args__ = (UniqueConstraint("kind", "value", name="uq_site_block_kind_value"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)  # 'domain', 'actor', 'keyword'
    value: Mapped[str] = mapped_column(Text, nullable=False)


class ActorBlock(Base):
    """Block applying only to one local actor's view."""

    __tablename__ = "actor_block"
    __table_args__ = (
        UniqueConstraint("actor_id", "kind", "value", name="uq_actor_block_actor_kind_value"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
