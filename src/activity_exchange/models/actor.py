# src/activity_exchange/models/actor.py
"""Local actors and the remote actors following them."""

from sqlalchemy import BigInteger, Boolean, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from activity_exchange.db.session import Base


class LocalActor(Base):
    """A person or the site itself publishing from this server."""

    __tablename__ = "local_actor"

    # Explicit ids; 0 is reserved for the site-wide actor.
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    uri: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    followers_uri: Mapped[str | None] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Follower(Base):
    """A remote actor following a local actor, with its delivery endpoints."""

    __tablename__ = "follower"
    __table_args__ = (
        UniqueConstraint("actor_id", "remote_actor", name="uq_follower_actor_remote"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("local_actor.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    remote_actor: Mapped[str] = mapped_column(Text, nullable=False)
    inbox: Mapped[str] = mapped_column(Text, nullable=False)
    shared_inbox: Mapped[str | None] = mapped_column(Text, nullable=True)
