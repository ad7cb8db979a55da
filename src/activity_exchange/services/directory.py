# src/activity_exchange/services/directory.py
"""Lookups of local actors and of the remote actors following them."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from activity_exchange.core.activity import TYPE_DELETE, activity_type
from activity_exchange.models import Follower, LocalActor

logger = logging.getLogger(__name__)


class ActorDirectory:
    """Resolves local actor ids."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, actor_id: int) -> LocalActor | None:
        """Return the active local actor with ``actor_id``, or None."""
        if actor_id is None or actor_id < 0:
            return None
        actor = self.db.get(LocalActor, actor_id)
        if actor is None or not actor.active:
            return None
        return actor


class FollowerDirectory:
    """Follower inboxes of local actors, paged by offset for batched delivery."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def add(
        self,
        actor_id: int,
        remote_actor: str,
        inbox: str,
        shared_inbox: str | None = None,
    ) -> Follower:
        """Record ``remote_actor`` as a follower of ``actor_id``; repeated calls update endpoints."""
        follower = (
            self.db.query(Follower)
            .filter(Follower.actor_id == actor_id, Follower.remote_actor == remote_actor)
            .first()
        )
        if follower is None:
            follower = Follower(actor_id=actor_id, remote_actor=remote_actor)
            self.db.add(follower)
        follower.inbox = inbox
        follower.shared_inbox = shared_inbox
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            follower = (
                self.db.query(Follower)
                .filter(Follower.actor_id == actor_id, Follower.remote_actor == remote_actor)
                .one()
            )
        return follower

    def remove(self, actor_id: int, remote_actor: str) -> bool:
        deleted = (
            self.db.query(Follower)
            .filter(Follower.actor_id == actor_id, Follower.remote_actor == remote_actor)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return bool(deleted)

    def _inbox_query(self, activity: Mapping[str, Any], actor_id: int):
        inbox = func.coalesce(Follower.shared_inbox, Follower.inbox)
        query = select(inbox.label("inbox")).distinct()
        # Deletions go to everyone who ever followed anyone here.
        if activity_type(activity) != TYPE_DELETE:
            query = query.where(Follower.actor_id == actor_id)
        return query, inbox

    def get_inboxes_for_activity(
        self,
        activity: Mapping[str, Any],
        actor_id: int,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[str]:
        """Return distinct follower inboxes for an activity in a stable order.

        Args:
            activity: The outbound activity
            actor_id: Local actor sending it
            limit: Maximum number of inboxes to return
            offset: Number of inboxes to skip

        Returns:
            Inbox URLs, shared inboxes preferred over personal ones
        """
        query, inbox = self._inbox_query(activity, actor_id)
        query = query.order_by(inbox).offset(max(0, offset))
        if limit is not None:
            query = query.limit(limit)
        return list(self.db.execute(query).scalars())

    def count_inboxes(self, activity: Mapping[str, Any], actor_id: int) -> int:
        query, _ = self._inbox_query(activity, actor_id)
        return self.db.execute(select(func.count()).select_from(query.subquery())).scalar_one()

    def remote_actors_by_inbox(
        self, activity: Mapping[str, Any], actor_id: int, inboxes: Sequence[str]
    ) -> dict[str, list[str]]:
        """Map each delivery inbox to the followers reached through it."""
        if not inboxes:
            return {}
        inbox = func.coalesce(Follower.shared_inbox, Follower.inbox)
        query = select(inbox.label("inbox"), Follower.remote_actor).where(inbox.in_(list(inboxes)))
        if activity_type(activity) != TYPE_DELETE:
            query = query.where(Follower.actor_id == actor_id)

        actors: dict[str, list[str]] = {}
        for row in self.db.execute(query.order_by(Follower.remote_actor)):
            actors.setdefault(row.inbox, []).append(row.remote_actor)
        return actors

    def remove_remote_actor(self, remote_actor: str, actor_id: int | None = None) -> int:
        """Drop ``remote_actor`` as a follower of ``actor_id``, or of every local actor."""
        query = self.db.query(Follower).filter(Follower.remote_actor == remote_actor)
        if actor_id is not None:
            query = query.filter(Follower.actor_id == actor_id)
        deleted = query.delete(synchronize_session=False)
        self.db.commit()
        if deleted:
            logger.info("Removed blocked follower %s (%d rows)", remote_actor, deleted)
        return deleted
