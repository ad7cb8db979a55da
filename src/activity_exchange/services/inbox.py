"""Idempotent storage of inbound activities.

Inbound deliveries are at-least-once: the same activity may arrive several
times, through a personal inbox and through the shared inbox. The store keeps
one item per origin identifier and grows its recipient set on every repeat
delivery. ``deduplicate`` merges the extra rows left behind when two
deliveries race past the lookup before either one commits; the origin id
column is deliberately not unique, so that pass is what restores the
one-item-per-origin invariant.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from activity_exchange.core.activity import activity_type, is_public, object_to_uri
from activity_exchange.models import InboxItem, InboxRecipient
from activity_exchange.models.inbox import CONTEXT_INBOX, VISIBILITY_PRIVATE, VISIBILITY_PUBLIC
from activity_exchange.services.errors import (
    INBOX_INVALID_ACTIVITY,
    INBOX_ITEM_NOT_FOUND,
    INBOX_NO_RECIPIENTS,
    INBOX_NOT_RECIPIENT,
    Failure,
)

logger = logging.getLogger(__name__)


def normalize_recipients(recipients: int | Iterable[int] | None) -> list[int]:
    """Return distinct, non-negative actor ids in their original order."""
    if recipients is None:
        return []
    if isinstance(recipients, int):
        recipients = [recipients]

    seen: dict[int, None] = {}
    for actor_id in recipients:
        if isinstance(actor_id, bool) or not isinstance(actor_id, int) or actor_id < 0:
            continue
        seen.setdefault(actor_id, None)
    return list(seen)


class InboxStore:
    """Inbox items and their recipient sets."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, inbox_item_id: int) -> InboxItem | None:
        return self.db.get(InboxItem, inbox_item_id)

    def get_by_origin(self, origin_id: str) -> InboxItem | None:
        """Return the earliest item stored for ``origin_id``."""
        return (
            self.db.query(InboxItem)
            .filter(InboxItem.origin_id == origin_id)
            .order_by(InboxItem.created_at, InboxItem.id)
            .first()
        )

    def add(
        self,
        activity: Mapping[str, Any],
        recipients: int | Iterable[int],
        *,
        context: str = CONTEXT_INBOX,
    ) -> int | Failure:
        """Store an inbound activity, or merge its recipients into the existing item.

        Args:
            activity: Activity JSON; its ``id`` is the deduplication key
            recipients: One local actor id or several
            context: ``inbox`` for personal deliveries, ``shared_inbox`` otherwise

        Returns:
            Id of the stored or merged item, or a Failure
        """
        actor_ids = normalize_recipients(recipients)
        if not actor_ids:
            return Failure(INBOX_NO_RECIPIENTS, "No recipients provided.")

        origin_id = object_to_uri(activity.get("id")) if isinstance(activity, Mapping) else None
        if not origin_id:
            return Failure(INBOX_INVALID_ACTIVITY, "Activity has no id.")

        existing = self.get_by_origin(origin_id)
        if existing is not None:
            self.add_recipients(existing.id, actor_ids)
            logger.debug("Merged recipients %s into inbox item %s", actor_ids, existing.id)
            return existing.id

        item = InboxItem(
            origin_id=origin_id,
            activity_type=activity_type(activity),
            remote_actor=object_to_uri(activity.get("actor")),
            payload=dict(activity),
            visibility=VISIBILITY_PUBLIC if is_public(activity) else VISIBILITY_PRIVATE,
            context=context,
            errors=[],
            recipients=[InboxRecipient(actor_id=actor_id) for actor_id in actor_ids],
        )
        self.db.add(item)
        self.db.commit()
        logger.debug("Stored inbox item %s for %s", item.id, origin_id)
        return item.id

    def get_recipients(self, inbox_item_id: int) -> list[int]:
        rows = (
            self.db.query(InboxRecipient.actor_id)
            .filter(InboxRecipient.inbox_item_id == inbox_item_id)
            .order_by(InboxRecipient.actor_id)
            .all()
        )
        return [row.actor_id for row in rows]

    def has_recipient(self, inbox_item_id: int, actor_id: int) -> bool:
        return (
            self.db.query(InboxRecipient)
            .filter(
                InboxRecipient.inbox_item_id == inbox_item_id,
                InboxRecipient.actor_id == actor_id,
            )
            .first()
            is not None
        )

    def add_recipient(self, inbox_item_id: int, actor_id: int) -> bool:
        """Add one local actor to an item's recipients.

        Returns:
            False for negative ids or a missing item, True otherwise (including existing members)
        """
        if isinstance(actor_id, bool) or not isinstance(actor_id, int) or actor_id < 0:
            return False
        if self.get(inbox_item_id) is None:
            return False
        if self.has_recipient(inbox_item_id, actor_id):
            return True

        self.db.add(InboxRecipient(inbox_item_id=inbox_item_id, actor_id=actor_id))
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent delivery added the same member first.
            self.db.rollback()
        return True

    def add_recipients(self, inbox_item_id: int, actor_ids: Iterable[int]) -> bool:
        """Add several recipients; returns True when every id was accepted."""
        results = [
            self.add_recipient(inbox_item_id, actor_id)
            for actor_id in dict.fromkeys(actor_ids)
        ]
        return all(results)

    def remove_recipient(self, inbox_item_id: int, actor_id: int) -> bool:
        """Remove a member; False when it was not a member."""
        if isinstance(actor_id, bool) or not isinstance(actor_id, int) or actor_id < 0:
            return False
        deleted = (
            self.db.query(InboxRecipient)
            .filter(
                InboxRecipient.inbox_item_id == inbox_item_id,
                InboxRecipient.actor_id == actor_id,
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return bool(deleted)

    def deduplicate(self, origin_id: str) -> InboxItem | Failure:
        """Collapse every item stored for ``origin_id`` into the earliest one.

        Returns:
            The surviving item, or a Failure when nothing is stored for ``origin_id``
        """
        items = (
            self.db.query(InboxItem)
            .filter(InboxItem.origin_id == origin_id)
            .order_by(InboxItem.created_at, InboxItem.id)
            .all()
        )
        if not items:
            return Failure(INBOX_ITEM_NOT_FOUND, "Inbox item not found.")

        keeper, duplicates = items[0], items[1:]
        if not duplicates:
            return keeper

        members = set(self.get_recipients(keeper.id))
        merged: set[int] = set()
        for duplicate in duplicates:
            merged.update(self.get_recipients(duplicate.id))
            self.db.delete(duplicate)
        self.db.flush()

        for actor_id in sorted(merged - members):
            self.db.add(InboxRecipient(inbox_item_id=keeper.id, actor_id=actor_id))
        self.db.commit()
        logger.info(
            "Merged %d duplicate inbox items into %s for %s",
            len(duplicates),
            keeper.id,
            origin_id,
        )
        return keeper

    def get_by_origin_and_recipient(self, origin_id: str, actor_id: int) -> InboxItem | Failure:
        """Return the item for ``origin_id`` only if ``actor_id`` is one of its recipients."""
        item = self.get_by_origin(origin_id)
        if item is None:
            return Failure(INBOX_ITEM_NOT_FOUND, "Inbox item not found.")
        if not self.has_recipient(item.id, actor_id):
            return Failure(INBOX_NOT_RECIPIENT, "Actor is not a recipient of this item.")
        return item

    def log_error(self, inbox_item_id: int, message: str) -> None:
        item = self.get(inbox_item_id)
        if item is None:
            return
        item.errors = [*(item.errors or []), message]
        self.db.commit()
