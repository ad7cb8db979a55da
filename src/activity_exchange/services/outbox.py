"""Outbox queue of locally authored activities."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from activity_exchange.core.activity import activity_type
from activity_exchange.models import OutboxItem
from activity_exchange.models.outbox import OUTBOX_STATUS_PENDING, OUTBOX_STATUS_PUBLISHED
from activity_exchange.services.dispatcher import TASK_PROCESS_OUTBOX
from activity_exchange.services.interfaces import OutboxListener, TaskScheduler
from activity_exchange.services.tasks import TaskQueue

logger = logging.getLogger(__name__)


class OutboxService:
    """Creates outbox items and hands them to the background worker."""

    def __init__(
        self,
        db: Session,
        scheduler: TaskScheduler | None = None,
        listeners: Sequence[OutboxListener] = (),
    ) -> None:
        self.db = db
        self.scheduler = scheduler or TaskQueue(db)
        self.listeners = list(listeners)

    async def add(self, activity: Mapping[str, Any], actor_id: int) -> OutboxItem:
        """Queue ``activity`` for delivery on behalf of ``actor_id``.

        Args:
            activity: Activity JSON, stored as-is
            actor_id: Local actor the activity is sent from

        Returns:
            The pending outbox item
        """
        item = OutboxItem(
            activity_type=activity_type(activity),
            actor_id=actor_id,
            activity=dict(activity),
            status=OUTBOX_STATUS_PENDING,
        )
        self.db.add(item)
        self.db.commit()
        self.scheduler.schedule(TASK_PROCESS_OUTBOX, {"outbox_item_id": item.id})
        logger.debug("Queued %s outbox item %s for actor %s", item.activity_type, item.id, actor_id)

        for listener in self.listeners:
            await listener.outbox_item_added(item.id, item.activity)
        return item

    def get(self, outbox_item_id: int) -> OutboxItem | None:
        return self.db.get(OutboxItem, outbox_item_id)

    def purge(self, published_before: datetime) -> int:
        """Delete published items older than ``published_before``."""
        deleted = (
            self.db.query(OutboxItem)
            .filter(
                OutboxItem.status == OUTBOX_STATUS_PUBLISHED,
                OutboxItem.published_at < published_before,
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
        if deleted:
            logger.info("Purged %d published outbox items", deleted)
        return deleted
