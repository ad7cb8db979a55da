"""Ingestion entry point for inbound activities.

An inbound activity is checked by the moderation gate, stored (or merged) in
the inbox store and then handed to the side-effect handler for its type.
Handlers only run for deliveries to a personal inbox. A shared-inbox
delivery is stored once and then replayed through the personal path for each
recipient by a ``redeliver_activity`` task, so a single broadcast does not
run its side effect once per local recipient in one go.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from activity_exchange.core.activity import TYPE_DELETE, activity_type
from activity_exchange.core.settings import settings
from activity_exchange.models.inbox import CONTEXT_INBOX
from activity_exchange.services.errors import INBOX_INVALID_ACTIVITY, ExchangeError, Failure
from activity_exchange.services.inbox import InboxStore, normalize_recipients
from activity_exchange.services.interfaces import (
    Activity,
    ActivityHandler,
    InboxObserver,
    SkipStoragePredicate,
    TaskScheduler,
)
from activity_exchange.services.moderation import ModerationGate
from activity_exchange.services.tasks import TaskHandler

logger = logging.getLogger(__name__)

TASK_REDELIVER_ACTIVITY = "redeliver_activity"


def skip_deletions(kind: str, activity: Activity) -> bool:
    """Deletions are tombstones: run their side effect, keep no record."""
    return kind == TYPE_DELETE


@dataclass(frozen=True)
class InboxOutcome:
    """What happened to one inbound delivery."""

    inbox_item_id: int | None = None
    stored: bool = False
    handled: bool = False
    blocked: bool = False
    failure: Failure | None = None


class InboxHandler:
    """Moderates, stores and dispatches inbound activities to their handlers."""

    def __init__(
        self,
        store: InboxStore,
        gate: ModerationGate,
        handlers: Mapping[str, ActivityHandler] | None = None,
        *,
        skip_storage: SkipStoragePredicate = skip_deletions,
        persist_types: Iterable[str] | None = None,
        observer: InboxObserver | None = None,
        scheduler: TaskScheduler | None = None,
    ) -> None:
        self.store = store
        self.gate = gate
        self.handlers = dict(handlers or {})
        self.skip_storage = skip_storage
        self.persist_types = frozenset(
            settings.inbox_persist_types if persist_types is None else persist_types
        )
        self.observer = observer or InboxObserver()
        self.scheduler = scheduler

    def task_handlers(self) -> dict[str, TaskHandler]:
        """Return the worker handler replaying shared deliveries per recipient."""

        async def redeliver_activity(payload: Mapping[str, Any]) -> None:
            await self.redeliver(payload["activity"], payload.get("recipients") or [])

        return {TASK_REDELIVER_ACTIVITY: redeliver_activity}

    async def _allowed_recipients(
        self, activity: Activity, actor_ids: Sequence[int]
    ) -> list[int] | None:
        if not actor_ids:
            return None if await self.gate.activity_is_blocked(activity) else []
        allowed = [
            actor_id
            for actor_id in actor_ids
            if not await self.gate.activity_is_blocked(activity, actor_id)
        ]
        return allowed or None

    async def receive(
        self,
        activity: Activity,
        recipients: int | Iterable[int],
        *,
        context: str = CONTEXT_INBOX,
    ) -> InboxOutcome:
        """Ingest one delivery.

        Args:
            activity: Inbound activity JSON
            recipients: Local actor id(s) the delivery is addressed to
            context: ``inbox`` for a personal inbox, ``shared_inbox`` for the shared one

        Returns:
            The outcome; ingestion problems are reported in it, never raised
        """
        if not isinstance(activity, Mapping):
            return InboxOutcome(failure=Failure(INBOX_INVALID_ACTIVITY, "Activity is not an object."))

        kind = activity_type(activity)
        actor_ids = normalize_recipients(recipients)
        self.observer.received(activity, actor_ids, kind, context)

        allowed = await self._allowed_recipients(activity, actor_ids)
        if allowed is None:
            logger.info("Blocked %s %s from %s", kind, activity.get("id"), activity.get("actor"))
            self.observer.blocked(activity, actor_ids)
            return InboxOutcome(blocked=True)

        if self.skip_storage(kind, activity):
            handled = await self._handle(kind, activity, allowed, None)
            return InboxOutcome(handled=handled)

        inbox_item_id: int | None = None
        if kind in self.persist_types:
            result = self.store.add(activity, allowed, context=context)
            if isinstance(result, Failure):
                logger.debug("Not storing %s: %s", activity.get("id"), result.message)
                return InboxOutcome(failure=result)
            inbox_item_id = result
            self.observer.stored(inbox_item_id, activity, allowed)

        if context != CONTEXT_INBOX:
            if self.scheduler is not None and allowed:
                self.scheduler.schedule(
                    TASK_REDELIVER_ACTIVITY,
                    {"activity": dict(activity), "recipients": allowed},
                )
            return InboxOutcome(inbox_item_id=inbox_item_id, stored=inbox_item_id is not None)

        handled = await self._handle(kind, activity, allowed, inbox_item_id)
        return InboxOutcome(
            inbox_item_id=inbox_item_id,
            stored=inbox_item_id is not None,
            handled=handled,
        )

    async def redeliver(self, activity: Activity, recipients: Iterable[int]) -> list[InboxOutcome]:
        """Replay a shared delivery through the personal-inbox path, one recipient at a time."""
        return [
            await self.receive(activity, actor_id, context=CONTEXT_INBOX)
            for actor_id in normalize_recipients(recipients)
        ]

    async def _handle(
        self,
        kind: str,
        activity: Activity,
        recipients: Sequence[int],
        inbox_item_id: int | None,
    ) -> bool:
        handler = self.handlers.get(kind)
        if handler is None:
            return False

        try:
            await handler(activity, recipients, inbox_item_id)
        except (ExchangeError, ValueError, TypeError, KeyError, AttributeError) as e:
            logger.error("Handler for %s %s failed: %s", kind, activity.get("id"), e, exc_info=True)
            if inbox_item_id is not None:
                self.store.log_error(inbox_item_id, f"{kind}: {e}")
            return False

        self.observer.handled(activity, recipients, inbox_item_id)
        return True
