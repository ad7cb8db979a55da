"""Outbound delivery of outbox items.

The dispatcher sends an item to its additional recipients (mentions, reply
targets, relays) and then pages through the follower inboxes in batches of
``batch_size``. Every page after the first runs as its own ``send_batch``
task, carrying the offset of the page it covers. Deliveries that fail with a
transient status are re-queued as ``retry_delivery`` tasks with quadratic
backoff until ``max_attempts`` is reached. When a moderation gate is given,
inboxes on blocked hosts and inboxes reaching only blocked followers are
skipped.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from activity_exchange.core.activity import (
    PUBLIC_ALIASES,
    TYPE_ACCEPT,
    TYPE_DELETE,
    activity_type,
    audience,
)
from activity_exchange.core.settings import settings
from activity_exchange.db.time import utcnow
from activity_exchange.models import LocalActor, OutboxItem
from activity_exchange.models.outbox import OUTBOX_STATUS_PROCESSING, OUTBOX_STATUS_PUBLISHED
from activity_exchange.services.directory import ActorDirectory, FollowerDirectory
from activity_exchange.services.errors import DeliveryError
from activity_exchange.services.interfaces import (
    Activity,
    DeliveryTransport,
    DispatchObserver,
    FanOutPolicy,
    TaskScheduler,
)
from activity_exchange.services.moderation import ModerationGate
from activity_exchange.services.recipients import RecipientResolver
from activity_exchange.services.tasks import TaskHandler, TaskQueue

logger = logging.getLogger(__name__)

TASK_PROCESS_OUTBOX = "process_outbox"
TASK_SEND_BATCH = "send_batch"
TASK_RETRY_DELIVERY = "retry_delivery"


@dataclass(frozen=True)
class DispatcherConfig:
    """Tunables for batching and retries."""

    batch_size: int
    max_attempts: int
    retry_delay_seconds: int
    retry_error_codes: frozenset[int]
    retry_ttl_seconds: int


def load_dispatcher_config() -> DispatcherConfig:
    """Build configuration object from global settings."""

    return DispatcherConfig(
        batch_size=max(1, settings.outbox_batch_size),
        max_attempts=settings.retry_max_attempts,
        retry_delay_seconds=settings.retry_delay_seconds,
        retry_error_codes=frozenset(settings.retry_error_codes),
        retry_ttl_seconds=settings.retry_ticket_ttl_seconds,
    )


@dataclass(frozen=True)
class BatchCursor:
    """Where the next follower page of an outbox item starts."""

    outbox_item_id: int
    batch_size: int
    offset: int

    def to_payload(self) -> dict[str, int]:
        return {
            "outbox_item_id": self.outbox_item_id,
            "batch_size": self.batch_size,
            "offset": self.offset,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> BatchCursor:
        return cls(
            outbox_item_id=int(payload["outbox_item_id"]),
            batch_size=int(payload["batch_size"]),
            offset=int(payload["offset"]),
        )


@dataclass(frozen=True)
class RetryTicket:
    """Inboxes still owed an outbox item, and how many attempts were made."""

    outbox_item_id: int
    inboxes: tuple[str, ...]
    attempt: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "outbox_item_id": self.outbox_item_id,
            "inboxes": list(self.inboxes),
            "attempt": self.attempt,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> RetryTicket:
        return cls(
            outbox_item_id=int(payload["outbox_item_id"]),
            inboxes=tuple(payload.get("inboxes") or ()),
            attempt=int(payload.get("attempt", 1)),
        )


class Dispatcher:
    """Delivers outbox items to remote inboxes."""

    def __init__(
        self,
        db: Session,
        transport: DeliveryTransport,
        resolver: RecipientResolver,
        *,
        scheduler: TaskScheduler | None = None,
        actors: ActorDirectory | None = None,
        followers: FollowerDirectory | None = None,
        observer: DispatchObserver | None = None,
        fan_out_policies: Sequence[FanOutPolicy] = (),
        config: DispatcherConfig | None = None,
        gate: ModerationGate | None = None,
    ) -> None:
        self.db = db
        self.transport = transport
        self.resolver = resolver
        self.scheduler = scheduler or TaskQueue(db)
        self.actors = actors or ActorDirectory(db)
        self.followers = followers or FollowerDirectory(db)
        self.observer = observer or DispatchObserver()
        self.fan_out_policies = list(fan_out_policies)
        self.config = config or load_dispatcher_config()
        self.gate = gate

    def task_handlers(self) -> dict[str, TaskHandler]:
        """Return the worker handlers for the dispatcher's task names."""

        async def process_outbox(payload: Mapping[str, Any]) -> None:
            await self.process(int(payload["outbox_item_id"]))

        async def send_batch(payload: Mapping[str, Any]) -> None:
            cursor = BatchCursor.from_payload(payload)
            await self.dispatch_batch(cursor.outbox_item_id, cursor.batch_size, cursor.offset)

        async def retry_delivery(payload: Mapping[str, Any]) -> None:
            await self.retry(RetryTicket.from_payload(payload))

        return {
            TASK_PROCESS_OUTBOX: process_outbox,
            TASK_SEND_BATCH: send_batch,
            TASK_RETRY_DELIVERY: retry_delivery,
        }

    def _load(self, outbox_item_id: int) -> OutboxItem | None:
        item = self.db.get(OutboxItem, outbox_item_id)
        if item is None:
            logger.warning("Outbox item %s not found", outbox_item_id)
        return item

    def _publish(self, item: OutboxItem) -> None:
        item.batch_offset = None
        item.status = OUTBOX_STATUS_PUBLISHED
        item.published_at = utcnow()
        self.db.commit()
        logger.info("Outbox item %s published", item.id)

    async def process(self, outbox_item_id: int) -> None:
        """Deliver an outbox item to its additional recipients and start follower fan-out."""
        item = self._load(outbox_item_id)
        if item is None:
            return

        item.status = OUTBOX_STATUS_PROCESSING
        self.db.commit()

        activity = item.activity
        actor = self.actors.get(item.actor_id)
        if actor is None and activity_type(activity) != TYPE_DELETE:
            logger.info(
                "Actor %s of outbox item %s cannot be resolved, finalizing without sending",
                item.actor_id,
                item.id,
            )
            self._publish(item)
            return

        additional = self._allowed_inboxes(
            await self.resolver.resolve(item.actor_id, activity), item.actor_id
        )
        if additional:
            retries = await self.send_to_inboxes(additional, item.id)
            if retries:
                self.schedule_retry(retries, item.id)

        if self.should_send_to_followers(activity, actor, item):
            await self.dispatch_batch(item.id, self.config.batch_size, item.batch_offset or 0)
        else:
            self._publish(item)

    def should_send_to_followers(
        self, activity: Activity, actor: LocalActor | None, item: OutboxItem
    ) -> bool:
        """Decide whether ``item`` fans out to the actor's followers.

        The activity has to be public or addressed to the actor's followers
        collection, and there has to be at least one follower inbox. Each
        fan-out policy then gets to override the decision in turn.
        """
        addressed = set(audience(activity))
        send = bool(addressed & PUBLIC_ALIASES)
        if not send and actor is not None and actor.followers_uri:
            send = actor.followers_uri in addressed
        if send:
            send = self.followers.count_inboxes(activity, item.actor_id) > 0

        for policy in self.fan_out_policies:
            send = bool(policy(send, activity, actor, item))
        return send

    async def dispatch_batch(
        self, outbox_item_id: int, batch_size: int | None = None, offset: int = 0
    ) -> BatchCursor | None:
        """Send one page of follower inboxes.

        Returns:
            The cursor of the scheduled next page, or None once the item is published
        """
        item = self._load(outbox_item_id)
        if item is None:
            return None

        batch_size = max(1, batch_size or self.config.batch_size)
        inboxes = self.followers.get_inboxes_for_activity(
            item.activity, item.actor_id, limit=batch_size, offset=offset
        )

        page = self._allowed_follower_inboxes(item.activity, item.actor_id, inboxes)
        if page:
            retries = await self.send_to_inboxes(page, item.id)
            if retries:
                self.schedule_retry(retries, item.id)

        # A page shorter than the batch size is the last one.
        if len(inboxes) < batch_size:
            self._publish(item)
            self.observer.outbox_processing_complete(item.id)
            return None

        cursor = BatchCursor(item.id, batch_size, offset + batch_size)
        item.batch_offset = cursor.offset
        self.db.commit()
        self.scheduler.schedule(TASK_SEND_BATCH, cursor.to_payload())
        self.observer.batch_complete(item.id, batch_size, offset)
        logger.debug("Outbox item %s continues at offset %d", item.id, cursor.offset)
        return cursor

    async def _deliver(
        self, inbox: str, activity: Activity, actor_id: int
    ) -> tuple[str, int | None, DeliveryError | None]:
        try:
            status = await self.transport.send(inbox, activity, actor_id)
        except DeliveryError as e:
            return inbox, e.status_code, e
        except Exception as e:
            logger.exception("Unexpected error delivering to %s", inbox)
            return inbox, None, DeliveryError(str(e), inbox=inbox, terminal=True)
        return inbox, status, None

    def _allowed_inboxes(self, inboxes: Sequence[str], actor_id: int) -> list[str]:
        """Drop inboxes on hosts blocked for ``actor_id``."""
        if self.gate is None:
            return list(inboxes)
        allowed = [inbox for inbox in inboxes if not self.gate.is_actor_blocked(inbox, actor_id)]
        if len(allowed) < len(inboxes):
            logger.info(
                "Skipping %d blocked inboxes for actor %s", len(inboxes) - len(allowed), actor_id
            )
        return allowed

    def _allowed_follower_inboxes(
        self, activity: Activity, actor_id: int, inboxes: Sequence[str]
    ) -> list[str]:
        """Drop follower inboxes that only reach blocked followers."""
        if self.gate is None or not inboxes:
            return list(inboxes)

        followers = self.followers.remote_actors_by_inbox(activity, actor_id, inboxes)
        allowed = []
        for inbox in self._allowed_inboxes(inboxes, actor_id):
            remote_actors = followers.get(inbox, [])
            if remote_actors and all(
                self.gate.is_actor_blocked(remote_actor, actor_id) for remote_actor in remote_actors
            ):
                logger.info("Skipping inbox %s, every follower behind it is blocked", inbox)
                continue
            allowed.append(inbox)
        return allowed

    async def send_to_inboxes(self, inboxes: Sequence[str], outbox_item_id: int) -> list[str]:
        """Deliver an outbox item to each inbox.

        Returns:
            Inboxes that failed with a retryable condition
        """
        item = self._load(outbox_item_id)
        if item is None or not inboxes:
            return []

        activity = item.activity
        inboxes = list(dict.fromkeys(inboxes))
        self.observer.pre_send(inboxes, activity, item.id)

        results = await asyncio.gather(
            *(self._deliver(inbox, activity, item.actor_id) for inbox in inboxes)
        )

        retries = []
        for inbox, status, error in results:
            self.observer.sent_to_inbox(inbox, status, activity, item.id)
            if error is None:
                continue
            if error.is_retryable(self.config.retry_error_codes):
                retries.append(inbox)
            else:
                logger.warning("Dropping delivery of outbox item %s: %s", item.id, error)
        return retries

    def schedule_retry(
        self, inboxes: Sequence[str], outbox_item_id: int, attempt: int = 1
    ) -> RetryTicket | None:
        """Queue another attempt ``attempt² × retry_delay_seconds`` from now."""
        if not inboxes:
            return None

        ticket = RetryTicket(outbox_item_id, tuple(dict.fromkeys(inboxes)), attempt)
        run_at = utcnow() + timedelta(seconds=attempt * attempt * self.config.retry_delay_seconds)
        self.scheduler.schedule(
            TASK_RETRY_DELIVERY,
            ticket.to_payload(),
            run_at=run_at,
            ttl_seconds=self.config.retry_ttl_seconds,
        )
        logger.info(
            "Retry %d of outbox item %s to %d inboxes scheduled for %s",
            attempt,
            outbox_item_id,
            len(ticket.inboxes),
            run_at,
        )
        return ticket

    async def retry(self, ticket: RetryTicket) -> RetryTicket | None:
        """Consume a retry ticket, re-queueing what still fails while attempts remain."""
        retries = await self.send_to_inboxes(ticket.inboxes, ticket.outbox_item_id)
        if not retries:
            return None

        attempt = ticket.attempt + 1
        if attempt < self.config.max_attempts:
            return self.schedule_retry(retries, ticket.outbox_item_id, attempt)

        logger.warning(
            "Giving up on outbox item %s for %d inboxes after %d attempts",
            ticket.outbox_item_id,
            len(retries),
            attempt,
        )
        self.observer.delivery_abandoned(retries, ticket.outbox_item_id, attempt)
        return None

    async def send_immediate_accept(self, outbox_item_id: int, activity: Activity) -> None:
        """Deliver an ``Accept`` to its direct recipients without waiting for the worker."""
        if activity_type(activity) != TYPE_ACCEPT:
            return

        item = self._load(outbox_item_id)
        if item is None:
            return

        inboxes = self._allowed_inboxes(
            await self.resolver.resolve(item.actor_id, activity), item.actor_id
        )
        retries = await self.send_to_inboxes(inboxes, item.id)
        if retries:
            self.schedule_retry(retries, item.id)

    async def outbox_item_added(self, outbox_item_id: int, activity: Activity) -> None:
        await self.send_immediate_accept(outbox_item_id, activity)
