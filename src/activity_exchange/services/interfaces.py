"""Extension points injected into the dispatcher, inbox and moderation services.

Collaborators outside the engine (HTTP signing, discovery, side-effect handlers,
observability) plug in through these interfaces at construction time.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from activity_exchange.models import LocalActor, OutboxItem

Activity = Mapping[str, Any]


@runtime_checkable
class DeliveryTransport(Protocol):
    """Posts one activity to one remote inbox."""

    async def send(self, inbox: str, activity: Activity, actor_id: int) -> int:
        """Return the HTTP status on success, raise ``DeliveryError`` otherwise."""
        ...


@runtime_checkable
class Discovery(Protocol):
    """Resolves handles, actors and remote objects."""

    async def resolve_handle(self, handle: str) -> str:
        ...

    async def fetch_actor(self, handle_or_uri: str) -> dict[str, Any]:
        ...

    async def fetch_object(self, uri: str) -> dict[str, Any]:
        ...


class TaskScheduler(Protocol):
    """Persists a named task to run at or after ``run_at``."""

    def schedule(
        self,
        name: str,
        payload: Mapping[str, Any],
        *,
        run_at: datetime | None = None,
        ttl_seconds: int | None = None,
    ) -> int:
        ...


class RecipientStrategy(Protocol):
    """Extends the accumulated list of additional inboxes for an activity."""

    async def __call__(self, inboxes: list[str], actor_id: int, activity: Activity) -> list[str]:
        ...


class RequestSigner(Protocol):
    """Returns headers authenticating a request on behalf of a local actor."""

    def __call__(self, method: str, url: str, body: bytes, actor_id: int) -> Mapping[str, str]:
        ...


# Receives the current decision and returns the (possibly overridden) one.
FanOutPolicy = Callable[[bool, Activity, "LocalActor | None", "OutboxItem"], bool]

# Returns True when an activity type must be handled without being stored.
SkipStoragePredicate = Callable[[str, Activity], bool]

# Side effect for one activity type: (activity, recipient ids, inbox item id or None).
ActivityHandler = Callable[[Activity, Sequence[int], "int | None"], Awaitable[None]]


class DispatchObserver:
    """Notification sink for outbound delivery; override the hooks you need."""

    def pre_send(self, inboxes: Sequence[str], activity: Activity, outbox_item_id: int) -> None:
        return None

    def sent_to_inbox(
        self, inbox: str, status_code: int | None, activity: Activity, outbox_item_id: int
    ) -> None:
        return None

    def batch_complete(self, outbox_item_id: int, batch_size: int, offset: int) -> None:
        return None

    def outbox_processing_complete(self, outbox_item_id: int) -> None:
        return None

    def delivery_abandoned(
        self, inboxes: Sequence[str], outbox_item_id: int, attempt: int
    ) -> None:
        return None


class InboxObserver:
    """Notification sink for inbound ingestion; override the hooks you need."""

    def received(
        self, activity: Activity, recipients: Sequence[int], activity_type: str, context: str
    ) -> None:
        return None

    def blocked(self, activity: Activity, recipients: Sequence[int]) -> None:
        return None

    def stored(self, inbox_item_id: int, activity: Activity, recipients: Sequence[int]) -> None:
        return None

    def handled(
        self, activity: Activity, recipients: Sequence[int], inbox_item_id: int | None
    ) -> None:
        return None


class OutboxListener(Protocol):
    """Notified after an activity has been queued in the outbox."""

    async def outbox_item_added(self, outbox_item_id: int, activity: Activity) -> None:
        ...
