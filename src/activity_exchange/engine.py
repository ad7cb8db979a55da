"""Wiring of the exchange services around one database session."""

from __future__ import annotations

from collections.abc import Mapping

from sqlalchemy.orm import Session

from activity_exchange.services.blocks import BlockStore
from activity_exchange.services.discovery import DiscoveryClient
from activity_exchange.services.dispatcher import Dispatcher
from activity_exchange.services.inbox import InboxStore
from activity_exchange.services.inbox_handler import InboxHandler
from activity_exchange.services.interfaces import (
    ActivityHandler,
    DeliveryTransport,
    DispatchObserver,
    InboxObserver,
)
from activity_exchange.services.moderation import ModerationGate
from activity_exchange.services.recipients import default_resolver
from activity_exchange.services.tasks import HandlerFactory, TaskHandler, TaskQueue
from activity_exchange.services.transport import HttpDeliveryTransport


class ExchangeEngine:
    """Builds the dispatcher and inbox handler sharing a session and collaborators."""

    def __init__(
        self,
        transport: DeliveryTransport | None = None,
        discovery: DiscoveryClient | None = None,
        activity_handlers: Mapping[str, ActivityHandler] | None = None,
        dispatch_observer: DispatchObserver | None = None,
        inbox_observer: InboxObserver | None = None,
    ) -> None:
        self.transport = transport or HttpDeliveryTransport()
        self.discovery = discovery or DiscoveryClient()
        self.activity_handlers = dict(activity_handlers or {})
        self.dispatch_observer = dispatch_observer
        self.inbox_observer = inbox_observer

    def gate(self, db: Session) -> ModerationGate:
        return ModerationGate(BlockStore(db), self.discovery)

    def dispatcher(self, db: Session) -> Dispatcher:
        gate = self.gate(db)
        return Dispatcher(
            db,
            self.transport,
            default_resolver(self.discovery, gate),
            scheduler=TaskQueue(db),
            observer=self.dispatch_observer,
            gate=gate,
        )

    def inbox_handler(self, db: Session) -> InboxHandler:
        return InboxHandler(
            InboxStore(db),
            self.gate(db),
            self.activity_handlers,
            observer=self.inbox_observer,
            scheduler=TaskQueue(db),
        )

    def task_handlers(self, db: Session) -> dict[str, TaskHandler]:
        handlers = self.dispatcher(db).task_handlers()
        handlers.update(self.inbox_handler(db).task_handlers())
        return handlers

    @property
    def handler_factory(self) -> HandlerFactory:
        return self.task_handlers

    async def close(self) -> None:
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()
        await self.discovery.close()
