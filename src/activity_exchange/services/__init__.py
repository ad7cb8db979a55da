# src/activity_exchange/services/__init__.py
"""Delivery, ingestion and moderation services of the exchange engine."""

from .blocks import BlockStore
from .dispatcher import Dispatcher
from .inbox import InboxStore
from .inbox_handler import InboxHandler
from .moderation import ModerationGate
from .outbox import OutboxService
from .recipients import RecipientResolver
from .tasks import TaskQueue, TaskWorker

__all__ = [
    "BlockStore",
    "Dispatcher",
    "InboxStore",
    "InboxHandler",
    "ModerationGate",
    "OutboxService",
    "RecipientResolver",
    "TaskQueue",
    "TaskWorker",
]
