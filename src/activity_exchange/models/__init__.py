# src/activity_exchange/models/__init__.py
"""SQLAlchemy models for the activity exchange engine."""

from .actor import Follower, LocalActor
from .block import ActorBlock, SiteBlock
from .inbox import InboxItem, InboxRecipient
from .outbox import OutboxItem
from .task import ScheduledTask

__all__ = [
    "Follower", "LocalActor",
    "ActorBlock", "SiteBlock",
    "InboxItem", "InboxRecipient",
    "OutboxItem",
    "ScheduledTask",
]
