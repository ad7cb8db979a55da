"""Delivery targets beyond an actor's followers.

Each strategy receives the inboxes accumulated so far and returns an extended
list. Strategies are independent: the resolver runs whatever list it was
built with, and a strategy that cannot resolve a target skips it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from activity_exchange.core.activity import (
    PUBLIC_ALIASES,
    audience,
    host_of,
    in_reply_to,
    inbox_of,
    is_public,
    is_same_origin,
    object_to_uri,
)
from activity_exchange.core.settings import settings
from activity_exchange.services.errors import DiscoveryError
from activity_exchange.services.interfaces import Activity, Discovery, RecipientStrategy
from activity_exchange.services.moderation import ModerationGate

logger = logging.getLogger(__name__)


class MentionedActors:
    """Inboxes of the actors addressed in ``to``/``cc``."""

    def __init__(
        self,
        discovery: Discovery,
        local_host: str | None = None,
        gate: ModerationGate | None = None,
    ) -> None:
        self.discovery = discovery
        self.local_host = settings.site_host if local_host is None else local_host
        self.gate = gate

    async def __call__(self, inboxes: list[str], actor_id: int, activity: Activity) -> list[str]:
        for uri in audience(activity):
            if uri in PUBLIC_ALIASES or host_of(uri) is None:
                continue
            if is_same_origin(uri, self.local_host):
                continue
            if self.gate is not None and self.gate.is_actor_blocked(uri, actor_id):
                logger.debug("Skipping blocked mentioned actor %s", uri)
                continue
            try:
                profile = await self.discovery.fetch_actor(uri)
            except DiscoveryError as e:
                logger.debug("Skipping mentioned actor %s: %s", uri, e)
                continue
            inbox = inbox_of(profile)
            if inbox:
                inboxes.append(inbox)
        return inboxes


class ReplyTargets:
    """Inbox of the author of every remote object the activity replies to."""

    def __init__(
        self,
        discovery: Discovery,
        local_host: str | None = None,
        gate: ModerationGate | None = None,
    ) -> None:
        self.discovery = discovery
        self.local_host = settings.site_host if local_host is None else local_host
        self.gate = gate

    async def __call__(self, inboxes: list[str], actor_id: int, activity: Activity) -> list[str]:
        for url in in_reply_to(activity):
            if host_of(url) is None or is_same_origin(url, self.local_host):
                continue
            try:
                remote_object = await self.discovery.fetch_object(url)
                author = object_to_uri(remote_object.get("attributedTo"))
                if not author:
                    logger.debug("Reply target %s has no attribution", url)
                    continue
                if self.gate is not None and self.gate.is_actor_blocked(author, actor_id):
                    logger.debug("Skipping reply target %s by blocked actor %s", url, author)
                    continue
                profile = await self.discovery.fetch_actor(author)
            except DiscoveryError as e:
                logger.debug("Skipping reply target %s: %s", url, e)
                continue
            inbox = inbox_of(profile)
            if inbox:
                inboxes.append(inbox)
        return inboxes


class Relays:
    """Configured relay inboxes, for public activities only."""

    def __init__(self, relays: Iterable[str] | None = None) -> None:
        self.relays = list(settings.relays if relays is None else relays)

    async def __call__(self, inboxes: list[str], actor_id: int, activity: Activity) -> list[str]:
        if is_public(activity):
            inboxes.extend(self.relays)
        return inboxes


class RecipientResolver:
    """Runs the configured strategies and de-duplicates their result."""

    def __init__(self, strategies: Sequence[RecipientStrategy]) -> None:
        self.strategies = list(strategies)

    async def resolve(self, actor_id: int, activity: Activity) -> list[str]:
        inboxes: list[str] = []
        for strategy in self.strategies:
            inboxes = await strategy(inboxes, actor_id, activity)
        return list(dict.fromkeys(inbox for inbox in inboxes if inbox))


def default_resolver(discovery: Discovery, gate: ModerationGate | None = None) -> RecipientResolver:
    """Build a resolver with the mention, reply and relay strategies."""
    return RecipientResolver(
        [
            MentionedActors(discovery, gate=gate),
            ReplyTargets(discovery, gate=gate),
            Relays(),
        ]
    )
