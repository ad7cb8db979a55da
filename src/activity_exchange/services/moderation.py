# src/activity_exchange/services/moderation.py
"""Moderation gate consulted before inbound or outbound side effects run."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from activity_exchange.core.activity import host_of, object_to_uri
from activity_exchange.core.settings import settings
from activity_exchange.models.block import (
    BLOCK_KIND_ACTOR,
    BLOCK_KIND_DOMAIN,
    BLOCK_KIND_KEYWORD,
)
from activity_exchange.services.blocks import BlockStore
from activity_exchange.services.discovery import is_handle
from activity_exchange.services.errors import DiscoveryError
from activity_exchange.services.interfaces import Discovery

logger = logging.getLogger(__name__)

KEYWORD_FIELDS = ("content", "summary", "name", "preferredUsername")


def _text_fields(activity: Mapping[str, Any]) -> list[str]:
    texts: list[str] = []
    for source in (activity, activity.get("object")):
        if not isinstance(source, Mapping):
            continue
        for field in KEYWORD_FIELDS:
            value = source.get(field)
            if isinstance(value, str) and value:
                texts.append(value)
        for field in ("contentMap", "content_map"):
            content_map = source.get(field)
            if isinstance(content_map, Mapping):
                texts.extend(v for v in content_map.values() if isinstance(v, str) and v)
    return texts


def _contains_any(texts: Iterable[str], keywords: Iterable[str]) -> bool:
    lowered = [text.lower() for text in texts]
    for keyword in keywords:
        needle = keyword.lower()
        if needle and any(needle in text for text in lowered):
            return True
    return False


class ModerationGate:
    """Decides whether an actor or an activity is blocked.

    Site-wide blocks are checked first and win regardless of per-actor
    settings. Domain blocks match the exact host only: blocking
    ``example.com`` leaves ``www.example.com`` alone.
    """

    def __init__(
        self,
        blocks: BlockStore,
        discovery: Discovery | None = None,
        disallowed_keywords: Iterable[str] | None = None,
    ) -> None:
        self.blocks = blocks
        self.discovery = discovery
        self.disallowed_keywords = list(
            settings.disallowed_keywords if disallowed_keywords is None else disallowed_keywords
        )

    def is_actor_blocked(self, actor_uri: str | None, actor_id: int | None = None) -> bool:
        """Check an actor URI against domain and actor blocks.

        Args:
            actor_uri: Remote actor URI
            actor_id: Local actor whose own blocks also apply

        Returns:
            True when blocked; malformed URIs are never blocked
        """
        host = host_of(actor_uri)
        if host is None:
            return False
        uri = actor_uri.strip()

        if uri in self.blocks.site_values(BLOCK_KIND_ACTOR):
            return True
        if host in self.blocks.site_values(BLOCK_KIND_DOMAIN):
            return True

        if actor_id is None or isinstance(actor_id, bool) or actor_id < 0:
            return False
        if uri in self.blocks.actor_values(actor_id, BLOCK_KIND_ACTOR):
            return True
        return host in self.blocks.actor_values(actor_id, BLOCK_KIND_DOMAIN)

    def contains_blocked_keyword(
        self, activity: Mapping[str, Any], actor_id: int | None = None
    ) -> bool:
        """Scan the textual fields of an activity and its object for blocked keywords."""
        texts = _text_fields(activity)
        keywords = self.blocks.site_values(BLOCK_KIND_KEYWORD)
        if actor_id is not None and not isinstance(actor_id, bool) and actor_id >= 0:
            keywords = keywords + self.blocks.actor_values(actor_id, BLOCK_KIND_KEYWORD)
        if _contains_any(texts, keywords):
            return True

        # The disallow list also applies to the sender's URI.
        actor_uri = object_to_uri(activity.get("actor"))
        if actor_uri:
            texts.append(actor_uri)
        return _contains_any(texts, self.disallowed_keywords)

    async def _resolve_actor_uri(self, activity: Mapping[str, Any]) -> str | None:
        actor = object_to_uri(activity.get("actor"))
        if not actor or not is_handle(actor):
            return actor
        if self.discovery is None:
            logger.debug("No discovery configured to resolve %s", actor)
            return None
        try:
            return await self.discovery.resolve_handle(actor)
        except DiscoveryError as e:
            logger.debug("Could not resolve handle %s: %s", actor, e)
            return None

    async def activity_is_blocked(self, activity: Any, actor_id: int | None = None) -> bool:
        """Return True when the sender or the content of ``activity`` is blocked.

        Handle-only senders are resolved through discovery first so domain
        blocks apply to them. Malformed activities are not blocked.
        """
        if not isinstance(activity, Mapping) or not activity.get("actor"):
            return False

        actor_uri = await self._resolve_actor_uri(activity)
        if actor_uri and self.is_actor_blocked(actor_uri, actor_id):
            return True
        return self.contains_blocked_keyword(activity, actor_id)

    async def is_interaction_blocked(self, activity: Any, actor_id: int) -> bool:
        """Variant of ``activity_is_blocked`` for interaction requests.

        An interaction (for instance a quote request) is granted only when its
        sender resolves to a well-formed actor URI, so malformed input and
        resolution errors count as blocked here.
        """
        if not isinstance(activity, Mapping) or not activity.get("actor"):
            return True

        actor_uri = await self._resolve_actor_uri(activity)
        if host_of(actor_uri) is None:
            logger.info("Rejecting interaction from unresolvable actor %r", activity.get("actor"))
            return True
        if self.is_actor_blocked(actor_uri, actor_id):
            return True
        return self.contains_blocked_keyword(activity, actor_id)
