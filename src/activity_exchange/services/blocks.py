"""Persisted block lists, site-wide and per local actor."""

from __future__ import annotations

import logging
from urllib.parse import urlparse

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from activity_exchange.models import ActorBlock, SiteBlock
from activity_exchange.models.block import (
    BLOCK_KIND_ACTOR,
    BLOCK_KIND_DOMAIN,
    BLOCK_KIND_KEYWORD,
    BLOCK_KINDS,
)
from activity_exchange.services.directory import FollowerDirectory

logger = logging.getLogger(__name__)

SITE_SCOPE = "site"

_LISTING_KEYS = {
    BLOCK_KIND_DOMAIN: "domains",
    BLOCK_KIND_ACTOR: "actors",
    BLOCK_KIND_KEYWORD: "keywords",
}


def normalize_block_value(kind: str, value: str | None) -> str | None:
    """Return the stored form of a block value, or None when it is unusable.

    Domains are reduced to a lower-cased hostname, actors keep their exact URI
    and keywords are kept verbatim.
    """
    if not isinstance(value, str) or not value.strip():
        return None

    if kind == BLOCK_KIND_DOMAIN:
        candidate = value.strip()
        if "://" not in candidate:
            candidate = f"//{candidate}"
        try:
            host = urlparse(candidate).hostname
        except ValueError:
            return None
        return host.lower() if host else None
    if kind == BLOCK_KIND_ACTOR:
        return value.strip()
    if kind == BLOCK_KIND_KEYWORD:
        return value
    return None


def _actor_scope(scope: object) -> int | None:
    if isinstance(scope, bool) or not isinstance(scope, int) or scope < 0:
        return None
    return scope


class BlockStore:
    """Adds, removes and lists block entries.

    Invalid kinds, empty values and unknown scopes are accepted as no-ops so
    moderation call sites never have to branch on errors. Blocking an actor
    also drops it from the followers of the blocked scope.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def add_block(self, scope: str | int, kind: str, value: str) -> bool:
        if scope == SITE_SCOPE:
            return self.add_site_block(kind, value)
        actor_id = _actor_scope(scope)
        if actor_id is None:
            return True
        return self.add_actor_block(actor_id, kind, value)

    def remove_block(self, scope: str | int, kind: str, value: str) -> bool:
        if scope == SITE_SCOPE:
            return self.remove_site_block(kind, value)
        actor_id = _actor_scope(scope)
        if actor_id is None:
            return True
        return self.remove_actor_block(actor_id, kind, value)

    def _insert(self, entry: SiteBlock | ActorBlock) -> bool:
        self.db.add(entry)
        try:
            self.db.commit()
        except IntegrityError:
            # Already present, possibly inserted concurrently.
            self.db.rollback()
        return True

    def add_site_block(self, kind: str, value: str) -> bool:
        normalized = normalize_block_value(kind, value)
        if kind not in BLOCK_KINDS or normalized is None:
            return True
        exists = (
            self.db.query(SiteBlock)
            .filter(SiteBlock.kind == kind, SiteBlock.value == normalized)
            .first()
        )
        if exists is not None:
            return True
        logger.info("Adding site-wide %s block %s", kind, normalized)
        self._insert(SiteBlock(kind=kind, value=normalized))
        if kind == BLOCK_KIND_ACTOR:
            FollowerDirectory(self.db).remove_remote_actor(normalized)
        return True

    def remove_site_block(self, kind: str, value: str) -> bool:
        normalized = normalize_block_value(kind, value)
        if kind not in BLOCK_KINDS or normalized is None:
            return True
        self.db.query(SiteBlock).filter(
            SiteBlock.kind == kind, SiteBlock.value == normalized
        ).delete(synchronize_session=False)
        self.db.commit()
        return True

    def add_actor_block(self, actor_id: int, kind: str, value: str) -> bool:
        normalized = normalize_block_value(kind, value)
        if _actor_scope(actor_id) is None or kind not in BLOCK_KINDS or normalized is None:
            return True
        exists = (
            self.db.query(ActorBlock)
            .filter(
                ActorBlock.actor_id == actor_id,
                ActorBlock.kind == kind,
                ActorBlock.value == normalized,
            )
            .first()
        )
        if exists is not None:
            return True
        logger.info("Adding %s block %s for actor %s", kind, normalized, actor_id)
        self._insert(ActorBlock(actor_id=actor_id, kind=kind, value=normalized))
        if kind == BLOCK_KIND_ACTOR:
            FollowerDirectory(self.db).remove_remote_actor(normalized, actor_id)
        return True

    def remove_actor_block(self, actor_id: int, kind: str, value: str) -> bool:
        normalized = normalize_block_value(kind, value)
        if _actor_scope(actor_id) is None or kind not in BLOCK_KINDS or normalized is None:
            return True
        self.db.query(ActorBlock).filter(
            ActorBlock.actor_id == actor_id,
            ActorBlock.kind == kind,
            ActorBlock.value == normalized,
        ).delete(synchronize_session=False)
        self.db.commit()
        return True

    def site_values(self, kind: str) -> list[str]:
        rows = (
            self.db.query(SiteBlock.value)
            .filter(SiteBlock.kind == kind)
            .order_by(SiteBlock.id)
            .all()
        )
        return [row.value for row in rows]

    def actor_values(self, actor_id: int, kind: str) -> list[str]:
        rows = (
            self.db.query(ActorBlock.value)
            .filter(ActorBlock.actor_id == actor_id, ActorBlock.kind == kind)
            .order_by(ActorBlock.id)
            .all()
        )
        return [row.value for row in rows]

    def get_site_blocks(self) -> dict[str, list[str]]:
        """Return site-wide blocks keyed by ``domains``, ``actors`` and ``keywords``."""
        return {key: self.site_values(kind) for kind, key in _LISTING_KEYS.items()}

    def get_actor_blocks(self, actor_id: int) -> dict[str, list[str]]:
        """Return one actor's blocks keyed by ``domains``, ``actors`` and ``keywords``."""
        if _actor_scope(actor_id) is None:
            return {key: [] for key in _LISTING_KEYS.values()}
        return {key: self.actor_values(actor_id, kind) for kind, key in _LISTING_KEYS.items()}
