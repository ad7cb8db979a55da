"""Discovery of remote actors and objects.

Handles (``name@domain``) are resolved through WebFinger, actor profiles and
objects are fetched as ActivityStreams JSON. Successful lookups are cached in
process for ``discovery_cache_ttl_seconds``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from threading import Lock
from typing import Any

import httpx

from activity_exchange.core.settings import settings
from activity_exchange.services.errors import DiscoveryError

logger = logging.getLogger(__name__)

HTTP_OK = 200
ACTIVITY_ACCEPT = 'application/activity+json, application/ld+json; profile="https://www.w3.org/ns/activitystreams"'
ACTOR_LINK_TYPES = ("application/activity+json", "application/ld+json")


def is_handle(value: str) -> bool:
    """Return True for ``name@domain`` style identifiers (optionally ``@`` or ``acct:`` prefixed)."""
    if not value or "://" in value:
        return False
    candidate = value.removeprefix("acct:").lstrip("@")
    name, sep, domain = candidate.partition("@")
    return bool(sep and name and domain and "@" not in domain)


def split_handle(value: str) -> tuple[str, str]:
    candidate = value.removeprefix("acct:").lstrip("@")
    name, _, domain = candidate.partition("@")
    return name, domain.lower()


class DiscoveryClient:
    """Resolves handles and fetches remote ActivityStreams documents."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        cache_ttl_seconds: int | None = None,
    ) -> None:
        self._client = client
        self._client_lock = asyncio.Lock()
        self._ttl = (
            settings.discovery_cache_ttl_seconds if cache_ttl_seconds is None else cache_ttl_seconds
        )
        self._cache: dict[str, tuple[float, Any]] = {}
        self._cache_lock = Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(float(settings.http_timeout_seconds)),
                    headers={"User-Agent": settings.http_user_agent},
                    follow_redirects=True,
                )
        return self._client

    def _cached(self, key: str) -> Any | None:
        now = time.monotonic()
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            expiry, value = entry
            if expiry < now:
                self._cache.pop(key, None)
                return None
            return value

    def _remember(self, key: str, value: Any) -> None:
        if self._ttl <= 0:
            return
        with self._cache_lock:
            self._cache[key] = (time.monotonic() + self._ttl, value)

    async def _get_json(self, url: str, *, params: dict[str, str] | None = None,
                        accept: str = ACTIVITY_ACCEPT) -> dict[str, Any]:
        client = await self._ensure_client()
        try:
            response = await client.get(url, params=params, headers={"Accept": accept})
        except httpx.HTTPError as exc:
            raise DiscoveryError(f"Request to {url} failed: {exc}") from exc

        if response.status_code != HTTP_OK:
            raise DiscoveryError(f"{url} responded with {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise DiscoveryError(f"{url} returned invalid JSON") from exc

        if not isinstance(payload, dict):
            raise DiscoveryError(f"{url} returned an unexpected document")
        return payload

    async def resolve_handle(self, handle: str) -> str:
        """Resolve ``name@domain`` to the actor URI advertised over WebFinger.

        Args:
            handle: Handle, optionally prefixed with ``@`` or ``acct:``

        Returns:
            The actor URI

        Raises:
            DiscoveryError: when the handle is malformed or cannot be resolved
        """
        if not is_handle(handle):
            raise DiscoveryError(f"Not a handle: {handle!r}")

        name, domain = split_handle(handle)
        resource = f"acct:{name}@{domain}"
        cached = self._cached(f"webfinger:{resource}")
        if cached is not None:
            return cached

        document = await self._get_json(
            f"https://{domain}/.well-known/webfinger",
            params={"resource": resource},
            accept="application/jrd+json, application/json",
        )
        for link in document.get("links") or []:
            if not isinstance(link, dict) or link.get("rel") != "self":
                continue
            if link.get("type") in ACTOR_LINK_TYPES and isinstance(link.get("href"), str):
                self._remember(f"webfinger:{resource}", link["href"])
                return link["href"]

        raise DiscoveryError(f"No actor link for {resource}")

    async def fetch_object(self, uri: str) -> dict[str, Any]:
        """Fetch a remote ActivityStreams object.

        Raises:
            DiscoveryError: on network failure, non-200 status or invalid JSON
        """
        cached = self._cached(f"object:{uri}")
        if cached is not None:
            return cached

        document = await self._get_json(uri)
        self._remember(f"object:{uri}", document)
        return document

    async def fetch_actor(self, handle_or_uri: str) -> dict[str, Any]:
        """Fetch an actor profile from a handle or an actor URI."""
        uri = handle_or_uri
        if is_handle(handle_or_uri):
            uri = await self.resolve_handle(handle_or_uri)
        return await self.fetch_object(uri)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
