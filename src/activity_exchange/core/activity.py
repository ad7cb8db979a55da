"""Helpers for reading the opaque activity JSON payload.

The engine never models activities beyond the handful of fields it routes on
(``id``, ``type``, ``actor``, ``to``, ``cc``, ``object``, ``inReplyTo``).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import urlparse

PUBLIC_COLLECTION = "https://www.w3.org/ns/activitystreams#Public"
PUBLIC_ALIASES = frozenset({PUBLIC_COLLECTION, "as:Public", "Public"})

TYPE_ACCEPT = "Accept"
TYPE_DELETE = "Delete"


def object_to_uri(value: Any) -> str | None:
    """Return the identifier of a link, object or list of either."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        if value.get("type") == "Link" and isinstance(value.get("href"), str):
            return value["href"]
        ident = value.get("id")
        return ident if isinstance(ident, str) and ident else None
    if isinstance(value, list) and value:
        return object_to_uri(value[0])
    return None


def _as_uris(value: Any) -> list[str]:
    if value is None:
        return []
    items: Iterable[Any] = value if isinstance(value, list) else [value]
    uris = []
    for item in items:
        uri = object_to_uri(item)
        if uri:
            uris.append(uri)
    return uris


def audience(activity: Mapping[str, Any]) -> list[str]:
    """Return the de-duplicated union of ``to`` and ``cc``."""
    seen: dict[str, None] = {}
    for field in ("to", "cc"):
        for uri in _as_uris(activity.get(field)):
            seen.setdefault(uri, None)
    return list(seen)


def is_public(activity: Mapping[str, Any]) -> bool:
    return any(uri in PUBLIC_ALIASES for uri in audience(activity))


def activity_type(activity: Mapping[str, Any]) -> str:
    """Return the capitalized activity type (``create`` becomes ``Create``)."""
    raw = activity.get("type")
    if not isinstance(raw, str) or not raw:
        return ""
    return raw[0].upper() + raw[1:]


def in_reply_to(activity: Mapping[str, Any]) -> list[str]:
    """Collect reply targets from the activity and its nested object."""
    targets = _as_uris(activity.get("inReplyTo"))
    nested = activity.get("object")
    if isinstance(nested, Mapping):
        targets.extend(_as_uris(nested.get("inReplyTo")))
    return list(dict.fromkeys(targets))


def host_of(uri: str | None) -> str | None:
    """Return the lower-cased host of an http(s) URI, or None when malformed."""
    if not uri or not isinstance(uri, str):
        return None
    try:
        parsed = urlparse(uri.strip())
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None
    return parsed.hostname.lower()


def is_same_origin(uri: str, local_host: str) -> bool:
    host = host_of(uri)
    return bool(host and local_host and host == local_host.lower())


def inbox_of(profile: Mapping[str, Any]) -> str | None:
    """Pick the shared inbox of an actor profile, falling back to its inbox."""
    endpoints = profile.get("endpoints")
    if isinstance(endpoints, Mapping):
        shared = endpoints.get("sharedInbox")
        if isinstance(shared, str) and shared:
            return shared
    inbox = profile.get("inbox")
    return inbox if isinstance(inbox, str) and inbox else None
