"""HTTP delivery of activities to remote inboxes.

Signing is delegated to an injected ``RequestSigner``; this module only takes
care of the POST itself and of turning its outcome into a status code or a
``DeliveryError``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass

import httpx

from activity_exchange.core.settings import settings
from activity_exchange.services.errors import DeliveryError
from activity_exchange.services.interfaces import Activity, RequestSigner

logger = logging.getLogger(__name__)

ACTIVITY_CONTENT_TYPE = "application/activity+json"
HTTP_MULTIPLE_CHOICES = 300


@dataclass(frozen=True)
class TransportConfig:
    """Static configuration for outbound delivery."""

    timeout_seconds: float
    user_agent: str


def load_transport_config() -> TransportConfig:
    """Build configuration object from global settings."""

    return TransportConfig(
        timeout_seconds=float(settings.http_timeout_seconds),
        user_agent=settings.http_user_agent,
    )


class HttpDeliveryTransport:
    """Posts activities to remote inboxes with httpx."""

    def __init__(
        self,
        config: TransportConfig | None = None,
        signer: RequestSigner | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or load_transport_config()
        self._signer = signer
        self._client = client
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    headers={"User-Agent": self.config.user_agent},
                )
        return self._client

    async def send(self, inbox: str, activity: Activity, actor_id: int) -> int:
        """Deliver ``activity`` to ``inbox`` on behalf of local actor ``actor_id``.

        Returns:
            The 2xx status code returned by the remote server

        Raises:
            DeliveryError: on network failure, a malformed inbox URL or a non-2xx response
        """
        client = await self._ensure_client()
        body = json.dumps(activity, separators=(",", ":")).encode("utf-8")
        headers = {"Content-Type": ACTIVITY_CONTENT_TYPE, "Accept": ACTIVITY_CONTENT_TYPE}
        if self._signer is not None:
            headers.update(self._signer("POST", inbox, body, actor_id))

        try:
            response = await client.post(inbox, content=body, headers=headers)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol, ValueError) as exc:
            raise DeliveryError(
                f"Invalid inbox URL {inbox!r}: {exc}", inbox=inbox, terminal=True
            ) from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Delivery to {inbox} failed: {exc}", inbox=inbox) from exc

        if response.status_code >= HTTP_MULTIPLE_CHOICES:
            raise DeliveryError(
                f"Inbox {inbox} responded with {response.status_code}",
                inbox=inbox,
                status_code=response.status_code,
            )

        logger.debug("Delivered activity to %s (%d)", inbox, response.status_code)
        return response.status_code

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
