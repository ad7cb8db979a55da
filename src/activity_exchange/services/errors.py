"""Error types shared by the exchange services."""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass

INBOX_NO_RECIPIENTS = "inbox_no_recipients"
INBOX_ITEM_NOT_FOUND = "inbox_item_not_found"
INBOX_NOT_RECIPIENT = "inbox_not_recipient"
INBOX_INVALID_ACTIVITY = "inbox_invalid_activity"


class ExchangeError(RuntimeError):
    """Base exception raised by exchange collaborators."""


class DeliveryError(ExchangeError):
    """Raised when posting an activity to a remote inbox fails.

    ``status_code`` is None for network failures and timeouts. ``terminal``
    marks failures that no later attempt can fix, such as a malformed inbox URL.
    """

    def __init__(
        self,
        message: str,
        *,
        inbox: str,
        status_code: int | None = None,
        terminal: bool = False,
    ) -> None:
        super().__init__(message)
        self.inbox = inbox
        self.status_code = status_code
        self.terminal = terminal

    def is_retryable(self, retry_codes: Collection[int]) -> bool:
        """Return True when the failure is worth another attempt later.

        Args:
            retry_codes: HTTP statuses considered transient

        Returns:
            True for network failures and transient statuses
        """
        if self.terminal:
            return False
        return self.status_code is None or self.status_code in retry_codes


class DiscoveryError(ExchangeError):
    """Raised when a handle, actor or remote object cannot be resolved."""


@dataclass(frozen=True)
class Failure:
    """Typed failure value returned instead of raising across the public surface."""

    code: str
    message: str

    def __bool__(self) -> bool:
        return False
