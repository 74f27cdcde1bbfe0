"""Exception hierarchy for postback intake, attribution, delivery and audits."""

from __future__ import annotations

from typing import Any


class PostbackRelayError(Exception):
    """Base exception for service errors."""

    pass


class ValidationError(PostbackRelayError):
    """Raised when an inbound postback is malformed."""

    def __init__(self, message: str, details: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.details = details or []


class AttributionLookupError(PostbackRelayError):
    """Raised when the tracking platform cannot be queried (retries exhausted)."""

    def __init__(self, message: str, *, attempts: int = 0, status: int | None = None, reason: str | None = None):
        super().__init__(message)
        self.attempts = attempts
        self.status = status
        self.reason = reason


class DeliveryError(PostbackRelayError):
    """Raised when a notification could not be delivered to any subscriber."""

    def __init__(self, message: str, *, recipient_count: int = 0, success_count: int = 0, failed_count: int = 0):
        super().__init__(message)
        self.recipient_count = recipient_count
        self.success_count = success_count
        self.failed_count = failed_count


class TransportError(PostbackRelayError):
    """Raised by the chat transport when a single send fails."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


class ReconciliationError(PostbackRelayError):
    """Raised when an audit cannot complete (storage or platform failure)."""

    pass
