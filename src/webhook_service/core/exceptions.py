"""Common exceptions for domain, repository and delivery layers."""
from __future__ import annotations


class WebhookServiceError(Exception):
    """Base error for service layer."""


class RepositoryError(WebhookServiceError):
    """Raised when repository operations fail."""


class NotFoundError(RepositoryError):
    """Raised when requested entity is missing."""


class SubscriptionConfigError(WebhookServiceError):
    """Raised when a subscription is rejected at create/update time (bad URL, weak secret)."""


class InternalSchedulingError(WebhookServiceError):
    """Raised when the task queue or ledger cannot be written.

    Fatal to the current poll cycle: the outbox poller must not advance past
    the event it failed to hand off.
    """


class DeliveryError(WebhookServiceError):
    """Base error for a failed outbound webhook call."""

    kind = "transient"

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TransientDeliveryError(DeliveryError):
    """Timeout, connection error, 5xx or 429. Retryable."""

    kind = "transient"


class PermanentDeliveryError(DeliveryError):
    """4xx other than 429. Still retried up to the limit, tagged for operators."""

    kind = "permanent"
