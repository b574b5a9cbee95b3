"""Webhook error taxonomy.

Every failure the dispatch core can surface derives from WebhookError so
callers can catch the whole family at API boundaries.
"""

from typing import Optional


class WebhookError(Exception):
    """Base class for all webhook dispatch errors."""


class ValidationError(WebhookError, ValueError):
    """Malformed event or subscription, rejected at intake and never retried."""


class SignatureVerificationError(ValidationError):
    """Inbound webhook signature did not match the shared secret."""


class DeliveryError(WebhookError):
    """An outbound delivery attempt did not succeed."""

    def __init__(self, status_code: Optional[int], reason: str):
        self.status_code = status_code
        self.reason = reason
        super().__init__(reason)


class TransientDeliveryError(DeliveryError):
    """Network error, timeout, HTTP 429 or 5xx. Retried per backoff policy."""


class TerminalDeliveryError(DeliveryError):
    """HTTP 4xx other than 429, or retry budget exhausted. Not retried."""


class StorageUnavailableError(WebhookError):
    """The durability layer could not be reached."""


class QueueUnavailableError(StorageUnavailableError):
    """The delivery queue could not be reached; producer intake must fail."""


class LeaseLostError(WebhookError):
    """A worker tried to acknowledge a task it no longer owns."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Lease lost for delivery task {task_id}")


class SubscriptionNotFoundError(WebhookError, KeyError):
    """No subscription exists with the requested id."""

    def __init__(self, subscription_id: str):
        self.subscription_id = subscription_id
        super().__init__(subscription_id)

    def __str__(self) -> str:
        return f"Subscription not found: {self.subscription_id}"
