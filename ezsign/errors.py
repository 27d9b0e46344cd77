"""
Exceptions raised by the delivery subsystem.

Remote endpoint failures are recorded as data, not raised; these cover
lookups, invalid operator actions and job-level failures that must reach
the queue's retry machinery.
"""


class DeliveryError(Exception):
    """Base class for delivery subsystem errors."""


class QueueConfigError(DeliveryError):
    """A queue's timing configuration is unsafe."""


class UnknownJobKind(DeliveryError):
    """A job payload names a kind no worker handles."""


class WebhookNotFound(DeliveryError):
    """Webhook subscription does not exist or belongs to another user."""


class WebhookEventNotFound(DeliveryError):
    """Webhook event row does not exist."""


class InvalidWebhookUrl(DeliveryError):
    """Webhook URL is not an absolute http(s) URL."""


class WebhookDeliveryFailed(DeliveryError):
    """A delivery attempt ended without reaching the endpoint successfully."""

    def __init__(self, event_id: str, status_code: int | None, message: str, retryable: bool):
        super().__init__(message)
        self.event_id = event_id
        self.status_code = status_code
        self.retryable = retryable


class DocumentNotFound(DeliveryError):
    """Document does not exist."""


class DeadLetterEntryNotFound(DeliveryError):
    """Dead letter entry does not exist."""


class InvalidDeadLetterTransition(DeliveryError):
    """Operator action is not allowed from the entry's current status."""


class InvalidWebhookEvents(DeliveryError):
    """Webhook subscribes to no events, too many, or unknown ones."""


class WebhookLimitExceeded(DeliveryError):
    """User already owns the maximum number of webhooks."""


class JobAttemptsExhausted(DeliveryError):
    """A job came back after its last attempt was interrupted (worker crash or lease expiry)."""


class EmailSenderNotConfigured(DeliveryError):
    """No reminder email sender is configured outside development."""
