"""Common exceptions for domain, repository and delivery layers."""
from __future__ import annotations


class WebhookServiceError(Exception):
    """Base error for service layer."""


class RepositoryError(WebhookServiceError):
    """Raised when repository operations fail."""


class NotFoundError(RepositoryError):
    """Raised when requested entity is missing."""


class RecorderError(RepositoryError):
    """Raised when an attempt or delivery state could not be written."""


class ConfigurationError(WebhookServiceError):
    """Raised for a disabled or secret-less subscription, or out-of-range overrides."""


class InvalidStateTransitionError(WebhookServiceError):
    """Raised when a delivery record attempts an unsupported state change."""


class DeliveryError(WebhookServiceError):
    """A failed delivery attempt, classified by retryability."""

    retryable: bool = False

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


class TransientDeliveryError(DeliveryError):
    """Timeout, network failure, HTTP 5xx or 429."""

    retryable = True


class PermanentDeliveryError(DeliveryError):
    """Any other non-2xx response."""

    retryable = False
