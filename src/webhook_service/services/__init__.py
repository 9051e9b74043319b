from webhook_service.services.recorder import DeliveryRecorder
from webhook_service.services.retry_policy import RetryPolicies, RetryPolicy
from webhook_service.services.scheduler import RetryScheduler, SweepResult
from webhook_service.services.subscriptions import SubscriptionResolver
from webhook_service.services.webhooks import EmitResult, WebhookService

__all__ = [
    "DeliveryRecorder",
    "EmitResult",
    "RetryPolicies",
    "RetryPolicy",
    "RetryScheduler",
    "SubscriptionResolver",
    "SweepResult",
    "WebhookService",
]
