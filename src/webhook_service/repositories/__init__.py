from webhook_service.repositories.webhooks import (
    DeliveryRecordRepository,
    WebhookEventRepository,
    WebhookSubscriptionRepository,
)

__all__ = [
    "DeliveryRecordRepository",
    "WebhookEventRepository",
    "WebhookSubscriptionRepository",
]
