"""Subscription resolution against the tenant-owned subscription store."""
from __future__ import annotations

from typing import List, Protocol
from uuid import UUID

import structlog

from webhook_service.core.exceptions import ConfigurationError
from webhook_service.domain.webhooks import WebhookSubscription

logger = structlog.get_logger(__name__)


class SubscriptionStore(Protocol):
    async def get(self, subscription_id: UUID) -> WebhookSubscription | None: ...

    async def list_enabled_matching(
        self, business_id: UUID, event_type: str
    ) -> List[WebhookSubscription]: ...


class SubscriptionResolver:
    def __init__(self, store: SubscriptionStore):
        self._store = store

    async def resolve(self, business_id: UUID, event_type: str) -> List[WebhookSubscription]:
        """Enabled subscriptions of ``business_id`` that include ``event_type``. May be empty."""
        candidates = await self._store.list_enabled_matching(business_id, event_type)
        matching = [sub for sub in candidates if sub.subscribes_to(event_type) and sub.secret]
        if not matching:
            logger.debug("no webhook subscriptions", business_id=str(business_id), event_type=event_type)
        return matching

    async def get_deliverable(self, subscription_id: UUID) -> WebhookSubscription:
        """Current state of a subscription; raises if it can no longer receive deliveries."""
        subscription = await self._store.get(subscription_id)
        if subscription is None:
            raise ConfigurationError(f"webhook subscription {subscription_id} no longer exists")
        if not subscription.is_enabled:
            raise ConfigurationError(f"webhook subscription {subscription_id} is disabled")
        if not subscription.secret:
            raise ConfigurationError(f"webhook subscription {subscription_id} has no secret")
        return subscription
