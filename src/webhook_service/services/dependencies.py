"""Application-scoped service wiring."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from aiohttp import web

from backend_common.db.pool import get_pool
from webhook_service.repositories.webhooks import (
    DeliveryRecordRepository,
    WebhookEventRepository,
    WebhookSubscriptionRepository,
)
from webhook_service.services.recorder import DeliveryRecorder
from webhook_service.services.retry_policy import RetryPolicies
from webhook_service.services.scheduler import RetryScheduler
from webhook_service.services.subscriptions import SubscriptionResolver
from webhook_service.services.webhooks import WebhookService
from webhook_service.settings import settings
from webhook_service.webhooks_dispatcher import build_dispatcher, get_webhook_session


@dataclass
class Services:
    webhooks: WebhookService
    scheduler: RetryScheduler


_services: Services | None = None


async def init_services(app: web.Application) -> None:
    """``on_startup`` hook; must run after the pool and HTTP session hooks."""
    global _services
    pool = await get_pool()
    recorder = DeliveryRecorder(DeliveryRecordRepository(pool))
    resolver = SubscriptionResolver(WebhookSubscriptionRepository(pool))
    scheduler = RetryScheduler(
        recorder,
        resolver,
        build_dispatcher(get_webhook_session(app)),
        RetryPolicies.from_settings(settings),
        batch_size=settings.webhook_sweep_batch_size,
        max_concurrency=settings.webhook_dispatch_max_concurrency,
        stale_after=timedelta(minutes=settings.webhook_stale_attempt_minutes),
    )
    webhooks = WebhookService(
        WebhookEventRepository(pool),
        resolver,
        recorder,
        scheduler,
        dispatch_on_emit=settings.webhook_dispatch_on_emit,
    )
    _services = Services(webhooks=webhooks, scheduler=scheduler)


async def close_services(_app: web.Application) -> None:
    global _services
    if _services is not None:
        await _services.webhooks.drain()
        _services = None


def set_services(services: Services | None) -> None:
    global _services
    _services = services


def get_services() -> Services:
    if _services is None:
        raise RuntimeError("Services not initialized. Call init_services() first.")
    return _services


def get_webhook_service(_request: web.Request | None = None) -> WebhookService:
    return get_services().webhooks


def get_scheduler(_request: web.Request | None = None) -> RetryScheduler:
    return get_services().scheduler
