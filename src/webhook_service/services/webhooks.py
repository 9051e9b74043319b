"""Webhook orchestration: event fan-out to matching subscriptions."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Set
from uuid import UUID

import structlog

from webhook_service.core.exceptions import NotFoundError, RecorderError
from webhook_service.domain.enums import EventType
from webhook_service.domain.events import DataFetcher, EventBuilder
from webhook_service.domain.webhooks import DeliveryRecord, Event
from webhook_service.repositories.webhooks import WebhookEventRepository
from webhook_service.services.recorder import DeliveryRecorder
from webhook_service.services.scheduler import Clock, RetryScheduler, utcnow
from webhook_service.services.subscriptions import SubscriptionResolver

logger = structlog.get_logger(__name__)


@dataclass
class EmitResult:
    event_id: UUID
    duplicate_event: bool = False
    created: List[UUID] = field(default_factory=list)
    skipped_subscriptions: List[UUID] = field(default_factory=list)
    failed_subscriptions: List[UUID] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "event_id": str(self.event_id),
            "duplicate_event": self.duplicate_event,
            "created": [str(i) for i in self.created],
            "skipped_subscriptions": [str(i) for i in self.skipped_subscriptions],
            "failed_subscriptions": [str(i) for i in self.failed_subscriptions],
        }


class WebhookService:
    def __init__(
        self,
        events: WebhookEventRepository,
        resolver: SubscriptionResolver,
        recorder: DeliveryRecorder,
        scheduler: RetryScheduler,
        *,
        dispatch_on_emit: bool = True,
        clock: Clock = utcnow,
    ):
        self._events = events
        self._resolver = resolver
        self._recorder = recorder
        self._scheduler = scheduler
        self._dispatch_on_emit = dispatch_on_emit
        self._clock = clock
        self._inflight: Set[asyncio.Task] = set()

    async def emit(self, event: Event) -> EmitResult:
        """Fan ``event`` out to every matching subscription.

        Creates at most one delivery record per (event, subscription); repeated
        triggers of the same event are no-ops for existing pairs. A failure for
        one subscription does not affect the others.
        """
        stored, created = await self._events.insert_or_get(event)
        result = EmitResult(event_id=stored.id, duplicate_event=not created)
        log = logger.bind(event_id=str(stored.id), event_type=stored.event_type)

        subscriptions = await self._resolver.resolve(stored.business_id, stored.event_type)
        now = self._clock()
        for subscription in subscriptions:
            try:
                record = await self._recorder.create_record(
                    event_id=stored.id,
                    subscription_id=subscription.id,
                    business_id=stored.business_id,
                    event_type=stored.event_type,
                    now=now,
                )
            except RecorderError as exc:
                log.error(
                    "delivery record creation failed",
                    subscription_id=str(subscription.id),
                    error=str(exc),
                )
                result.failed_subscriptions.append(subscription.id)
                continue
            if record is None:
                result.skipped_subscriptions.append(subscription.id)
            else:
                result.created.append(record.id)

        log.info(
            "webhook event fanned out",
            subscriptions=len(subscriptions),
            created=len(result.created),
            skipped=len(result.skipped_subscriptions),
            duplicate_event=result.duplicate_event,
        )
        if result.created and self._dispatch_on_emit:
            self._spawn_first_attempts(list(result.created))
        return result

    def _spawn_first_attempts(self, record_ids: List[UUID]) -> None:
        task = asyncio.create_task(self._first_attempts(record_ids))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _first_attempts(self, record_ids: List[UUID]) -> None:
        try:
            result = await self._scheduler.dispatch_now(record_ids)
        except Exception:
            # records stay 'scheduled' and are picked up by the next sweep
            logger.exception("immediate webhook dispatch failed", records=len(record_ids))
            return
        if result.summary():
            logger.info("immediate webhook dispatch completed", summary=result.summary())

    async def drain(self) -> None:
        """Wait for in-flight first attempts (shutdown and tests)."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def list_deliveries(self, event_id: UUID) -> List[DeliveryRecord]:
        await self._events.get(event_id)
        return await self._recorder.list_for_event(event_id)


async def hydrate_event(
    fetcher: DataFetcher,
    builder: EventBuilder,
    event_type: EventType,
    business_id: UUID,
    source_id: str,
    occurred_at: datetime,
) -> Event:
    """Fetch the entities an event type needs and build the canonical event."""
    if event_type in (EventType.MESSAGE_RECEIVED, EventType.NEW_MESSAGE):
        message = await fetcher.fetch_message(source_id)
        if message is None:
            raise NotFoundError(f"message {source_id} not found")
        customer_id = message.get("customer_id")
        customer = await fetcher.fetch_customer(str(customer_id)) if customer_id else None
        if event_type is EventType.NEW_MESSAGE:
            name = customer.get("name") if customer else None
            return builder.new_message_notification(business_id, message, name, occurred_at)
        attachments = await fetcher.fetch_attachments(source_id)
        return builder.message_received(business_id, message, customer, attachments, occurred_at)

    if event_type is EventType.NEW_INMAIL:
        inmail = await fetcher.fetch_inmail(source_id)
        if inmail is None:
            raise NotFoundError(f"inmail {source_id} not found")
        return builder.new_inmail_notification(business_id, inmail, inmail.get("sender_name"), occurred_at)

    if event_type in (EventType.CUSTOMER_CREATED, EventType.CUSTOMER_UPDATED):
        customer = await fetcher.fetch_customer(source_id)
        if customer is None:
            raise NotFoundError(f"customer {source_id} not found")
        conversation = await fetcher.fetch_open_conversation(source_id)
        return builder.customer_lifecycle(event_type, business_id, customer, conversation, occurred_at)

    raise ValueError(f"{event_type.value} events are built from an explicit payload")
