"""Shared fixtures.

Service-level tests run against in-memory stand-ins for the asyncpg
repositories. The fakes mirror the SQL semantics the service relies on: the
(event_id, subscription_id) uniqueness, compare-and-swap claims (no await
between check and set) and the append-only attempt log. The SQL itself is
covered by ``test_repositories.py`` against a testsuite-managed PostgreSQL.
"""
from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List
from uuid import UUID, uuid4

import pytest
from testsuite.databases.pgsql import discover

from webhook_service.core.exceptions import NotFoundError, RecorderError
from webhook_service.domain.enums import DeliveryState, EventClass
from webhook_service.domain.events import build_event
from webhook_service.domain.webhooks import (
    DeliveryAttempt,
    DeliveryJob,
    DeliveryRecord,
    Event,
    WebhookSubscription,
)
from webhook_service.services.recorder import DeliveryRecorder
from webhook_service.services.retry_policy import RetryPolicies, RetryPolicy
from webhook_service.services.scheduler import RetryScheduler
from webhook_service.services.subscriptions import SubscriptionResolver
from webhook_service.services.webhooks import WebhookService
from webhook_service.webhooks_dispatcher import DeliveryOutcome

pytest_plugins = (
    "testsuite.pytest_plugin",
    "testsuite.databases.pgsql.pytest_plugin",
)

PG_SCHEMAS_PATH = Path(__file__).parent / "schemas" / "postgresql"

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def pgsql_local(pgsql_local_create):
    """Create PostgreSQL database for tests."""
    databases = discover.find_schemas(
        service_name=None,
        schema_dirs=[PG_SCHEMAS_PATH],
    )
    return pgsql_local_create(list(databases.values()))


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class InMemorySubscriptionStore:
    def __init__(self):
        self.items: dict[UUID, WebhookSubscription] = {}

    def add(self, subscription: WebhookSubscription) -> WebhookSubscription:
        self.items[subscription.id] = subscription
        return subscription

    def update(self, subscription_id: UUID, **changes) -> None:
        self.items[subscription_id] = self.items[subscription_id].model_copy(update=changes)

    def remove(self, subscription_id: UUID) -> None:
        del self.items[subscription_id]

    async def get(self, subscription_id: UUID) -> WebhookSubscription | None:
        return self.items.get(subscription_id)

    async def list_enabled_matching(self, business_id: UUID, event_type: str) -> List[WebhookSubscription]:
        return [
            sub
            for sub in self.items.values()
            if sub.business_id == business_id and sub.is_enabled and event_type in sub.event_types
        ]


class InMemoryEventRepository:
    def __init__(self):
        self.by_id: dict[UUID, Event] = {}
        self.by_key: dict[str, UUID] = {}

    async def insert_or_get(self, event: Event) -> tuple[Event, bool]:
        existing = self.by_key.get(event.idempotency_key)
        if existing is not None:
            return self.by_id[existing], False
        stored = event.model_copy(update={"created_at": event.occurred_at})
        self.by_id[stored.id] = stored
        self.by_key[stored.idempotency_key] = stored.id
        return stored, True

    async def get(self, event_id: UUID) -> Event:
        try:
            return self.by_id[event_id]
        except KeyError:
            raise NotFoundError("Webhook event not found") from None


class InMemoryDeliveryRepository:
    def __init__(self, events: InMemoryEventRepository):
        self.events = events
        self.records: dict[UUID, DeliveryRecord] = {}
        self.attempts: dict[UUID, list[DeliveryAttempt]] = {}
        self.failing_subscriptions: set[UUID] = set()
        self._attempt_ids = itertools.count(1)

    def _job(self, record: DeliveryRecord) -> DeliveryJob:
        event = self.events.by_id[record.event_id]
        return DeliveryJob(
            record=record.model_copy(),
            idempotency_key=event.idempotency_key,
            body=event.body,
        )

    def _claimed(self, record_id: UUID) -> DeliveryRecord:
        record = self.records.get(record_id)
        if record is None or record.state is not DeliveryState.ATTEMPTING:
            raise RecorderError(f"delivery {record_id} is no longer claimed")
        return record

    async def create_if_absent(self, *, event_id, subscription_id, business_id, event_type, now):
        if subscription_id in self.failing_subscriptions:
            raise OSError("connection reset by peer")
        for record in self.records.values():
            if record.event_id == event_id and record.subscription_id == subscription_id:
                return None
        record = DeliveryRecord(
            id=uuid4(),
            event_id=event_id,
            subscription_id=subscription_id,
            business_id=business_id,
            event_type=event_type,
            state=DeliveryState.SCHEDULED,
            next_retry_at=now,
            created_at=now,
            updated_at=now,
        )
        self.records[record.id] = record
        self.attempts[record.id] = []
        return record.model_copy()

    async def claim_due(self, now, *, limit=50):
        due = sorted(
            (
                r
                for r in self.records.values()
                if r.state is DeliveryState.SCHEDULED and r.next_retry_at is not None and r.next_retry_at <= now
            ),
            key=lambda r: (r.next_retry_at, r.created_at),
        )[:limit]
        for record in due:
            record.state = DeliveryState.ATTEMPTING
            record.claimed_at = now
            record.updated_at = now
        await asyncio.sleep(0)
        return [self._job(r) for r in due]

    async def claim(self, record_id, now):
        record = self.records.get(record_id)
        if (
            record is None
            or record.state is not DeliveryState.SCHEDULED
            or record.next_retry_at is None
            or record.next_retry_at > now
        ):
            return None
        record.state = DeliveryState.ATTEMPTING
        record.claimed_at = now
        record.updated_at = now
        await asyncio.sleep(0)
        return self._job(record)

    async def start_attempt(self, record_id, sent_at):
        record = self._claimed(record_id)
        record.attempt_count += 1
        attempt = DeliveryAttempt(
            id=next(self._attempt_ids),
            record_id=record_id,
            attempt_number=record.attempt_count,
            sent_at=sent_at,
        )
        self.attempts[record_id].append(attempt)
        return attempt.model_copy()

    async def finish_attempt(
        self,
        record_id,
        attempt_number,
        *,
        finished_at,
        success,
        retryable,
        http_status,
        error,
        response_excerpt,
        state,
        next_retry_at,
    ):
        in_flight = [
            a
            for a in self.attempts.get(record_id, [])
            if a.attempt_number == attempt_number and a.finished_at is None
        ]
        if not in_flight:
            raise RecorderError(f"attempt {attempt_number} of delivery {record_id} is not in flight")
        record = self._claimed(record_id)
        attempt = in_flight[0]
        attempt.finished_at = finished_at
        attempt.success = success
        attempt.retryable = retryable
        attempt.http_status = http_status
        attempt.error = error
        attempt.response_excerpt = response_excerpt
        record.state = state
        record.next_retry_at = next_retry_at
        record.last_error = None if success else error or (f"HTTP {http_status}" if http_status else None)
        record.claimed_at = None
        record.updated_at = finished_at
        return record.model_copy()

    async def finalize(self, record_id, *, state, last_error, now):
        record = self._claimed(record_id)
        record.state = state
        record.next_retry_at = None
        record.last_error = last_error
        record.claimed_at = None
        record.updated_at = now
        return record.model_copy()

    async def reclaim_stale(self, claimed_before, now):
        reclaimed = 0
        for record in self.records.values():
            if record.state is not DeliveryState.ATTEMPTING or record.claimed_at >= claimed_before:
                continue
            for attempt in self.attempts[record.id]:
                if attempt.finished_at is None:
                    attempt.finished_at = now
                    attempt.success = False
                    attempt.retryable = True
                    attempt.error = "abandoned: delivery claim expired"
            record.state = DeliveryState.SCHEDULED
            record.claimed_at = None
            record.next_retry_at = now
            record.updated_at = now
            reclaimed += 1
        return reclaimed

    async def list_for_event(self, event_id):
        items = sorted(
            (r for r in self.records.values() if r.event_id == event_id),
            key=lambda r: r.created_at,
        )
        return [
            r.model_copy(update={"attempts": [a.model_copy() for a in self.attempts[r.id]]})
            for r in items
        ]


class ScriptedDispatcher:
    """Returns queued outcomes in order; the last one repeats."""

    def __init__(self, *outcomes: DeliveryOutcome):
        self.outcomes = list(outcomes) or [ok()]
        self.calls: list[dict] = []

    def script(self, *outcomes: DeliveryOutcome) -> None:
        self.outcomes = list(outcomes)

    async def deliver(self, url, body, secret, *, timeout=None, idempotency_key=None):
        self.calls.append(
            {
                "url": url,
                "body": body,
                "secret": secret,
                "timeout": timeout,
                "idempotency_key": idempotency_key,
            }
        )
        await asyncio.sleep(0)
        if len(self.outcomes) > 1:
            return self.outcomes.pop(0)
        return self.outcomes[0]


def ok(status: int = 200) -> DeliveryOutcome:
    return DeliveryOutcome(success=True, http_status=status, response_excerpt="ok")


def http_error(status: int) -> DeliveryOutcome:
    return DeliveryOutcome(success=False, http_status=status, response_excerpt="nope")


def timed_out(seconds: float = 10) -> DeliveryOutcome:
    return DeliveryOutcome(success=False, error=f"timeout after {seconds:g}s")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def business_id() -> UUID:
    return uuid4()


@pytest.fixture
def subscription_store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore()


@pytest.fixture
def make_subscription(subscription_store, business_id):
    def _make(**overrides) -> WebhookSubscription:
        data = {
            "id": uuid4(),
            "business_id": business_id,
            "target_url": "https://hooks.example.com/receive",
            "secret": "whsec_test",
            "event_types": ["new_message", "message.received", "document.submitted"],
            "created_at": START,
            "updated_at": START,
        }
        data.update(overrides)
        return subscription_store.add(WebhookSubscription(**data))

    return _make


@pytest.fixture
def event_repo() -> InMemoryEventRepository:
    return InMemoryEventRepository()


@pytest.fixture
def delivery_repo(event_repo) -> InMemoryDeliveryRepository:
    return InMemoryDeliveryRepository(event_repo)


@pytest.fixture
def recorder(delivery_repo) -> DeliveryRecorder:
    return DeliveryRecorder(delivery_repo)


@pytest.fixture
def resolver(subscription_store) -> SubscriptionResolver:
    return SubscriptionResolver(subscription_store)


@pytest.fixture
def policies() -> RetryPolicies:
    return RetryPolicies(
        {
            EventClass.REALTIME: RetryPolicy(max_retries=3, base_delay=1.0, max_delay=3600.0),
            EventClass.BATCH: RetryPolicy(max_retries=3, base_delay=60.0, max_delay=3600.0),
        },
        max_retries_ceiling=10,
    )


@pytest.fixture
def dispatcher() -> ScriptedDispatcher:
    return ScriptedDispatcher()


@pytest.fixture
def scheduler(recorder, resolver, dispatcher, policies, clock) -> RetryScheduler:
    return RetryScheduler(
        recorder,
        resolver,
        dispatcher,
        policies,
        batch_size=10,
        max_concurrency=5,
        stale_after=timedelta(minutes=10),
        clock=clock,
    )


@pytest.fixture
def webhook_service(event_repo, resolver, recorder, scheduler, clock) -> WebhookService:
    return WebhookService(event_repo, resolver, recorder, scheduler, dispatch_on_emit=False, clock=clock)


@pytest.fixture
def make_event(business_id, clock):
    def _make(event_type: str = "new_message", source_id: str = "m1", data: dict | None = None) -> Event:
        return build_event(event_type, business_id, source_id, data or {"id": source_id}, clock())

    return _make
