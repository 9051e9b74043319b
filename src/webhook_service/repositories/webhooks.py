"""Webhook repositories (subscriptions, events, delivery records + attempts)."""
from __future__ import annotations

from datetime import datetime
from typing import List
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from webhook_service.core.exceptions import NotFoundError, RecorderError
from webhook_service.domain.enums import DeliveryState
from webhook_service.domain.webhooks import (
    DeliveryAttempt,
    DeliveryJob,
    DeliveryRecord,
    Event,
    WebhookSubscription,
)
from webhook_service.repositories.base import BaseRepository


class WebhookSubscriptionRepository(BaseRepository):
    """Read side of the tenant-owned subscription store."""

    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> WebhookSubscription:
        return WebhookSubscription.model_validate(dict(record))

    async def get(self, subscription_id: UUID) -> WebhookSubscription | None:
        record = await self._fetchrow(
            "SELECT * FROM webhook_subscriptions WHERE id = $1",
            subscription_id,
        )
        return self._to_model(record) if record is not None else None

    async def list_enabled_matching(
        self, business_id: UUID, event_type: str
    ) -> List[WebhookSubscription]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_subscriptions
            WHERE business_id = $1
              AND is_enabled = true
              AND $2 = ANY(event_types)
            ORDER BY created_at ASC
            """,
            business_id,
            event_type,
        )
        return [self._to_model(r) for r in records]


class WebhookEventRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    async def insert_or_get(self, event: Event) -> tuple[Event, bool]:
        """Insert ``event`` unless its idempotency key exists. Returns (stored, created)."""
        record = await self._fetchrow(
            """
            INSERT INTO webhook_events (id, idempotency_key, event_type, business_id, occurred_at, body)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (idempotency_key) DO NOTHING
            RETURNING *
            """,
            event.id,
            event.idempotency_key,
            event.event_type,
            event.business_id,
            event.occurred_at,
            event.body,
        )
        if record is not None:
            return Event.model_validate(dict(record)), True
        record = await self._fetchrow(
            "SELECT * FROM webhook_events WHERE idempotency_key = $1",
            event.idempotency_key,
        )
        assert record is not None
        return Event.model_validate(dict(record)), False

    async def get(self, event_id: UUID) -> Event:
        record = await self._fetchrow("SELECT * FROM webhook_events WHERE id = $1", event_id)
        if record is None:
            raise NotFoundError("Webhook event not found")
        return Event.model_validate(dict(record))


class DeliveryRecordRepository(BaseRepository):
    """DeliveryRecord aggregate and its append-only attempt log."""

    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> DeliveryRecord:
        return DeliveryRecord.model_validate(dict(record))

    @staticmethod
    def _to_job(record: Record) -> DeliveryJob:
        payload = dict(record)
        idempotency_key = payload.pop("idempotency_key")
        body = payload.pop("body")
        return DeliveryJob(
            record=DeliveryRecord.model_validate(payload),
            idempotency_key=idempotency_key,
            body=body,
        )

    async def create_if_absent(
        self,
        *,
        event_id: UUID,
        subscription_id: UUID,
        business_id: UUID,
        event_type: str,
        now: datetime,
    ) -> DeliveryRecord | None:
        """Insert-or-skip on (event_id, subscription_id). ``None`` means it already existed."""
        record = await self._fetchrow(
            """
            INSERT INTO webhook_delivery_records (
                event_id,
                subscription_id,
                business_id,
                event_type,
                state,
                attempt_count,
                next_retry_at,
                created_at,
                updated_at
            )
            VALUES ($1, $2, $3, $4, 'scheduled', 0, $5, $5, $5)
            ON CONFLICT (event_id, subscription_id) DO NOTHING
            RETURNING *
            """,
            event_id,
            subscription_id,
            business_id,
            event_type,
            now,
        )
        return self._to_model(record) if record is not None else None

    async def claim_due(self, now: datetime, *, limit: int = 50) -> List[DeliveryJob]:
        """
        Atomically claim due deliveries for processing.

        FOR UPDATE SKIP LOCKED lets concurrent sweepers partition the due set;
        a record is handed to exactly one of them.

        Side-effects:
          - state -> attempting
          - claimed_at -> now
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                records = await conn.fetch(
                    """
                    WITH due AS (
                        SELECT id
                        FROM webhook_delivery_records
                        WHERE state = 'scheduled'
                          AND next_retry_at <= $2
                        ORDER BY next_retry_at ASC, created_at ASC
                        FOR UPDATE SKIP LOCKED
                        LIMIT $1
                    ),
                    claimed AS (
                        UPDATE webhook_delivery_records d
                        SET state = 'attempting',
                            claimed_at = $2,
                            updated_at = $2
                        FROM due
                        WHERE d.id = due.id
                        RETURNING d.*
                    )
                    SELECT c.*, e.idempotency_key, e.body
                    FROM claimed c
                    JOIN webhook_events e ON e.id = c.event_id
                    """,
                    limit,
                    now,
                )
        return [self._to_job(r) for r in records]

    async def claim(self, record_id: UUID, now: datetime) -> DeliveryJob | None:
        """Compare-and-swap one record from scheduled to attempting."""
        record = await self._fetchrow(
            """
            WITH claimed AS (
                UPDATE webhook_delivery_records
                SET state = 'attempting',
                    claimed_at = $2,
                    updated_at = $2
                WHERE id = $1
                  AND state = 'scheduled'
                  AND next_retry_at <= $2
                RETURNING *
            )
            SELECT c.*, e.idempotency_key, e.body
            FROM claimed c
            JOIN webhook_events e ON e.id = c.event_id
            """,
            record_id,
            now,
        )
        return self._to_job(record) if record is not None else None

    async def start_attempt(self, record_id: UUID, sent_at: datetime) -> DeliveryAttempt:
        """Append an in-flight attempt row and bump ``attempt_count``."""
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                attempt_number = await conn.fetchval(
                    """
                    UPDATE webhook_delivery_records
                    SET attempt_count = attempt_count + 1,
                        updated_at = $2
                    WHERE id = $1 AND state = 'attempting'
                    RETURNING attempt_count
                    """,
                    record_id,
                    sent_at,
                )
                if attempt_number is None:
                    raise RecorderError(f"delivery {record_id} is no longer claimed")
                record = await conn.fetchrow(
                    """
                    INSERT INTO webhook_delivery_attempts (record_id, attempt_number, sent_at)
                    VALUES ($1, $2, $3)
                    RETURNING *
                    """,
                    record_id,
                    attempt_number,
                    sent_at,
                )
        return DeliveryAttempt.model_validate(dict(record))

    async def finish_attempt(
        self,
        record_id: UUID,
        attempt_number: int,
        *,
        finished_at: datetime,
        success: bool,
        retryable: bool,
        http_status: int | None,
        error: str | None,
        response_excerpt: str | None,
        state: DeliveryState,
        next_retry_at: datetime | None,
    ) -> DeliveryRecord:
        """Write the attempt outcome and the record's next state in one transaction."""
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                status = await conn.execute(
                    """
                    UPDATE webhook_delivery_attempts
                    SET finished_at = $3,
                        success = $4,
                        retryable = $5,
                        http_status = $6,
                        error = $7,
                        response_excerpt = $8
                    WHERE record_id = $1
                      AND attempt_number = $2
                      AND finished_at IS NULL
                    """,
                    record_id,
                    attempt_number,
                    finished_at,
                    success,
                    retryable,
                    http_status,
                    error,
                    response_excerpt,
                )
                if self._affected(status) != 1:
                    raise RecorderError(
                        f"attempt {attempt_number} of delivery {record_id} is not in flight"
                    )
                record = await conn.fetchrow(
                    """
                    UPDATE webhook_delivery_records
                    SET state = $2,
                        next_retry_at = $3,
                        last_error = $4,
                        claimed_at = NULL,
                        updated_at = $5
                    WHERE id = $1 AND state = 'attempting'
                    RETURNING *
                    """,
                    record_id,
                    state.value,
                    next_retry_at,
                    None if success else error or (f"HTTP {http_status}" if http_status else None),
                    finished_at,
                )
                if record is None:
                    raise RecorderError(f"delivery {record_id} is no longer claimed")
        return self._to_model(record)

    async def finalize(
        self,
        record_id: UUID,
        *,
        state: DeliveryState,
        last_error: str | None,
        now: datetime,
    ) -> DeliveryRecord:
        """Move a claimed record to a terminal state without a new attempt."""
        record = await self._fetchrow(
            """
            UPDATE webhook_delivery_records
            SET state = $2,
                next_retry_at = NULL,
                last_error = $3,
                claimed_at = NULL,
                updated_at = $4
            WHERE id = $1 AND state = 'attempting'
            RETURNING *
            """,
            record_id,
            state.value,
            last_error,
            now,
        )
        if record is None:
            raise RecorderError(f"delivery {record_id} is no longer claimed")
        return self._to_model(record)

    async def reclaim_stale(self, claimed_before: datetime, now: datetime) -> int:
        """Return records stuck in ``attempting`` (e.g. after a crash) to ``scheduled``.

        Their dangling in-flight attempt is closed as an abandoned, retryable
        failure. Returns the number of reclaimed records.
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    UPDATE webhook_delivery_attempts a
                    SET finished_at = $2,
                        success = false,
                        retryable = true,
                        error = 'abandoned: delivery claim expired'
                    FROM webhook_delivery_records d
                    WHERE a.record_id = d.id
                      AND d.state = 'attempting'
                      AND d.claimed_at < $1
                      AND a.finished_at IS NULL
                    """,
                    claimed_before,
                    now,
                )
                status = await conn.execute(
                    """
                    UPDATE webhook_delivery_records
                    SET state = 'scheduled',
                        claimed_at = NULL,
                        next_retry_at = $2,
                        updated_at = $2
                    WHERE state = 'attempting'
                      AND claimed_at < $1
                    """,
                    claimed_before,
                    now,
                )
        return self._affected(status)

    async def list_for_event(self, event_id: UUID) -> List[DeliveryRecord]:
        """Records for one event, each with its attempts in order."""
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_delivery_records
            WHERE event_id = $1
            ORDER BY created_at ASC
            """,
            event_id,
        )
        items = [self._to_model(r) for r in records]
        if not items:
            return items
        attempts = await self._fetch(
            """
            SELECT *
            FROM webhook_delivery_attempts
            WHERE record_id = ANY($1::uuid[])
            ORDER BY record_id, attempt_number ASC
            """,
            [item.id for item in items],
        )
        by_record: dict[UUID, list[DeliveryAttempt]] = {}
        for rec in attempts:
            attempt = DeliveryAttempt.model_validate(dict(rec))
            by_record.setdefault(attempt.record_id, []).append(attempt)
        for item in items:
            item.attempts = by_record.get(item.id, [])
        return items
