"""Delivery recorder: the only writer of delivery records and attempts."""
from __future__ import annotations

from datetime import datetime
from typing import List
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]
import structlog

from webhook_service.core.exceptions import RecorderError
from webhook_service.domain.enums import DeliveryState
from webhook_service.domain.state_machine import validate_delivery_transition
from webhook_service.domain.webhooks import DeliveryAttempt, DeliveryJob, DeliveryRecord
from webhook_service.repositories.webhooks import DeliveryRecordRepository
from webhook_service.webhooks_dispatcher import DeliveryOutcome

logger = structlog.get_logger(__name__)

_STORAGE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class DeliveryRecorder:
    """Wraps :class:`DeliveryRecordRepository`; storage failures surface as :class:`RecorderError`."""

    def __init__(self, repository: DeliveryRecordRepository):
        self._repository = repository

    async def create_record(
        self,
        *,
        event_id: UUID,
        subscription_id: UUID,
        business_id: UUID,
        event_type: str,
        now: datetime,
    ) -> DeliveryRecord | None:
        try:
            return await self._repository.create_if_absent(
                event_id=event_id,
                subscription_id=subscription_id,
                business_id=business_id,
                event_type=event_type,
                now=now,
            )
        except _STORAGE_ERRORS as exc:
            raise RecorderError(f"failed to create delivery record: {exc}") from exc

    async def claim_due(self, now: datetime, *, limit: int) -> List[DeliveryJob]:
        try:
            return await self._repository.claim_due(now, limit=limit)
        except _STORAGE_ERRORS as exc:
            raise RecorderError(f"failed to claim due deliveries: {exc}") from exc

    async def claim(self, record_id: UUID, now: datetime) -> DeliveryJob | None:
        try:
            return await self._repository.claim(record_id, now)
        except _STORAGE_ERRORS as exc:
            raise RecorderError(f"failed to claim delivery {record_id}: {exc}") from exc

    async def begin_attempt(self, job: DeliveryJob, now: datetime) -> DeliveryAttempt:
        """Persist the in-flight attempt before anything is sent."""
        try:
            return await self._repository.start_attempt(job.record.id, now)
        except _STORAGE_ERRORS as exc:
            raise RecorderError(f"failed to record attempt start: {exc}") from exc

    async def record_outcome(
        self,
        job: DeliveryJob,
        attempt: DeliveryAttempt,
        outcome: DeliveryOutcome,
        *,
        state: DeliveryState,
        next_retry_at: datetime | None,
        now: datetime,
    ) -> DeliveryRecord:
        validate_delivery_transition(DeliveryState.ATTEMPTING, state)
        try:
            record = await self._repository.finish_attempt(
                job.record.id,
                attempt.attempt_number,
                finished_at=now,
                success=outcome.success,
                retryable=outcome.retryable,
                http_status=outcome.http_status,
                error=outcome.error,
                response_excerpt=outcome.response_excerpt,
                state=state,
                next_retry_at=next_retry_at,
            )
        except _STORAGE_ERRORS as exc:
            raise RecorderError(f"failed to record attempt outcome: {exc}") from exc
        logger.info(
            "delivery attempt recorded",
            delivery_id=str(job.record.id),
            attempt=attempt.attempt_number,
            state=state.value,
            http_status=outcome.http_status,
        )
        return record

    async def finalize(
        self, job: DeliveryJob, *, state: DeliveryState, reason: str, now: datetime
    ) -> DeliveryRecord:
        validate_delivery_transition(DeliveryState.ATTEMPTING, state)
        try:
            record = await self._repository.finalize(
                job.record.id, state=state, last_error=reason, now=now
            )
        except _STORAGE_ERRORS as exc:
            raise RecorderError(f"failed to finalize delivery: {exc}") from exc
        logger.info(
            "delivery finalized without attempt",
            delivery_id=str(job.record.id),
            state=state.value,
            reason=reason,
        )
        return record

    async def reclaim_stale(self, claimed_before: datetime, now: datetime) -> int:
        try:
            return await self._repository.reclaim_stale(claimed_before, now)
        except _STORAGE_ERRORS as exc:
            raise RecorderError(f"failed to reclaim stale deliveries: {exc}") from exc

    async def list_for_event(self, event_id: UUID) -> List[DeliveryRecord]:
        return await self._repository.list_for_event(event_id)
