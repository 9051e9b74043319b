"""Retry scheduler: drives a delivery record through its state machine.

States: ``scheduled -> attempting -> {delivered | scheduled(next) | exhausted}``.

Nothing here sleeps between retries. A failed attempt persists
``next_retry_at``; the periodic sweep claims due records (compare-and-swap
``scheduled -> attempting``) and runs the next attempt. Records left in
``attempting`` by a crashed worker are returned to ``scheduled`` by
:meth:`RetryScheduler.reclaim_stale`.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List
from uuid import UUID

import structlog

from webhook_service.core.exceptions import ConfigurationError
from webhook_service.domain.enums import DeliveryState
from webhook_service.domain.webhooks import DeliveryJob
from webhook_service.services.recorder import DeliveryRecorder
from webhook_service.services.retry_policy import RetryPolicies
from webhook_service.services.subscriptions import SubscriptionResolver
from webhook_service.webhooks_dispatcher import DeliveryDispatcher

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SweepResult:
    claimed: int = 0
    delivered: int = 0
    rescheduled: int = 0
    exhausted: int = 0
    errors: int = 0

    def count(self, state: DeliveryState | None) -> None:
        if state is DeliveryState.DELIVERED:
            self.delivered += 1
        elif state is DeliveryState.SCHEDULED:
            self.rescheduled += 1
        elif state is DeliveryState.EXHAUSTED:
            self.exhausted += 1

    def summary(self) -> str | None:
        if not self.claimed:
            return None
        return (
            f"claimed={self.claimed} delivered={self.delivered} "
            f"rescheduled={self.rescheduled} exhausted={self.exhausted} errors={self.errors}"
        )


class RetryScheduler:
    def __init__(
        self,
        recorder: DeliveryRecorder,
        resolver: SubscriptionResolver,
        dispatcher: DeliveryDispatcher,
        policies: RetryPolicies,
        *,
        batch_size: int = 50,
        max_concurrency: int = 20,
        stale_after: timedelta = timedelta(minutes=10),
        clock: Clock = utcnow,
    ):
        self._recorder = recorder
        self._resolver = resolver
        self._dispatcher = dispatcher
        self._policies = policies
        self._batch_size = batch_size
        self._stale_after = stale_after
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrency)

    async def process(self, job: DeliveryJob) -> DeliveryState:
        """Run one attempt for a claimed record and persist the resulting state."""
        record = job.record
        log = logger.bind(
            delivery_id=str(record.id),
            event_type=record.event_type,
            subscription_id=str(record.subscription_id),
        )

        try:
            subscription = await self._resolver.get_deliverable(record.subscription_id)
        except ConfigurationError as exc:
            log.warning("delivery rejected by configuration", reason=str(exc))
            await self._recorder.finalize(
                job, state=DeliveryState.EXHAUSTED, reason=f"configuration error: {exc}", now=self._clock()
            )
            return DeliveryState.EXHAUSTED

        policy = self._policies.for_event(record.event_type, subscription)
        if policy.budget_spent(record.attempt_count):
            await self._recorder.finalize(
                job,
                state=DeliveryState.EXHAUSTED,
                reason=f"retry budget of {policy.max_retries} attempts spent",
                now=self._clock(),
            )
            return DeliveryState.EXHAUSTED

        attempt = await self._recorder.begin_attempt(job, self._clock())
        outcome = await self._dispatcher.deliver(
            subscription.target_url,
            job.body,
            subscription.secret,
            timeout=subscription.timeout_seconds,
            idempotency_key=job.idempotency_key,
        )
        finished_at = self._clock()
        decision = policy.decide(attempt.attempt_number, outcome, finished_at)
        await self._recorder.record_outcome(
            job,
            attempt,
            outcome,
            state=decision.state,
            next_retry_at=decision.next_retry_at,
            now=finished_at,
        )

        if outcome.success:
            log.info("webhook delivered", attempt=attempt.attempt_number, http_status=outcome.http_status)
        elif decision.state is DeliveryState.SCHEDULED:
            log.info(
                "webhook delivery failed, retry scheduled",
                attempt=attempt.attempt_number,
                error=outcome.summary,
                next_retry_at=decision.next_retry_at.isoformat() if decision.next_retry_at else None,
            )
        else:
            log.warning(
                "webhook delivery exhausted",
                attempt=attempt.attempt_number,
                error=outcome.summary,
                error_type=type(outcome.to_error()).__name__,
            )
        return decision.state

    async def _process_bounded(self, job: DeliveryJob) -> DeliveryState:
        async with self._semaphore:
            return await self.process(job)

    async def _run_jobs(self, jobs: Iterable[DeliveryJob], result: SweepResult) -> SweepResult:
        jobs = list(jobs)
        result.claimed += len(jobs)
        outcomes = await asyncio.gather(
            *(self._process_bounded(job) for job in jobs), return_exceptions=True
        )
        for job, outcome in zip(jobs, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                result.errors += 1
                # the record stays 'attempting' until reclaim_stale picks it up
                logger.error(
                    "webhook delivery processing failed",
                    delivery_id=str(job.record.id),
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                    exc_info=outcome,
                )
            else:
                result.count(outcome)
        return result

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        """Claim one bounded batch of due records and process it concurrently."""
        jobs = await self._recorder.claim_due(now or self._clock(), limit=self._batch_size)
        return await self._run_jobs(jobs, SweepResult())

    async def dispatch_now(self, record_ids: Iterable[UUID]) -> SweepResult:
        """First attempt for freshly created records; losers of the claim race are skipped."""
        now = self._clock()
        jobs: List[DeliveryJob] = []
        for record_id in record_ids:
            job = await self._recorder.claim(record_id, now)
            if job is not None:
                jobs.append(job)
        return await self._run_jobs(jobs, SweepResult())

    async def reclaim_stale(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        reclaimed = await self._recorder.reclaim_stale(now - self._stale_after, now)
        if reclaimed:
            logger.warning("stale webhook deliveries reclaimed", count=reclaimed)
        return reclaimed
