"""Retry policy value object and per-event-class selection."""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable

from webhook_service.core.exceptions import ConfigurationError
from webhook_service.domain.enums import DeliveryState, EventClass, event_class_for
from webhook_service.domain.webhooks import WebhookSubscription
from webhook_service.webhooks_dispatcher import DeliveryOutcome

RetryablePredicate = Callable[[DeliveryOutcome], bool]

# 2**30 seconds already exceeds any sane ceiling
_MAX_EXPONENT = 30


def default_retryable(outcome: DeliveryOutcome) -> bool:
    """Timeouts, network errors, 5xx and 429 are retryable; other 4xx are not."""
    return outcome.retryable


@dataclass(frozen=True)
class RetryDecision:
    state: DeliveryState
    next_retry_at: datetime | None = None
    delay: timedelta | None = None


@dataclass(frozen=True)
class RetryPolicy:
    """``max_retries`` is the total number of attempts a delivery may make."""

    max_retries: int
    base_delay: float
    max_delay: float
    retryable: RetryablePredicate = default_retryable

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ConfigurationError("max_retries must be >= 1")
        if self.base_delay <= 0 or self.max_delay <= 0:
            raise ConfigurationError("retry delays must be positive")

    def backoff(self, attempt_count: int) -> timedelta:
        """``base_delay * 2**attempt_count`` capped at ``max_delay``."""
        exponent = min(max(attempt_count, 0), _MAX_EXPONENT)
        return timedelta(seconds=min(self.base_delay * (2**exponent), self.max_delay))

    def decide(self, attempt_count: int, outcome: DeliveryOutcome, now: datetime) -> RetryDecision:
        """Next state after attempt number ``attempt_count`` produced ``outcome``."""
        if outcome.success:
            return RetryDecision(DeliveryState.DELIVERED)
        if attempt_count < self.max_retries and self.retryable(outcome):
            delay = self.backoff(attempt_count)
            return RetryDecision(DeliveryState.SCHEDULED, next_retry_at=now + delay, delay=delay)
        return RetryDecision(DeliveryState.EXHAUSTED)

    def budget_spent(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_retries

    def with_max_retries(self, max_retries: int) -> "RetryPolicy":
        return replace(self, max_retries=max_retries)


class RetryPolicies:
    """Selects a :class:`RetryPolicy` by event class, applying tenant overrides."""

    def __init__(
        self,
        policies: dict[EventClass, RetryPolicy],
        *,
        max_retries_ceiling: int,
    ):
        missing = set(EventClass) - set(policies)
        if missing:
            raise ConfigurationError(f"missing retry policy for: {sorted(c.value for c in missing)}")
        self._policies = dict(policies)
        self._ceiling = max_retries_ceiling

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicies":
        common = dict(
            max_retries=settings.webhook_default_max_retries,
            max_delay=settings.webhook_max_backoff_seconds,
        )
        return cls(
            {
                EventClass.REALTIME: RetryPolicy(
                    base_delay=settings.webhook_realtime_base_delay_seconds, **common
                ),
                EventClass.BATCH: RetryPolicy(
                    base_delay=settings.webhook_batch_base_delay_seconds, **common
                ),
            },
            max_retries_ceiling=settings.webhook_max_retries_ceiling,
        )

    def for_event(
        self, event_type: str, subscription: WebhookSubscription | None = None
    ) -> RetryPolicy:
        policy = self._policies[event_class_for(event_type)]
        if subscription is not None and subscription.max_retries is not None:
            policy = policy.with_max_retries(min(subscription.max_retries, self._ceiling))
        return policy
