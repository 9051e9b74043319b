"""Webhook domain primitives."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from webhook_service.domain.enums import DeliveryState


class WebhookSubscription(BaseModel):
    id: UUID
    business_id: UUID
    target_url: str
    # never serialized; only the signer reads it
    secret: str | None = Field(default=None, exclude=True, repr=False)
    event_types: list[str] = Field(default_factory=list)
    is_enabled: bool = True
    timeout_seconds: float | None = Field(default=None, gt=0)
    max_retries: int | None = Field(default=None, ge=1)
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _enabled_requires_secret(self) -> "WebhookSubscription":
        if self.is_enabled and not self.secret:
            raise ValueError("an enabled webhook subscription must have a secret")
        return self

    def subscribes_to(self, event_type: str) -> bool:
        return self.is_enabled and event_type in self.event_types


class Event(BaseModel):
    """A canonical event; ``body`` holds the exact bytes sent to receivers (utf-8)."""

    id: UUID
    idempotency_key: str
    event_type: str
    business_id: UUID
    occurred_at: datetime
    body: str
    created_at: datetime | None = None

    @property
    def payload(self) -> dict[str, Any]:
        return json.loads(self.body)

    @property
    def body_bytes(self) -> bytes:
        return self.body.encode("utf-8")


class DeliveryAttempt(BaseModel):
    id: int | None = None
    record_id: UUID
    attempt_number: int = Field(ge=1)
    sent_at: datetime
    finished_at: datetime | None = None
    http_status: int | None = None
    error: str | None = None
    success: bool | None = None
    retryable: bool | None = None
    response_excerpt: str | None = None

    @property
    def in_flight(self) -> bool:
        return self.finished_at is None


class DeliveryRecord(BaseModel):
    id: UUID
    event_id: UUID
    subscription_id: UUID
    business_id: UUID
    event_type: str
    state: DeliveryState
    attempt_count: int = 0
    next_retry_at: datetime | None = None
    claimed_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime
    attempts: list[DeliveryAttempt] = Field(default_factory=list)


class DeliveryJob(BaseModel):
    """A claimed record joined with what is needed to transmit it."""

    record: DeliveryRecord
    idempotency_key: str
    body: str
