"""Canonical event construction.

Everything here is pure: identical inputs always produce an identical event
id, idempotency key and byte-identical body. The body is serialized exactly
once, here, and that string is what gets signed and transmitted on every
attempt.
"""
from __future__ import annotations

import json
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Protocol, Sequence
from uuid import UUID, NAMESPACE_URL, uuid5

from webhook_service.domain.enums import EventType
from webhook_service.domain.webhooks import Event

EVENT_ID_NAMESPACE = uuid5(NAMESPACE_URL, "urn:alacarte:webhook-event")
PREVIEW_CHARS = 50

Entity = Mapping[str, Any]


class DataFetcher(Protocol):
    """Supplies hydrated domain entities; owned by the messaging domain."""

    async def fetch_message(self, message_id: str) -> Entity | None: ...

    async def fetch_attachments(self, message_id: str) -> Sequence[Entity]: ...

    async def fetch_customer(self, customer_id: str) -> Entity | None: ...

    async def fetch_open_conversation(self, customer_id: str) -> Entity | None: ...

    async def fetch_inmail(self, inmail_id: str) -> Entity | None: ...


def format_timestamp(value: datetime) -> str:
    """ISO8601 in UTC with a ``Z`` suffix. Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _canonicalize(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _canonicalize(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [_canonicalize(item) for item in value]
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


def canonical_json(value: Any) -> str:
    """Compact JSON; nested mapping keys sorted, top-level order preserved."""
    if isinstance(value, Mapping):
        value = {str(k): _canonicalize(v) for k, v in value.items()}
    else:
        value = _canonicalize(value)
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def make_idempotency_key(event_type: str, source_id: str) -> str:
    return f"{event_type}:{source_id}"


def make_event_id(idempotency_key: str) -> UUID:
    return uuid5(EVENT_ID_NAMESPACE, idempotency_key)


def build_envelope(
    event_type: str,
    business_id: UUID | str,
    occurred_at: datetime,
    data: Mapping[str, Any],
) -> dict[str, Any]:
    # key order is part of the wire contract
    return {
        "event": event_type,
        "timestamp": format_timestamp(occurred_at),
        "business_id": str(business_id),
        "data": dict(data),
    }


def build_event(
    event_type: str,
    business_id: UUID,
    source_id: str,
    data: Mapping[str, Any],
    occurred_at: datetime,
) -> Event:
    """Assemble an :class:`Event` with a deterministic id and body."""
    if not source_id:
        raise ValueError("source_id is required to derive the idempotency key")
    key = make_idempotency_key(event_type, source_id)
    body = canonical_json(build_envelope(event_type, business_id, occurred_at, data))
    return Event(
        id=make_event_id(key),
        idempotency_key=key,
        event_type=event_type,
        business_id=business_id,
        occurred_at=occurred_at,
        body=body,
    )


def _pick(entity: Entity | None, *fields: str) -> dict[str, Any]:
    if entity is None:
        return {}
    return {name: entity.get(name) for name in fields}


def _preview(text: str | None, fallback: str) -> str:
    if not text:
        return fallback
    return text[:PREVIEW_CHARS]


class EventBuilder:
    """Builds the ``data`` section of each event type from hydrated entities."""

    MESSAGE_FIELDS = (
        "id",
        "conversation_id",
        "customer_id",
        "content",
        "platform",
        "channel",
        "direction",
        "created_at",
        "status",
    )
    CUSTOMER_SUMMARY_FIELDS = ("id", "name", "email", "phone", "external_id", "custom_fields")
    CUSTOMER_FIELDS = (
        "id",
        "external_id",
        "name",
        "first_name",
        "last_name",
        "email",
        "phone",
        "whatsapp_phone",
        "address",
        "notes",
        "custom_fields",
        "created_at",
        "updated_at",
    )
    CONVERSATION_FIELDS = ("id", "status", "created_at", "updated_at")
    ATTACHMENT_FIELDS = ("id", "filename", "type", "size", "url")

    def __init__(self, *, dashboard_base_url: str, media_download_base_url: str | None = None):
        self._dashboard_base_url = dashboard_base_url.rstrip("/")
        self._media_download_base_url = (
            media_download_base_url.rstrip("/") if media_download_base_url else None
        )

    def message_received(
        self,
        business_id: UUID,
        message: Entity,
        customer: Entity | None,
        attachments: Sequence[Entity],
        occurred_at: datetime,
    ) -> Event:
        data = {
            "message": _pick(message, *self.MESSAGE_FIELDS),
            "customer": _pick(customer, *self.CUSTOMER_SUMMARY_FIELDS),
            "attachments": [self._attachment(att) for att in attachments],
        }
        return build_event(
            EventType.MESSAGE_RECEIVED.value, business_id, str(message["id"]), data, occurred_at
        )

    def customer_lifecycle(
        self,
        event_type: EventType,
        business_id: UUID,
        customer: Entity,
        conversation: Entity | None,
        occurred_at: datetime,
    ) -> Event:
        if event_type not in (EventType.CUSTOMER_CREATED, EventType.CUSTOMER_UPDATED):
            raise ValueError(f"{event_type.value} is not a customer lifecycle event")
        data: dict[str, Any] = {
            "customer": _pick(customer, *self.CUSTOMER_FIELDS),
            "deduplication_check": _pick(customer, "email", "phone", "external_id"),
        }
        if conversation is not None:
            data["conversation"] = _pick(conversation, *self.CONVERSATION_FIELDS)
        # updates of one customer are distinct events; the source id includes the revision
        source_id = str(customer["id"])
        if event_type is EventType.CUSTOMER_UPDATED and customer.get("updated_at") is not None:
            source_id = f"{source_id}@{_canonicalize(customer['updated_at'])}"
        return build_event(event_type.value, business_id, source_id, data, occurred_at)

    def new_message_notification(
        self,
        business_id: UUID,
        message: Entity,
        customer_name: str | None,
        occurred_at: datetime,
    ) -> Event:
        data = {
            "has_notification": 1,
            "id": str(message["id"]),
            "customer_name": customer_name or "Unknown Customer",
            "preview": _preview(message.get("content"), "New message"),
            "link": f"{self._dashboard_base_url}/app/dashboard?conversation={message.get('conversation_id')}",
        }
        return build_event(
            EventType.NEW_MESSAGE.value, business_id, str(message["id"]), data, occurred_at
        )

    def new_inmail_notification(
        self,
        business_id: UUID,
        inmail: Entity,
        sender_name: str | None,
        occurred_at: datetime,
    ) -> Event:
        preview = inmail.get("subject") or _preview(inmail.get("content"), "New internal message")
        data = {
            "has_notification": 1,
            "id": str(inmail["id"]),
            "customer_name": sender_name or "Team Member",
            "preview": preview,
            "link": f"{self._dashboard_base_url}/app/dashboard?inmail={inmail['id']}",
        }
        return build_event(
            EventType.NEW_INMAIL.value, business_id, str(inmail["id"]), data, occurred_at
        )

    def document_submitted(
        self,
        business_id: UUID,
        submission: Entity,
        occurred_at: datetime,
    ) -> Event:
        data = _pick(submission, "id", "document_type", "status", "file_name", "fields")
        return build_event(
            EventType.DOCUMENT_SUBMITTED.value, business_id, str(submission["id"]), data, occurred_at
        )

    def _attachment(self, attachment: Entity) -> dict[str, Any]:
        item = _pick(attachment, *self.ATTACHMENT_FIELDS)
        if self._media_download_base_url:
            item["download_url"] = f"{self._media_download_base_url}?id={attachment['id']}"
        return item
