"""Webhook event trigger, sweep trigger and delivery audit endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from webhook_service.api.utils import parse_uuid, read_json, require_internal_token
from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.enums import EventType
from webhook_service.domain.events import build_event
from webhook_service.services.dependencies import get_webhook_service
from webhook_service.services.scheduler import utcnow
from webhook_service.workers import worker

routes = web.RouteTableDef()


class WebhookEventTriggerDTO(BaseModel):
    event_type: EventType
    business_id: UUID
    source_id: str = Field(min_length=1, max_length=255)
    data: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime | None = None


@routes.post("/api/v1/webhook-events")
async def trigger_webhook_event(request: web.Request):
    require_internal_token(request)
    body = await read_json(request)
    try:
        dto = WebhookEventTriggerDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc

    try:
        event = build_event(
            dto.event_type.value,
            dto.business_id,
            dto.source_id,
            dto.data,
            dto.occurred_at or utcnow(),
        )
    except (TypeError, ValueError) as exc:
        # e.g. NaN/Infinity, which the JSON parser accepts but the wire format forbids
        raise web.HTTPBadRequest(text=f"Unserializable event data: {exc}") from exc
    service = get_webhook_service(request)
    result = await service.emit(event)
    return web.json_response(result.to_dict(), status=202)


@routes.post("/api/v1/webhook-sweep")
async def run_webhook_sweep(request: web.Request):
    require_internal_token(request)
    runs = await worker.run_once()
    payload = {
        "tasks": [{"name": run.name, "summary": run.summary, "error": run.error} for run in runs]
    }
    status = 200 if all(run.ok for run in runs) else 500
    return web.json_response(payload, status=status)


@routes.get("/api/v1/webhook-events/{event_id}/deliveries")
async def list_event_deliveries(request: web.Request):
    require_internal_token(request)
    event_id = parse_uuid(request.match_info["event_id"], "event_id")
    service = get_webhook_service(request)
    try:
        records = await service.list_deliveries(event_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(
        {
            "event_id": str(event_id),
            "deliveries": [record.model_dump(mode="json") for record in records],
        }
    )
