from __future__ import annotations

import uuid

import pytest
import pytest_asyncio
from aiohttp import web

from backend_common.middleware.trace import REQUEST_ID_HEADER, TRACE_ID_HEADER, create_trace_middleware
from webhook_service.api.router import setup_routes
from webhook_service.api.utils import INTERNAL_TOKEN_HEADER
from webhook_service.main import healthcheck
from webhook_service.services.dependencies import Services, set_services
from webhook_service.settings import settings


@pytest_asyncio.fixture
async def service_client(aiohttp_client, webhook_service, scheduler):
    set_services(Services(webhooks=webhook_service, scheduler=scheduler))
    app = web.Application()
    app.middlewares.append(create_trace_middleware(settings.app_name))
    app.router.add_get("/health", healthcheck)
    setup_routes(app)
    client = await aiohttp_client(app)
    yield client
    set_services(None)


def _trigger_body(business_id, overrides: dict | None = None) -> dict:
    body = {
        "event_type": "new_message",
        "business_id": str(business_id),
        "source_id": "m1",
        "data": {"id": "m1", "preview": "hello"},
        "occurred_at": "2024-01-01T00:00:00Z",
    }
    body.update(overrides or {})
    return body


@pytest.mark.asyncio
async def test_healthcheck(service_client):
    resp = await service_client.get("/health")
    assert resp.status == 200
    payload = await resp.json()
    assert payload["status"] == "ok"
    assert uuid.UUID(resp.headers[TRACE_ID_HEADER])
    assert uuid.UUID(resp.headers[REQUEST_ID_HEADER])


@pytest.mark.asyncio
async def test_trigger_event_schedules_deliveries(service_client, business_id, make_subscription, delivery_repo):
    make_subscription()

    resp = await service_client.post("/api/v1/webhook-events", json=_trigger_body(business_id))
    assert resp.status == 202, await resp.text()
    payload = await resp.json()

    assert payload["duplicate_event"] is False
    assert len(payload["created"]) == 1
    assert len(delivery_repo.records) == 1


@pytest.mark.asyncio
async def test_trigger_same_event_twice_is_idempotent(service_client, business_id, make_subscription, delivery_repo):
    make_subscription()

    first = await (await service_client.post("/api/v1/webhook-events", json=_trigger_body(business_id))).json()
    resp = await service_client.post("/api/v1/webhook-events", json=_trigger_body(business_id))
    second = await resp.json()

    assert resp.status == 202
    assert second["event_id"] == first["event_id"]
    assert second["duplicate_event"] is True
    assert second["created"] == []
    assert len(delivery_repo.records) == 1


@pytest.mark.asyncio
async def test_trigger_without_subscriptions(service_client, business_id):
    resp = await service_client.post("/api/v1/webhook-events", json=_trigger_body(business_id))
    assert resp.status == 202
    assert (await resp.json())["created"] == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"event_type": "unknown.event"},
        {"business_id": "not-a-uuid"},
        {"source_id": ""},
    ],
)
async def test_trigger_validation_errors(service_client, business_id, overrides):
    resp = await service_client.post("/api/v1/webhook-events", json=_trigger_body(business_id, overrides))
    assert resp.status == 400


@pytest.mark.asyncio
async def test_trigger_invalid_json(service_client):
    resp = await service_client.post(
        "/api/v1/webhook-events", data="{not json", headers={"Content-Type": "application/json"}
    )
    assert resp.status == 400


@pytest.mark.asyncio
@pytest.mark.parametrize("literal", ["NaN", "Infinity", "-Infinity"])
async def test_trigger_rejects_non_finite_numbers(service_client, business_id, delivery_repo, literal):
    raw = (
        '{"event_type":"new_message","business_id":"%s","source_id":"m1","data":{"score":%s}}'
        % (business_id, literal)
    )
    resp = await service_client.post(
        "/api/v1/webhook-events", data=raw, headers={"Content-Type": "application/json"}
    )
    assert resp.status == 400
    assert delivery_repo.records == {}


@pytest.mark.asyncio
async def test_internal_token_is_enforced(service_client, business_id, monkeypatch):
    monkeypatch.setattr(settings, "internal_api_token", "s3cret-token")

    missing = await service_client.post("/api/v1/webhook-events", json=_trigger_body(business_id))
    wrong = await service_client.post(
        "/api/v1/webhook-events", json=_trigger_body(business_id), headers={INTERNAL_TOKEN_HEADER: "nope"}
    )
    right = await service_client.post(
        "/api/v1/webhook-events",
        json=_trigger_body(business_id),
        headers={INTERNAL_TOKEN_HEADER: "s3cret-token"},
    )

    assert missing.status == 401
    assert wrong.status == 401
    assert right.status == 202


@pytest.mark.asyncio
async def test_sweep_endpoint_delivers_due_records(service_client, business_id, make_subscription, dispatcher):
    make_subscription()
    created = await (await service_client.post("/api/v1/webhook-events", json=_trigger_body(business_id))).json()

    resp = await service_client.post("/api/v1/webhook-sweep")
    assert resp.status == 200
    payload = await resp.json()
    tasks = {task["name"]: task for task in payload["tasks"]}
    assert tasks["webhook_sweep"]["summary"].startswith("claimed=1 delivered=1")
    assert tasks["webhook_reclaim_stale"]["error"] is None
    assert len(dispatcher.calls) == 1

    resp = await service_client.get(f"/api/v1/webhook-events/{created['event_id']}/deliveries")
    assert resp.status == 200
    deliveries = (await resp.json())["deliveries"]
    assert deliveries[0]["state"] == "delivered"
    assert deliveries[0]["attempts"][0]["http_status"] == 200


@pytest.mark.asyncio
async def test_sweep_endpoint_reports_task_failure(service_client, delivery_repo):
    async def broken_claim(now, *, limit=50):
        raise OSError("database unavailable")

    delivery_repo.claim_due = broken_claim

    resp = await service_client.post("/api/v1/webhook-sweep")
    assert resp.status == 500
    tasks = {task["name"]: task for task in (await resp.json())["tasks"]}
    assert "database unavailable" in tasks["webhook_sweep"]["error"]


@pytest.mark.asyncio
async def test_deliveries_for_unknown_event(service_client):
    resp = await service_client.get(f"/api/v1/webhook-events/{uuid.uuid4()}/deliveries")
    assert resp.status == 404


@pytest.mark.asyncio
async def test_deliveries_with_invalid_id(service_client):
    resp = await service_client.get("/api/v1/webhook-events/not-a-uuid/deliveries")
    assert resp.status == 400


def test_subscription_secret_is_never_serialized(make_subscription):
    sub = make_subscription()
    assert "secret" not in sub.model_dump()
    assert "whsec_test" not in repr(sub)
    assert "whsec_test" not in sub.model_dump_json()
