"""Helper utilities for API handlers."""
from __future__ import annotations

import hmac
from typing import Any
from uuid import UUID

from aiohttp import web

from webhook_service.settings import settings

INTERNAL_TOKEN_HEADER = "X-Internal-Token"


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse a JSON object body, raising HTTPBadRequest on invalid input."""
    try:
        data = await request.json()
    except Exception as exc:
        raise web.HTTPBadRequest(text="Invalid JSON payload") from exc
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return data


def parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(str(value))
    except (ValueError, TypeError) as exc:
        raise web.HTTPBadRequest(text=f"Invalid {label}") from exc


def require_internal_token(request: web.Request) -> None:
    """Check the shared token when ``internal_api_token`` is configured."""
    expected = settings.internal_api_token
    if not expected:
        return
    provided = request.headers.get(INTERNAL_TOKEN_HEADER, "")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise web.HTTPUnauthorized(reason="Invalid internal token")
