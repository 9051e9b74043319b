"""Worker: reclaim stalled webhook deliveries."""
from __future__ import annotations

from datetime import datetime

from webhook_service.services.dependencies import get_scheduler


async def webhook_reclaim_stale(now: datetime) -> str | None:
    """Release deliveries stuck in ``attempting`` longer than ``webhook_stale_attempt_minutes``."""
    reclaimed = await get_scheduler().reclaim_stale(now)
    return f"reclaimed={reclaimed}" if reclaimed else None
