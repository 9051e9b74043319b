"""Worker: deliver due webhook attempts."""
from __future__ import annotations

from datetime import datetime

from webhook_service.services.dependencies import get_scheduler


async def webhook_sweep(now: datetime) -> str | None:
    """Claim one batch of due deliveries and attempt each."""
    result = await get_scheduler().sweep(now)
    return result.summary()
