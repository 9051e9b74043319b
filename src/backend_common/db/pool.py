"""Asyncpg connection pool helpers."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

import asyncpg  # type: ignore[import-untyped]
import structlog

logger = structlog.get_logger(__name__)

pool: asyncpg.Pool | None = None

Hook = Callable[[Any], Awaitable[None]]


class SettingsProtocol(Protocol):
    """Settings objects carrying database configuration."""

    database_url: Any
    db_pool_size: int


async def init_pool(database_url: str, pool_size: int) -> asyncpg.Pool:
    """Initialize the global asyncpg pool (idempotent)."""
    global pool
    if pool is None:
        pool = await asyncpg.create_pool(
            dsn=database_url,
            min_size=1,
            max_size=pool_size,
        )
        logger.info("db pool initialized", max_size=pool_size)
    return pool


async def close_pool(_app: Any = None) -> None:
    """Close pool on shutdown."""
    global pool
    if pool is not None:
        await pool.close()
        pool = None
        logger.info("db pool closed")


async def get_pool() -> asyncpg.Pool:
    """Return the initialized asyncpg pool."""
    if pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool() first.")
    return pool


def create_pool_hooks(settings: SettingsProtocol) -> tuple[Hook, Hook]:
    """Build aiohttp ``on_startup`` / ``on_cleanup`` hooks bound to ``settings``."""

    async def init_pool_hook(_app: Any = None) -> None:
        await init_pool(str(settings.database_url), settings.db_pool_size)

    async def close_pool_hook(_app: Any = None) -> None:
        await close_pool(_app)

    return init_pool_hook, close_pool_hook
