"""SQL migration helpers shared by the CLI runner and the startup hook."""
from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Protocol

import asyncpg
import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)


class SettingsProtocol(Protocol):
    database_url: Any


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    sql: str

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode("utf-8")).hexdigest()


def load_migrations(directory: Path) -> list[Migration]:
    """Load ``*.sql`` files sorted lexicographically; the file stem is the version."""
    if not directory.exists():
        raise FileNotFoundError(f"Migrations directory does not exist: {directory}")
    seen: set[str] = set()
    migrations: list[Migration] = []
    for path in sorted(directory.glob("*.sql")):
        version = path.stem
        if version in seen:
            raise ValueError(f"Duplicate migration version detected: {version}")
        seen.add(version)
        migrations.append(Migration(version, path, path.read_text(encoding="utf-8")))
    return migrations


SCHEMA_HEADER = (
    "-- Auto-generated from migrations.\n"
    "-- Run `python bin/export_schema.py` after editing migrations.\n"
)


def render_schema(migrations: Iterable[Migration]) -> str:
    """Concatenate migrations into one schema file for the testsuite pgsql plugin."""
    parts = [SCHEMA_HEADER]
    for migration in migrations:
        parts.append(f"-- Migration: {migration.path.name}\n{migration.sql.strip()}\n")
    return "\n".join(parts)


async def ensure_schema_table(conn: asyncpg.Connection) -> None:
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version text PRIMARY KEY,
            checksum text NOT NULL,
            applied_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )


async def pending_migrations(
    conn: asyncpg.Connection, migrations: Iterable[Migration]
) -> list[Migration]:
    """Return migrations not yet applied; fail loudly on checksum drift."""
    await ensure_schema_table(conn)
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    applied = {row["version"]: row["checksum"] for row in rows}
    pending: list[Migration] = []
    for migration in migrations:
        recorded = applied.get(migration.version)
        if recorded is None:
            pending.append(migration)
        elif recorded != migration.checksum:
            raise RuntimeError(
                f"Checksum mismatch for {migration.version}: "
                f"{recorded} (db) != {migration.checksum} (file)"
            )
    return pending


async def apply_migrations(conn: asyncpg.Connection, migrations: Iterable[Migration]) -> int:
    """Apply pending migrations, each in its own transaction. Returns count applied."""
    pending = await pending_migrations(conn, migrations)
    for migration in pending:
        logger.info("applying migration", version=migration.version)
        async with conn.transaction():
            await conn.execute(migration.sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, checksum) VALUES ($1, $2)",
                migration.version,
                migration.checksum,
            )
    return len(pending)


def _find_migrations_dir(possible_paths: list[Path]) -> Path | None:
    for path in possible_paths:
        if path.exists():
            return path
    return None


def create_migration_runner(
    settings: SettingsProtocol,
    possible_paths: Iterable[Path],
    *,
    connect_attempts: int = 5,
    retry_delay_seconds: float = 2.0,
) -> Callable[[web.Application], Awaitable[None]]:
    """Create an aiohttp startup hook that applies SQL migrations."""
    possible_paths_list = list(possible_paths)

    async def apply_migrations_on_startup(_app: web.Application) -> None:
        migrations_dir = _find_migrations_dir(possible_paths_list)
        if migrations_dir is None:
            logger.warning("migrations directory not found", tried=[str(p) for p in possible_paths_list])
            return
        migrations = load_migrations(migrations_dir)
        if not migrations:
            logger.warning("no migrations found", directory=str(migrations_dir))
            return

        conn = None
        for attempt in range(1, connect_attempts + 1):
            try:
                conn = await asyncpg.connect(str(settings.database_url))
                break
            except (OSError, asyncpg.PostgresError) as exc:
                logger.warning(
                    "database connection failed",
                    attempt=attempt,
                    max_attempts=connect_attempts,
                    error=str(exc),
                )
                if attempt == connect_attempts:
                    raise
                await asyncio.sleep(retry_delay_seconds)
        assert conn is not None

        try:
            applied = await apply_migrations(conn, migrations)
        finally:
            await conn.close()
        logger.info("migrations applied", count=applied)

    return apply_migrations_on_startup
