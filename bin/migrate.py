#!/usr/bin/env python3
"""SQL migration runner for the Webhook Service."""
from __future__ import annotations

import argparse
import asyncio
import os
from pathlib import Path

import asyncpg

from backend_common.db.migrations import apply_migrations, load_migrations, pending_migrations


def _default_migrations_dir() -> Path:
    return Path(__file__).resolve().parent.parent / "migrations"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply SQL migrations sequentially.")
    parser.add_argument(
        "--database-url",
        "-d",
        default=os.getenv("DATABASE_URL"),
        help="PostgreSQL connection string. Defaults to DATABASE_URL env variable.",
    )
    parser.add_argument(
        "--migrations-dir",
        "-m",
        type=Path,
        default=_default_migrations_dir(),
        help="Directory with *.sql migrations (sorted lexicographically).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only list pending migrations without applying.",
    )
    return parser.parse_args()


async def main_async() -> None:
    args = parse_args()
    if not args.database_url:
        raise SystemExit("Database URL must be provided via --database-url or DATABASE_URL env.")
    migrations = load_migrations(args.migrations_dir)
    if not migrations:
        raise SystemExit(f"No *.sql files found in {args.migrations_dir}")

    conn = await asyncpg.connect(args.database_url)
    try:
        if args.dry_run:
            pending = await pending_migrations(conn, migrations)
            for migration in pending:
                print(f"[dry-run] Pending migration: {migration.path.name}")
            print(f"{len(pending)} migration(s) pending.")
            return
        applied = await apply_migrations(conn, migrations)
        print(f"Applied {applied} migration(s)." if applied else "No pending migrations.")
    finally:
        await conn.close()


def main() -> None:
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
