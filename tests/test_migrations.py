from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from backend_common.db.migrations import (
    apply_migrations,
    load_migrations,
    pending_migrations,
    render_schema,
)

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"
TEST_SCHEMA = Path(__file__).resolve().parent / "schemas" / "postgresql" / "webhook_service.sql"


def _conn(applied: dict[str, str] | None = None) -> MagicMock:
    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.fetch = AsyncMock(
        return_value=[{"version": v, "checksum": c} for v, c in (applied or {}).items()]
    )
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


def test_load_migrations_sorted(tmp_path):
    (tmp_path / "002_b.sql").write_text("SELECT 2;")
    (tmp_path / "001_a.sql").write_text("SELECT 1;")
    (tmp_path / "notes.txt").write_text("ignored")

    migrations = load_migrations(tmp_path)

    assert [m.version for m in migrations] == ["001_a", "002_b"]
    assert migrations[0].checksum != migrations[1].checksum


def test_load_migrations_missing_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_migrations(tmp_path / "missing")


def test_shipped_schema_declares_uniqueness_constraints():
    sql = "\n".join(m.sql for m in load_migrations(MIGRATIONS_DIR))
    assert "idempotency_key text NOT NULL UNIQUE" in sql
    assert "UNIQUE (event_id, subscription_id)" in sql
    assert "UNIQUE (record_id, attempt_number)" in sql
    assert "webhook_delivery_attempts is append-only" in sql


def test_pgsql_schema_matches_migrations():
    expected = render_schema(load_migrations(MIGRATIONS_DIR))
    assert TEST_SCHEMA.read_text(encoding="utf-8") == expected, "run bin/export_schema.py"


@pytest.mark.asyncio
async def test_apply_only_pending(tmp_path):
    (tmp_path / "001_a.sql").write_text("SELECT 1;")
    (tmp_path / "002_b.sql").write_text("SELECT 2;")
    migrations = load_migrations(tmp_path)
    conn = _conn({"001_a": migrations[0].checksum})

    applied = await apply_migrations(conn, migrations)

    assert applied == 1
    executed = [call.args[0] for call in conn.execute.await_args_list]
    assert "SELECT 2;" in executed
    assert "SELECT 1;" not in executed


@pytest.mark.asyncio
async def test_checksum_drift_is_fatal(tmp_path):
    (tmp_path / "001_a.sql").write_text("SELECT 1;")
    migrations = load_migrations(tmp_path)

    with pytest.raises(RuntimeError, match="Checksum mismatch"):
        await pending_migrations(_conn({"001_a": "stale"}), migrations)
