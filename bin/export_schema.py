#!/usr/bin/env python3
"""Export the testsuite schema SQL by concatenating migrations."""
from __future__ import annotations

import argparse
from pathlib import Path

from backend_common.db.migrations import load_migrations, render_schema


def default_migrations_dir() -> Path:
    return Path(__file__).resolve().parent.parent / "migrations"


def default_output_path() -> Path:
    return (
        Path(__file__)
        .resolve()
        .parent.parent
        / "tests"
        / "schemas"
        / "postgresql"
        / "webhook_service.sql"
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Generate test schema SQL from migration files."
    )
    parser.add_argument(
        "--migrations-dir",
        "-m",
        type=Path,
        default=default_migrations_dir(),
        help="Directory with *.sql migrations.",
    )
    parser.add_argument(
        "--output",
        "-o",
        type=Path,
        default=default_output_path(),
        help="Target SQL file (testsuite schema).",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    migrations = load_migrations(args.migrations_dir)
    if not migrations:
        raise SystemExit(f"No migrations found in {args.migrations_dir}")
    args.output.parent.mkdir(parents=True, exist_ok=True)
    args.output.write_text(render_schema(migrations), encoding="utf-8")
    print(f"Wrote schema to {args.output}")


if __name__ == "__main__":
    main()
