#!/usr/bin/env python3
"""Apply the SQL migrations in sql/ to a PostgreSQL database.

Each file runs in its own transaction and is recorded in schema_migrations;
files already recorded are skipped, so the script is safe to rerun.

Usage:
    DATABASE_URL=postgresql://localhost/gemvault python scripts/migrate.py
    python scripts/migrate.py --database-url postgresql://localhost/gemvault --dry-run
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

import psycopg

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

SQL_DIR = ROOT / "sql"

_BOOTSTRAP = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version TEXT PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


def discover_migrations(sql_dir: Path = SQL_DIR) -> list[Path]:
    return sorted(p for p in sql_dir.glob("*.sql") if p.is_file())


def applied_versions(conn: psycopg.Connection) -> set[str]:
    conn.execute(_BOOTSTRAP)
    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    return {row[0] for row in rows}


def apply_migrations(dsn: str, *, dry_run: bool = False) -> list[str]:
    """Apply pending migrations in filename order; returns the versions applied."""
    from gemvault.logging import get_logger

    logger = get_logger("gemvault.migrate")
    applied: list[str] = []
    with psycopg.connect(dsn) as conn:
        with conn.transaction():
            done = applied_versions(conn)
        for path in discover_migrations():
            version = path.stem
            if version in done:
                continue
            if dry_run:
                print(f"[DRY RUN] Would apply {path.name}")
                applied.append(version)
                continue
            with conn.transaction():
                conn.execute(path.read_text())
                conn.execute(
                    "INSERT INTO schema_migrations (version) VALUES (%s) ON CONFLICT DO NOTHING",
                    (version,),
                )
            logger.info("migration_applied", version=version)
            print(f"Applied {path.name}")
            applied.append(version)
    return applied


def main():
    parser = argparse.ArgumentParser(
        description="Apply GemVault SQL migrations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="PostgreSQL DSN (or set DATABASE_URL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List pending migrations without applying them",
    )
    args = parser.parse_args()

    if not args.database_url:
        print("Error: --database-url or DATABASE_URL environment variable required")
        sys.exit(1)

    try:
        applied = apply_migrations(args.database_url, dry_run=args.dry_run)
    except psycopg.Error as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not applied:
        print("Database is up to date.")


if __name__ == "__main__":
    main()
