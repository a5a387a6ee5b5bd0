# app/infra/migrations_async.py
"""
Async database migrations runner (asyncpg).

Migrations in app/infra/sql are applied in filename order inside one
transaction, serialized across instances by an advisory lock.
"""
from __future__ import annotations
from pathlib import Path

from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Arbitrary constant shared by every migrator process
_MIGRATION_LOCK_ID = 7_241_031


def _sql_dir() -> Path:
    """SQL migrations directory (next to this file: app/infra/sql)."""
    return Path(__file__).resolve().parent / "sql"


def migration_files() -> list[Path]:
    return sorted(p for p in _sql_dir().glob("*.sql") if p.is_file())


def latest_migration_version() -> str | None:
    files = migration_files()
    return files[-1].name if files else None


async def apply_migrations() -> dict:
    """
    Apply pending SQL migrations.

    Returns:
        dict with keys:
            - ok: bool
            - applied: list[str] (filenames applied in this run)
            - count: int
    """
    files = migration_files()

    async with db_conn(autocommit=False) as conn:
        await conn.execute("SELECT pg_advisory_xact_lock($1)", _MIGRATION_LOCK_ID)
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )

        rows = await conn.fetch("SELECT version FROM schema_migrations")
        applied = {row['version'] for row in rows}

        applied_now = []
        for p in files:
            version = p.name
            if version in applied:
                logger.debug(f"Migration {version} already applied, skipping")
                continue

            logger.info(f"Applying migration: {version}")
            await conn.execute(p.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", version)
            applied_now.append(version)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}


async def pending_migrations() -> list[str]:
    """Filenames present on disk but not recorded in schema_migrations."""
    async with db_conn() as conn:
        exists = await conn.fetchval("SELECT to_regclass('public.schema_migrations') IS NOT NULL")
        applied: set[str] = set()
        if exists:
            applied = {r['version'] for r in await conn.fetch("SELECT version FROM schema_migrations")}
    return [p.name for p in migration_files() if p.name not in applied]
