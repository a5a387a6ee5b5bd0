# app/infra/schema_validator.py
"""
Schema version validator.

The application does NOT run migrations itself: migrations run as a
separate step (``python -m app.infra.migrate``) and every instance checks
at startup that the database has reached ``EXPECTED_SCHEMA_VERSION``.
"""
from __future__ import annotations
from app.config import settings
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_RUN_MIGRATIONS_HINT = "Run migrations first: python -m app.infra.migrate"


async def _applied_versions(conn) -> list[str] | None:
    exists = await conn.fetchval("SELECT to_regclass('public.schema_migrations') IS NOT NULL")
    if not exists:
        return None
    rows = await conn.fetch("SELECT version FROM schema_migrations ORDER BY version")
    return [row['version'] for row in rows]


async def validate_schema_version() -> dict:
    """
    Check that the expected migration has been applied.

    Versions are migration filenames, so the newest one is the
    lexicographically largest.

    Raises:
        RuntimeError: schema missing or older than expected
    """
    expected = settings.expected_schema_version

    async with db_conn() as conn:
        versions = await _applied_versions(conn)

    if not versions:
        error = f"Database schema not initialized. {_RUN_MIGRATIONS_HINT}"
        logger.critical(error)
        raise RuntimeError(error)

    current = versions[-1]
    if expected not in versions:
        error = (
            f"Schema version mismatch! Expected: {expected}, Found: {current}. "
            f"{_RUN_MIGRATIONS_HINT}"
        )
        logger.critical(error, extra={"expected": expected, "current": current})
        raise RuntimeError(error)

    if current != expected:
        logger.warning(f"Database schema ({current}) is newer than expected ({expected})")

    logger.info(f"Schema version validated: {current}")
    return {"ok": True, "current_version": current, "expected_version": expected, "error": None}


async def get_schema_info() -> dict:
    """Schema state for the detailed health endpoint."""
    async with db_conn() as conn:
        versions = await _applied_versions(conn)

    if versions is None:
        return {"initialized": False, "migrations_applied": 0, "latest_version": None}

    return {
        "initialized": True,
        "migrations_applied": len(versions),
        "latest_version": versions[-1] if versions else None,
        "expected_version": settings.expected_schema_version,
        "is_compatible": settings.expected_schema_version in versions,
    }
