# app/infra/db_async.py
"""
Async database connection using asyncpg.

Every guarded write in the dispatch and escrow stores runs on a
connection from this pool; statement_timeout keeps a blocked write
from holding a helper's accept call open.
"""
from __future__ import annotations
from typing import AsyncContextManager
from contextlib import asynccontextmanager

import asyncpg
from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Global connection pool
_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return

    logger.info("Initializing asyncpg connection pool")

    connect_kwargs: dict = {}
    if settings.database_url:
        connect_kwargs["dsn"] = settings.database_url
    else:
        connect_kwargs.update(
            host=settings.pghost,
            port=settings.pgport,
            user=settings.pguser,
            password=settings.pgpassword,
            database=settings.pgdatabase,
        )

    _pool = await asyncpg.create_pool(
        **connect_kwargs,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        timeout=settings.pg_connect_timeout,
        command_timeout=60,
        server_settings={
            'application_name': 'dispatch_escrow',
            'statement_timeout': str(settings.pg_statement_timeout_ms),
            'idle_in_transaction_session_timeout': str(settings.pg_idle_in_tx_timeout_ms),
        }
    )

    logger.info(f"Connection pool created: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None
    logger.info("Connection pool closed")


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncContextManager[asyncpg.Connection]:
    """
    Get database connection from pool (async).

    Usage:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM service_requests WHERE id = $1", request_id)

    Args:
        autocommit: If True (default), each statement commits on its own.
            If False, the block runs in one transaction that commits on
            normal exit and rolls back on any exception.

    Yields:
        asyncpg.Connection
    """
    global _pool

    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    conn = await _pool.acquire()

    try:
        if not autocommit:
            transaction = conn.transaction()
            await transaction.start()

            try:
                yield conn
                await transaction.commit()
            except Exception:
                await transaction.rollback()
                raise
        else:
            yield conn
    finally:
        await _pool.release(conn)


async def get_pool() -> asyncpg.Pool:
    """Get the connection pool directly (for advanced usage)"""
    global _pool
    if _pool is None:
        raise RuntimeError("Connection pool not initialized")
    return _pool
