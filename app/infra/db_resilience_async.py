# app/infra/db_resilience_async.py
"""
Async database resilience utilities.
Retry logic for transient asyncpg failures.
"""
from __future__ import annotations
import sys
import asyncio
from typing import TypeVar, Callable
from contextlib import asynccontextmanager
from functools import wraps

import asyncpg
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


def is_transient_error(exc: Exception) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors
    - Server closed connection
    - Too many connections
    - Deadlock / serialization failure
    """
    if isinstance(exc, asyncpg.PostgresConnectionError):
        return True

    if isinstance(exc, asyncpg.TooManyConnectionsError):
        return True

    if isinstance(exc, (asyncpg.DeadlockDetectedError, asyncpg.SerializationError)):
        return True

    # Constraint violations mention none of these words but must never be retried
    if isinstance(exc, asyncpg.IntegrityConstraintViolationError):
        return False

    error_message = str(exc).lower()

    transient_patterns = [
        "connection",
        "timeout",
        "closed",
        "network",
        "deadlock",
        "too many connections",
        "server closed",
        "connection reset",
    ]

    return any(pattern in error_message for pattern in transient_patterns)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Decorator to retry async function on transient database errors.

    Only wrap operations that are safe to repeat (reads, or writes whose
    guard turns a repeat into a no-op).

    Example:
        @retry_on_transient_error(max_retries=3)
        async def get(request_id: str):
            async with db_conn() as conn:
                return await conn.fetchrow("SELECT * FROM service_requests WHERE id = $1", request_id)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc):
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded in {func.__name__}",
                            exc_info=True
                        )
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )

                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True):
    """
    Database connection with automatic retry on transient errors
    while acquiring the connection.

    The body of the ``async with`` block runs exactly once; errors raised
    inside it propagate (rolling back when ``autocommit=False``).

    Usage:
        async with safe_db_conn(autocommit=False) as conn:
            await conn.execute("UPDATE ...")
    """
    max_retries = 3
    delay = 0.1

    for attempt in range(max_retries + 1):
        ctx = db_conn(autocommit=autocommit)
        try:
            conn = await ctx.__aenter__()
            break
        except Exception as exc:
            if not is_transient_error(exc):
                raise

            if attempt >= max_retries:
                logger.error(f"Max retries ({max_retries}) exceeded getting connection")
                raise

            logger.warning(
                f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )

            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 5.0)

    try:
        yield conn
    except BaseException:
        if not await ctx.__aexit__(*sys.exc_info()):
            raise
    else:
        await ctx.__aexit__(None, None, None)


def rows_affected(status: str | None) -> int:
    """Parse an asyncpg command status ("UPDATE 3", "INSERT 0 1") into a row count."""
    if not status:
        return 0
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0
