# app/infra/pg_notification_repo_async.py
"""
Async PostgreSQL notification repository (asyncpg).

Delivery idempotency, in-app inbox and device tokens for the
notification fanout. Both the delivery record and the in-app row are
keyed by (request_id, event_type, recipient_id, round_key) and inserted
with ON CONFLICT DO NOTHING, so a retried job never duplicates them.
"""
from __future__ import annotations

import json
import uuid

from app.core.notifications.events import NotificationEvent
from app.core.notifications.ports import AsyncNotificationRepository
from app.infra.db_resilience_async import rows_affected, safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)


def _key(event: NotificationEvent) -> tuple:
    return (uuid.UUID(event.request_id), event.event_type.value, event.recipient_id, event.round_key)


class AsyncPostgresNotificationRepository(AsyncNotificationRepository):
    """Async PostgreSQL implementation of AsyncNotificationRepository using asyncpg."""

    async def was_delivered(self, event: NotificationEvent) -> bool:
        async with safe_db_conn() as conn:
            found = await conn.fetchval(
                """
                SELECT 1 FROM notification_deliveries
                WHERE request_id = $1 AND event_type = $2 AND recipient_id = $3 AND round_key = $4
                """,
                *_key(event),
            )
            return found is not None

    async def save_in_app(self, event: NotificationEvent, title: str, body: str) -> None:
        try:
            async with safe_db_conn() as conn:
                await conn.execute(
                    """
                    INSERT INTO in_app_notifications
                        (request_id, event_type, recipient_id, round_key, title, body, data)
                    VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                    ON CONFLICT (request_id, event_type, recipient_id, round_key) DO NOTHING
                    """,
                    *_key(event), title, body, json.dumps(event.data),
                )
        except Exception:
            logger.error(
                f"Failed to save in-app notification: event={event.event_type.value}, "
                f"request={event.request_id}",
                exc_info=True,
            )
            AppMetrics.database_error("save_in_app")
            raise

    async def mark_delivered(self, event: NotificationEvent, push_sent: int) -> bool:
        """
        Returns:
            True  => delivery recorded now
            False => already recorded (idempotency hit)
        """
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                INSERT INTO notification_deliveries
                    (request_id, event_type, recipient_id, round_key, push_sent)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (request_id, event_type, recipient_id, round_key) DO NOTHING
                """,
                *_key(event), push_sent,
            )
            first = rows_affected(result) == 1
            if not first:
                logger.info(f"Idempotency hit: notification {event.idempotency_key}")
                AppMetrics.idempotency_hit("notification_delivery")
            return first

    async def active_device_tokens(self, user_id: str) -> list[str]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT token FROM device_tokens WHERE user_id = $1 AND is_active ORDER BY updated_at DESC",
                user_id,
            )
            return [r["token"] for r in rows]

    async def deactivate_token(self, token: str) -> int:
        """Called when the push provider reports a token as unregistered."""
        async with safe_db_conn() as conn:
            result = await conn.execute(
                "UPDATE device_tokens SET is_active = false, updated_at = now() WHERE token = $1 AND is_active",
                token,
            )
            return rows_affected(result)

    async def cleanup_old(self, ttl_days: int = 30) -> int:
        """Delete delivery records older than ``ttl_days``; they no longer dedupe anything."""
        async with safe_db_conn() as conn:
            result = await conn.execute(
                "DELETE FROM notification_deliveries WHERE delivered_at < now() - make_interval(days => $1)",
                ttl_days,
            )
            deleted = rows_affected(result)
            if deleted > 0:
                logger.info(f"Delivery idempotency cleanup: deleted {deleted} rows older than {ttl_days}d")
            return deleted


# Global singleton
_notification_repo: AsyncPostgresNotificationRepository | None = None


def get_notification_repo() -> AsyncPostgresNotificationRepository:
    global _notification_repo
    if _notification_repo is None:
        _notification_repo = AsyncPostgresNotificationRepository()
    return _notification_repo
