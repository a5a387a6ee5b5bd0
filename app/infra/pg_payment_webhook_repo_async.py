# app/infra/pg_payment_webhook_repo_async.py
"""
Raw log of payment gateway deliveries (asyncpg).

Every delivery is recorded, including ones that fail signature checks,
so operators can reconcile against the gateway's own dashboard.
"""
from __future__ import annotations

import json
from typing import Any

from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


class AsyncPostgresPaymentWebhookLog:
    async def record(
        self,
        *,
        payment_reference: str | None,
        request_id: str | None,
        event_status: str | None,
        signature_verified: bool,
        payload: dict[str, Any] | None,
        outcome: str,
    ) -> int:
        async with safe_db_conn() as conn:
            return await conn.fetchval(
                """
                INSERT INTO payment_webhooks
                    (payment_reference, request_id, event_status, signature_verified, payload, outcome)
                VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                RETURNING id
                """,
                payment_reference, request_id, event_status, signature_verified,
                json.dumps(payload or {}), outcome,
            )


_webhook_log: AsyncPostgresPaymentWebhookLog | None = None


def get_payment_webhook_log() -> AsyncPostgresPaymentWebhookLog:
    global _webhook_log
    if _webhook_log is None:
        _webhook_log = AsyncPostgresPaymentWebhookLog()
    return _webhook_log
