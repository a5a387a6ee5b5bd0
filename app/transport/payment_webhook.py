# app/transport/payment_webhook.py
"""
Payment gateway capture webhook.

Security features:
- Signature verified over the raw body before anything is parsed
- Timestamp freshness window (replay protection)
- Every delivery recorded in payment_webhooks, verified or not

A ``captured`` event funds the escrow as the system actor. Gateways
redeliver freely; duplicates are no-ops through fund idempotency.
"""
from typing import Any

from fastapi import HTTPException, Request
from pydantic import ValidationError

from app.config import settings
from app.core.dispatch.domain import Actor
from app.core.errors import DomainError
from app.core.escrow.engine import EscrowEngine
from app.infra.logging_config import get_logger, LogContext
from app.infra.metrics import AppMetrics, inc_counter
from app.infra.pg_payment_webhook_repo_async import (
    AsyncPostgresPaymentWebhookLog,
    get_payment_webhook_log,
)
from app.transport.schemas import PaymentWebhookIn
from app.transport.security import verify_payment_signature

logger = get_logger(__name__)

CAPTURED = "captured"


async def _record(webhook_log: AsyncPostgresPaymentWebhookLog, **fields: Any) -> None:
    try:
        await webhook_log.record(**fields)
    except Exception as exc:
        logger.warning(f"Payment webhook log write failed (non-critical): {exc}")


def _verify(request: Request, body: bytes) -> bool:
    """
    Returns True when the signature was checked and valid, False when
    verification is skipped (non-prod without a secret). Raises 401/500.
    """
    secret = settings.payment_webhook_secret
    if not secret:
        if settings.is_production:
            logger.critical("PAYMENT_WEBHOOK_SECRET not configured in production")
            AppMetrics.webhook_validation_failed("payments")
            raise HTTPException(status_code=500, detail="Webhook validation not configured")
        logger.warning("Payment webhook accepted without signature check (no secret configured)")
        return False

    ok, error = verify_payment_signature(
        secret,
        request.headers.get("X-Webhook-Timestamp"),
        request.headers.get("X-Webhook-Signature"),
        body,
        max_age_seconds=settings.payment_webhook_max_age_seconds,
    )
    if not ok:
        logger.warning(f"Payment webhook rejected: {error}")
        raise HTTPException(status_code=401, detail="Invalid signature")
    return True


async def payment_webhook_handler(
    request: Request,
    escrow: EscrowEngine,
    *,
    webhook_log: AsyncPostgresPaymentWebhookLog | None = None,
) -> dict:
    webhook_log = webhook_log or get_payment_webhook_log()
    body = await request.body()

    try:
        verified = _verify(request, body)
    except HTTPException:
        await _record(
            webhook_log,
            payment_reference=None, request_id=None, event_status=None,
            signature_verified=False, payload=None, outcome="rejected_signature",
        )
        raise

    try:
        event = PaymentWebhookIn.model_validate_json(body)
    except ValidationError as exc:
        logger.warning(f"Malformed payment webhook: {exc.error_count()} validation errors")
        await _record(
            webhook_log,
            payment_reference=None, request_id=None, event_status=None,
            signature_verified=verified, payload=None, outcome="malformed",
        )
        raise HTTPException(status_code=400, detail="Malformed payload")

    log_ctx = LogContext(logger, service_request_id=event.request_id)
    fields = {
        "payment_reference": event.external_payment_reference,
        "request_id": event.request_id,
        "event_status": event.status,
        "signature_verified": verified,
        "payload": event.model_dump(by_alias=True),
    }
    inc_counter("payment_webhooks_total", status=event.status)

    if event.status.lower() != CAPTURED:
        log_ctx.info(f"Payment webhook acknowledged without action: status={event.status}")
        await _record(webhook_log, outcome="ignored", **fields)
        return {"status": "ignored"}

    try:
        funded = await escrow.fund(
            event.request_id,
            event.amount,
            event.external_payment_reference,
            Actor.system(),
        )
    except DomainError as exc:
        log_ctx.warning(f"Payment capture not applied: {exc.code}: {exc.detail}")
        await _record(webhook_log, outcome=exc.code, **fields)
        raise

    await _record(webhook_log, outcome="funded", **fields)
    log_ctx.info(f"Payment captured: escrow={funded.id}, amount={funded.amount}")
    return {"status": "ok", "escrow_id": funded.id, "escrow_status": funded.status.value}
