# app/transport/http_app.py
"""
HTTP application for job dispatch and escrow settlement.

Security layers:
1. Gateway: request/escrow endpoints (service token + X-Actor-* headers)
2. Public but VALIDATED: payment gateway webhook (HMAC signature)
3. Protected: admin endpoints (admin token / HMAC, admin host in prod)
4. Internal: metrics and detailed health (metrics token or internal network)
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Request, Depends, Query
from fastapi.responses import JSONResponse, HTMLResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.core.dispatch.domain import AcceptOutcomeCode, Actor, ActorRole
from app.core.errors import DomainError, GeoMatcherUnavailable, IntegrityError, NotAuthorized
from app.infra.db_async import close_pool, init_pool
from app.infra.schema_validator import validate_schema_version
from app.infra.logging_config import setup_logging, get_logger
from app.infra.rate_limiter import InMemoryRateLimiter, RateLimitDependency
from app.infra.metrics import get_metrics_collector
from app.infra.health_checks_async import get_async_health_checker
from app.infra.services import Services
from app.transport.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    ErrorHandlingMiddleware,
)
from app.transport.payment_webhook import payment_webhook_handler
from app.transport.schemas import (
    AcceptOut,
    CancelIn,
    CommissionIn,
    CreateRequestIn,
    DispatchOut,
    EscrowOut,
    FundIn,
    LedgerEntryOut,
    OtpIn,
    RequestOut,
    RequestStatusOut,
    WalletOut,
    WithdrawalIn,
    WithdrawalOut,
)
from app.transport.security import (
    get_actor,
    require_admin_auth,
    require_admin_host,
    require_metrics_auth,
    require_service_token,
    SecurityHeaders,
    sanitize_error_message,
)

setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)

ACCEPT_STATUS_CODES = {
    AcceptOutcomeCode.ASSIGNED_OK: 200,
    AcceptOutcomeCode.ALREADY_ASSIGNED: 409,
    AcceptOutcomeCode.ALREADY_ON_JOB: 409,
    AcceptOutcomeCode.NOT_AVAILABLE: 409,
    AcceptOutcomeCode.REQUEST_NOT_FOUND: 404,
}


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_services(request: Request) -> Services:
    """Get domain services from app state"""
    return request.app.state.services


async def rate_limit_check(request: Request) -> None:
    limiter_dep = getattr(request.app.state, "rate_limiter", None)
    if limiter_dep is not None:
        await limiter_dep(request)


gateway = [Depends(require_service_token), Depends(rate_limit_check)]
admin_only = [Depends(require_admin_host), Depends(require_admin_auth)]


def admin_actor(request: Request) -> Actor:
    """Admin endpoints act as the admin principal; X-Actor-Id is optional."""
    return Actor(id=request.headers.get("X-Actor-Id") or "admin", role=ActorRole.ADMIN)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    logger.info(
        f"Starting application: env={settings.app_env}, run_mode={settings.run_mode}"
    )

    await init_pool()
    logger.info("Database pool initialized")

    if settings.is_production:
        missing = settings.validate_required_for_production()
        if missing:
            logger.critical(f"Missing required production settings: {missing}")
            raise RuntimeError(f"Missing production config: {missing}")

        if not settings.admin_token or len(settings.admin_token) < 32:
            logger.critical("ADMIN_TOKEN must be at least 32 characters in production")
            raise RuntimeError("Weak ADMIN_TOKEN")

        if not settings.require_webhook_validation:
            logger.critical("REQUIRE_WEBHOOK_VALIDATION must be true in production")
            raise RuntimeError("Webhook validation disabled in production")

        if settings.log_level.upper() == "DEBUG":
            logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
            raise RuntimeError("LOG_LEVEL=DEBUG in production")

    from app.transport.security import check_configured_tokens
    check_configured_tokens()

    # Does NOT run migrations: python -m app.infra.migrate
    try:
        schema_result = await validate_schema_version()
        logger.info(
            f"Schema validated: {schema_result['current_version']}",
            extra=schema_result
        )
    except Exception:
        logger.critical(
            "Schema validation failed. Run migrations first: python -m app.infra.migrate",
            exc_info=True
        )
        raise

    from app.infra.services import build_services, build_fanout
    fastapi_app.state.services = build_services()

    rate_limiter = InMemoryRateLimiter(
        max_requests=settings.rate_limit_per_minute,
        window_seconds=60
    )
    fastapi_app.state.rate_limiter = RateLimitDependency(rate_limiter)

    # Outbox worker and sweeper only in "all" or "worker" mode
    job_worker = None
    sweep_loop = None
    if settings.run_mode in ("all", "worker"):
        if settings.job_worker_enabled:
            from app.infra.pg_job_repo_async import get_job_repo
            from app.infra.job_worker import build_job_worker

            job_worker = build_job_worker(get_job_repo(), build_fanout())
            await job_worker.start()
        else:
            logger.info("Job worker skipped (job_worker_enabled=false)")

        if settings.sweep_enabled:
            from app.infra.broadcast_sweeper import BroadcastSweepLoop

            sweep_loop = BroadcastSweepLoop(
                fastapi_app.state.services.sweeper,
                interval=settings.sweep_interval_seconds,
            )
            await sweep_loop.start()
        else:
            logger.info("Broadcast sweeper skipped (sweep_enabled=false)")
    else:
        logger.info(f"Job worker and sweeper skipped (run_mode={settings.run_mode})")

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")

    if sweep_loop is not None:
        await sweep_loop.stop()

    if job_worker is not None:
        await job_worker.stop()

    from app.infra.http_client import close_all_sessions
    await close_all_sessions()

    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Dispatch",
    description="Job dispatch and escrow settlement service",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

# PUT backs /admin/commission
PRODUCTION_CORS_METHODS = ["GET", "POST", "PUT"]

if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=PRODUCTION_CORS_METHODS,
        allow_headers=["Content-Type", "Authorization", "X-Actor-Id", "X-Actor-Role"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    """Typed domain errors carry their own status code and stable code"""
    if isinstance(exc, IntegrityError):
        logger.critical(f"Integrity error: {exc.code}: {exc.detail}", extra={"path": request.url.path})
    elif exc.status_code >= 500:
        logger.error(f"Domain error: {exc.code}: {exc.detail}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.detail},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={"error": sanitize_error_message(exc, settings.is_production)},
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness for load balancers. Minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness probe: critical checks only."""
    health_checker = get_async_health_checker()
    result = await health_checker.run_checks(include_non_critical=False)

    if result["status"] == "unhealthy":
        return JSONResponse(status_code=503, content={"status": "unhealthy"})

    return {"status": "healthy"}


@app.post("/webhooks/payments")
async def webhook_payments(request: Request, services: Services = Depends(get_services)):
    """
    Payment gateway capture webhook - PUBLIC but VALIDATED.

    Signature: X-Webhook-Timestamp + X-Webhook-Signature
    (base64 HMAC-SHA256 over timestamp + raw body).
    """
    return await payment_webhook_handler(request, services.escrow)


# ============================================================================
# REQUEST ENDPOINTS (gateway)
# ============================================================================

@app.post("/requests", status_code=201, dependencies=gateway)
async def create_request(
    payload: CreateRequestIn,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    if actor.role != ActorRole.CUSTOMER:
        raise NotAuthorized("Only customers can create requests")

    created = await services.lifecycle.create_request(
        customer_id=actor.id,
        category=payload.category,
        latitude=payload.latitude,
        longitude=payload.longitude,
        estimated_price=payload.estimated_price,
        address=payload.address,
    )

    dispatch = None
    if services.dispatch_on_create:
        try:
            result = await services.dispatcher.dispatch(created.id)
            created = result.request
            dispatch = DispatchOut.from_domain(result)
        except GeoMatcherUnavailable:
            # Request stays open; the customer app retries POST /dispatch
            logger.warning(f"Dispatch on create deferred, matcher unavailable: request={created.id}")

    return {
        "request": RequestOut.from_domain(created, include_otps=True),
        "dispatch": dispatch,
    }


@app.get("/requests/{request_id}", dependencies=gateway)
async def get_request(
    request_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    found = await services.lifecycle.get_request(request_id, actor)
    is_owner = actor.role == ActorRole.CUSTOMER and actor.id == found.customer_id
    return RequestOut.from_domain(found, include_otps=is_owner)


@app.get("/requests/{request_id}/status", dependencies=gateway)
async def get_request_status(
    request_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    """Lightweight polling view: no customer details, no OTPs."""
    view = await services.lifecycle.get_status(request_id)
    return RequestStatusOut(
        request_id=view.request_id,
        status=view.status.value,
        broadcast_status=view.broadcast_status.value,
        assigned_helper_id=view.assigned_helper_id,
    )


@app.post("/requests/{request_id}/dispatch", dependencies=gateway)
async def dispatch_request(
    request_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    if not actor.is_admin:
        found = await services.lifecycle.get_request(request_id, actor)
        if actor.role != ActorRole.CUSTOMER or actor.id != found.customer_id:
            raise NotAuthorized("Only the customer or an admin can dispatch this request")

    result = await services.dispatcher.dispatch(request_id)
    return DispatchOut.from_domain(result)


@app.post("/requests/{request_id}/accept", dependencies=gateway)
async def accept_request(
    request_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    """
    First accept wins. Losing the race is a normal answer (409 with the
    outcome code), not an error.
    """
    if actor.role != ActorRole.HELPER:
        raise NotAuthorized("Only helpers can accept jobs")

    outcome = await services.arbiter.accept_job(request_id, actor.id)
    body = AcceptOut(
        outcome=outcome.code.value,
        message=outcome.message,
        request_id=request_id,
        assigned_helper_id=outcome.request.assigned_helper_id if outcome.accepted and outcome.request else None,
    )
    return JSONResponse(status_code=ACCEPT_STATUS_CODES[outcome.code], content=body.model_dump())


@app.post("/requests/{request_id}/start", dependencies=gateway)
async def start_request(
    request_id: str,
    payload: OtpIn,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    updated = await services.lifecycle.start(request_id, actor, payload.otp)
    return RequestOut.from_domain(updated)


@app.post("/requests/{request_id}/complete", dependencies=gateway)
async def complete_request(
    request_id: str,
    payload: OtpIn,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    updated = await services.lifecycle.complete(request_id, actor, payload.otp)
    return RequestOut.from_domain(updated)


@app.post("/requests/{request_id}/cancel", dependencies=gateway)
async def cancel_request(
    request_id: str,
    payload: CancelIn,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    updated = await services.lifecycle.cancel(request_id, actor, payload.reason)
    return RequestOut.from_domain(updated)


# ============================================================================
# ESCROW ENDPOINTS (gateway)
# ============================================================================

@app.post("/requests/{request_id}/escrow/fund", status_code=201, dependencies=gateway)
async def fund_escrow(
    request_id: str,
    payload: FundIn,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    escrow = await services.escrow.fund(request_id, payload.amount, payload.payment_reference, actor)
    return EscrowOut.from_domain(escrow)


@app.post("/requests/{request_id}/escrow/release", dependencies=gateway)
async def release_escrow(
    request_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    escrow = await services.escrow.release(request_id, actor)
    return EscrowOut.from_domain(escrow)


@app.post("/requests/{request_id}/escrow/refund", dependencies=gateway)
async def refund_escrow(
    request_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    escrow = await services.escrow.refund(request_id, actor)
    return EscrowOut.from_domain(escrow)


@app.get("/requests/{request_id}/escrow", dependencies=gateway)
async def get_escrow(
    request_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    escrow = await services.escrow.get(request_id, actor)
    return EscrowOut.from_domain(escrow)


# ============================================================================
# WALLET ENDPOINTS (gateway, scoped to the acting customer or helper)
# ============================================================================

@app.get("/wallets/me", dependencies=gateway)
async def get_wallet(
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    account = await services.escrow.wallet(actor)
    return WalletOut.from_domain(account)


@app.get("/wallets/me/entries", dependencies=gateway)
async def get_wallet_entries(
    limit: int | None = Query(default=None, ge=1),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    entries = await services.escrow.wallet_entries(actor, limit)
    return {"entries": [LedgerEntryOut.from_domain(e) for e in entries]}


@app.post("/wallets/me/withdrawals", status_code=201, dependencies=gateway)
async def create_withdrawal(
    payload: WithdrawalIn,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    withdrawal = await services.escrow.withdraw(actor, payload.amount, payload.reference)
    return WithdrawalOut.from_domain(withdrawal)


# ============================================================================
# INTERNAL ENDPOINTS (metrics token or internal network)
# ============================================================================

@app.get("/health/detailed", dependencies=[Depends(require_metrics_auth)])
async def detailed_health():
    health_checker = get_async_health_checker()
    return await health_checker.run_checks(include_non_critical=True)


@app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics():
    collector = get_metrics_collector()
    return collector.get_metrics()


# ============================================================================
# ADMIN ENDPOINTS (admin token + admin host in production)
# ============================================================================

@app.post("/admin/sweep", dependencies=admin_only)
async def admin_sweep(services: Services = Depends(get_services)):
    """Run one broadcast expiry pass now."""
    result = await services.sweeper.expire_stale()
    return {
        "expired_offers": len(result.expired_offers),
        "expired_broadcasts": len(result.expired_broadcasts),
    }


@app.post("/admin/reconcile", dependencies=admin_only)
async def admin_reconcile(services: Services = Depends(get_services)):
    """
    Repair broadcast state from assignments, then audit the ledger.
    Ledger mismatches are reported (500 + CRITICAL log), never corrected.
    """
    report = await services.reconciler.run(raise_on_mismatch=True)
    return {
        "ledger_ok": report.ledger_ok,
        "repair": {
            "notifications_accepted": report.repair.notifications_accepted,
            "notifications_expired": report.repair.notifications_expired,
            "helpers_marked_on_job": report.repair.helpers_marked_on_job,
            "helpers_released": report.repair.helpers_released,
        },
    }


@app.post("/admin/requests/{request_id}/rebroadcast", dependencies=admin_only)
async def admin_rebroadcast(
    request_id: str,
    actor: Actor = Depends(admin_actor),
    services: Services = Depends(get_services),
):
    """Clear an assignment that never started and broadcast again."""
    await services.lifecycle.release_assignment(request_id, actor)
    result = await services.dispatcher.dispatch(request_id)
    return DispatchOut.from_domain(result)


@app.get("/admin/commission", dependencies=admin_only)
async def admin_get_commission(services: Services = Depends(get_services)):
    return {"commission_rate_bps": await services.escrow.commission.current_rate_bps()}


@app.put("/admin/commission", dependencies=admin_only)
async def admin_set_commission(
    payload: CommissionIn,
    actor: Actor = Depends(admin_actor),
    services: Services = Depends(get_services),
):
    """Applies to the next release; escrows already settled keep their recorded rate."""
    previous = await services.escrow.commission.current_rate_bps()
    await services.escrow.commission.set_rate_bps(payload.rate_bps)
    logger.warning(
        f"Commission rate changed: {previous} -> {payload.rate_bps} bps by admin={actor.id}"
    )
    return {"commission_rate_bps": payload.rate_bps, "previous_rate_bps": previous}


@app.post("/admin/metrics/reset", dependencies=admin_only)
def admin_reset_metrics():
    logger.warning("Metrics reset triggered")
    get_metrics_collector().reset()
    return {"ok": True, "message": "Metrics reset"}


@app.get("/admin/jobs", dependencies=admin_only)
async def admin_jobs_status(
    status: str | None = None,
    limit: int = 50,
):
    """Outbox counts by status and recent jobs."""
    from app.infra.pg_job_repo_async import get_job_repo

    repo = get_job_repo()
    counts = await repo.count_by_status()
    recent = await repo.get_recent(limit=limit, status=status)

    return {
        "counts": counts,
        "recent": [
            {
                "id": j.id,
                "type": j.job_type,
                "status": j.status,
                "attempts": j.attempts,
                "max_attempts": j.max_attempts,
                "error": j.error_message,
                "created_at": j.created_at.isoformat(),
                "scheduled_at": j.scheduled_at.isoformat(),
            }
            for j in recent
        ],
    }


@app.post("/admin/jobs/cleanup", dependencies=admin_only)
async def admin_jobs_cleanup():
    """Purge old completed/failed jobs, reset stale running ones, prune delivery records."""
    from app.infra.pg_job_repo_async import get_job_repo
    from app.infra.pg_notification_repo_async import get_notification_repo

    repo = get_job_repo()
    completed = await repo.cleanup_completed(ttl_days=settings.job_cleanup_completed_ttl_days)
    failed = await repo.cleanup_failed(ttl_days=settings.job_cleanup_failed_ttl_days)
    stale = await repo.reset_stale_running(timeout_seconds=settings.job_worker_stale_timeout)

    try:
        deliveries = await get_notification_repo().cleanup_old(ttl_days=settings.job_cleanup_failed_ttl_days)
    except Exception as exc:
        logger.warning(f"Delivery record cleanup failed (non-critical): {exc}")
        deliveries = "error"

    return {
        "deleted_completed": completed,
        "deleted_failed": failed,
        "reset_stale": stale,
        "deleted_deliveries": deliveries,
    }


@app.get("/", include_in_schema=False)
def root_public():
    return HTMLResponse(
        "<!doctype html><html><head><meta charset='utf-8'>"
        "<title>Dispatch</title></head><body>"
        "<h3>Dispatch</h3><p>Service is running.</p>"
        "</body></html>"
    )


# ============================================================================
# CATCH-ALL (Return 404 for unknown routes)
# ============================================================================

@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def catch_all(path: str):
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
