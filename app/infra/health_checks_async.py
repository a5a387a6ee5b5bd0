# app/infra/health_checks_async.py
from __future__ import annotations
import time
from typing import Dict, Any
from enum import Enum

from app.infra.db_async import get_pool
from app.infra.logging_config import get_logger
from app.infra.schema_validator import get_schema_info

logger = get_logger(__name__)

REQUIRED_TABLES = (
    "service_requests",
    "broadcast_notifications",
    "helper_profiles",
    "wallet_accounts",
    "escrows",
    "ledger_entries",
    "jobs",
    "notification_deliveries",
)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AsyncHealthCheck:
    """Base class for async health checks"""

    def __init__(self, name: str, critical: bool = True):
        self.name = name
        self.critical = critical

    async def check(self) -> Dict[str, Any]:
        """
        Perform health check.
        Returns dict with 'status', 'details', and optionally 'error'
        """
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Check database connectivity and that every dispatch/escrow table exists"""

    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        start = time.time()

        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                result = await conn.fetchval("SELECT 1")
                if result != 1:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Unexpected query result",
                        "error": f"Expected 1, got {result}"
                    }

                missing_tables = []
                for table in REQUIRED_TABLES:
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None:
                        missing_tables.append(table)

                if missing_tables:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Missing required tables",
                        "error": f"Missing: {', '.join(missing_tables)}"
                    }

                duration = time.time() - start
                if duration > 1.0:
                    return {
                        "status": HealthStatus.DEGRADED,
                        "details": f"Slow database response: {duration:.3f}s",
                        "response_time": duration
                    }

                return {
                    "status": HealthStatus.HEALTHY,
                    "details": "Database operational",
                    "response_time": duration
                }

        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200]
            }


class AsyncBroadcastHealthCheck(AsyncHealthCheck):
    """Broadcasts past their deadline mean the sweeper is not keeping up."""

    def __init__(self, overdue_grace_seconds: int = 120):
        super().__init__("broadcasts", critical=False)
        self.overdue_grace_seconds = overdue_grace_seconds

    async def check(self) -> Dict[str, Any]:
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                active = await conn.fetchval(
                    "SELECT COUNT(*) FROM service_requests WHERE broadcast_status = 'broadcasting'"
                )
                overdue = await conn.fetchval(
                    """
                    SELECT COUNT(*) FROM service_requests
                    WHERE broadcast_status = 'broadcasting'
                      AND broadcast_expires_at < now() - make_interval(secs => $1)
                    """,
                    self.overdue_grace_seconds,
                )

            status = HealthStatus.DEGRADED if overdue else HealthStatus.HEALTHY
            return {
                "status": status,
                "details": "Broadcast sweep lagging" if overdue else "Broadcasts operational",
                "active_broadcasts": active,
                "overdue_broadcasts": overdue,
            }

        except Exception as exc:
            logger.error("Broadcast health check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Broadcast check failed",
                "error": str(exc)[:200]
            }


class AsyncOutboxHealthCheck(AsyncHealthCheck):
    """Outbox backlog and dead notifications."""

    def __init__(self):
        super().__init__("outbox", critical=False)

    async def check(self) -> Dict[str, Any]:
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                rows = await conn.fetch("SELECT status, COUNT(*) AS cnt FROM jobs GROUP BY status")
            counts = {r["status"]: r["cnt"] for r in rows}

            status = HealthStatus.DEGRADED if counts.get("failed") else HealthStatus.HEALTHY
            return {
                "status": status,
                "details": "Outbox operational",
                "jobs": counts,
            }

        except Exception as exc:
            logger.error("Outbox health check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Outbox check failed",
                "error": str(exc)[:200]
            }


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self):
        self.checks: list[AsyncHealthCheck] = [
            AsyncDatabaseHealthCheck(),
            AsyncBroadcastHealthCheck(),
            AsyncOutboxHealthCheck(),
        ]

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            {
                "status": "healthy" | "degraded" | "unhealthy",
                "checks": {...},
                "schema": {...},
                "timestamp": float
            }
        """
        results = {}
        overall_status = HealthStatus.HEALTHY

        for check in self.checks:
            if not include_non_critical and not check.critical:
                continue

            result = await check.check()
            results[check.name] = result

            if result["status"] == HealthStatus.UNHEALTHY and check.critical:
                overall_status = HealthStatus.UNHEALTHY
            elif result["status"] == HealthStatus.DEGRADED and overall_status == HealthStatus.HEALTHY:
                overall_status = HealthStatus.DEGRADED

        schema_info = await get_schema_info()

        return {
            "status": overall_status.value,
            "checks": results,
            "schema": schema_info,
            "timestamp": time.time()
        }


_async_health_checker = AsyncHealthChecker()


def get_async_health_checker() -> AsyncHealthChecker:
    """Get the global async health checker"""
    return _async_health_checker
