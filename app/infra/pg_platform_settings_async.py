# app/infra/pg_platform_settings_async.py
"""
Platform settings (asyncpg): the live commission rate.

Read on every release, no caching: an operator change to
``platform_settings`` applies to the next settlement.
"""
from __future__ import annotations

from app.config import settings
from app.core.escrow.commission import CommissionRateProvider, percent_to_bps, validate_rate_bps
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

COMMISSION_BPS_KEY = "commission_rate_bps"
COMMISSION_PERCENT_KEY = "commission_percent"


class PostgresCommissionRateProvider(CommissionRateProvider):
    """
    Resolution order: ``commission_rate_bps`` row, ``commission_percent``
    row, then ``DEFAULT_COMMISSION_RATE_BPS``.
    """

    def __init__(self, default_rate_bps: int | None = None):
        self.default_rate_bps = validate_rate_bps(
            settings.default_commission_rate_bps if default_rate_bps is None else default_rate_bps
        )

    @retry_on_transient_error(max_retries=2)
    async def current_rate_bps(self) -> int:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT key, value FROM platform_settings WHERE key = ANY($1::text[])",
                [COMMISSION_BPS_KEY, COMMISSION_PERCENT_KEY],
            )
        values = {r["key"]: r["value"] for r in rows}

        try:
            if COMMISSION_BPS_KEY in values:
                return validate_rate_bps(int(values[COMMISSION_BPS_KEY].strip()))
            if COMMISSION_PERCENT_KEY in values:
                return percent_to_bps(values[COMMISSION_PERCENT_KEY])
        except ValueError:
            logger.error(
                f"Invalid commission setting {values}, using default {self.default_rate_bps} bps"
            )
        return self.default_rate_bps

    async def set_rate_bps(self, rate_bps: int) -> None:
        validate_rate_bps(rate_bps)
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO platform_settings (key, value, updated_at)
                VALUES ($1, $2, now())
                ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = now()
                """,
                COMMISSION_BPS_KEY, str(rate_bps),
            )
        logger.info(f"Commission rate set to {rate_bps} bps")
