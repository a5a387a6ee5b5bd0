# app/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "worker"] = "all"
    log_level: str = "INFO"

    # Database
    expected_schema_version: str = "003_withdrawals.sql"  # Update on deploy when new migrations are added
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 5000  # Short: helpers prefer a fast "lost the race" over waiting
    pg_idle_in_tx_timeout_ms: int = 10000

    # Security
    # service_token - shared with the API gateway that fronts customer/helper apps
    # admin_token   - operator endpoints (sweep, reconcile, rebroadcast)
    service_token: str | None = None
    admin_token: str | None = None
    allowed_origins: list[str] = ["*"]
    rate_limit_per_minute: int = 120
    admin_host: str | None = None  # e.g., "dispatch-admin.example.com" - admin endpoints only accessible on this host

    # Admin Authentication Mode
    # "bearer" - Simple Bearer token (Authorization: Bearer <token>)
    # "hmac" - HMAC request signing (X-Timestamp + X-Signature headers)
    # "both" - Accept either method (useful during migration)
    admin_auth_mode: Literal["bearer", "hmac", "both"] = "both"

    # Geo-Matcher (external ranking collaborator)
    geo_matcher_url: str | None = None  # e.g., https://matcher.internal/rank
    geo_matcher_timeout_seconds: float = 3.0
    geo_matcher_retries: int = 2
    geo_matcher_base_retry_delay: float = 0.2

    # Dispatch
    dispatch_max_candidates: int = 20
    dispatch_max_radius_km: float = 15.0
    broadcast_window_seconds: int = 1800  # 30 minutes
    sweep_enabled: bool = False           # Enable explicitly in worker service
    sweep_interval_seconds: float = 15.0
    dispatch_on_create: bool = True       # Broadcast immediately when a request is created

    # Escrow
    # Fallback only; the live rate is read from platform_settings at release time.
    default_commission_rate_bps: int = 1000  # 10%
    auto_release_on_completion: bool = True
    min_withdrawal_amount: int = 10_000  # Minor units (100.00)
    wallet_history_limit: int = 50
    external_clearing_account_id: str = "00000000-0000-0000-0000-00000000ffff"
    platform_account_id: str = "00000000-0000-0000-0000-000000000000"

    # Payment capture webhook
    payment_webhook_secret: str | None = None
    payment_webhook_max_age_seconds: int = 300

    # Push delivery (FCM)
    push_enabled: bool = True
    fcm_endpoint: str = "https://fcm.googleapis.com/fcm/send"
    fcm_server_key: str | None = None
    push_timeout_seconds: float = 5.0

    # Monitoring & Metrics
    enable_metrics: bool = True
    metrics_token: str | None = None  # Optional token for /metrics, /health/detailed (if not set, uses internal network check)

    # Internal Network Access (for metrics/health endpoints when no token)
    # Comma-separated CIDR ranges, e.g. "172.16.0.0/12,10.0.0.0/8"
    # Default: RFC1918 private ranges + localhost
    internal_networks: str = "10.0.0.0/8,172.16.0.0/12,192.168.0.0/16,127.0.0.0/8,::1/128"
    # SECURITY: Only set to true if behind a trusted reverse proxy (nginx, cloudflared, etc.)
    # When false, uses direct client IP - safer default, prevents X-Forwarded-For spoofing
    trust_proxy_headers: bool = False

    # Outbox Worker (DB-backed queue)
    job_worker_enabled: bool = False          # Master switch - enable explicitly in worker service
    job_worker_poll_interval: float = 1.0     # Seconds between polls when idle
    job_worker_batch_size: int = 10           # Jobs claimed per poll cycle
    job_worker_base_retry_delay: float = 5.0  # Base delay for exponential backoff (seconds)
    job_worker_stale_timeout: int = 300       # Reset jobs stuck 'running' for this long (seconds)
    job_cleanup_completed_ttl_days: int = 7   # Delete completed jobs older than N days
    job_cleanup_failed_ttl_days: int = 30     # Delete failed jobs older than N days
    notify_max_attempts: int = 5

    # Feature Flags
    require_webhook_validation: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"host={self.pghost} port={self.pgport} "
            f"dbname={self.pgdatabase} user={self.pguser} "
            f"password={self.pgpassword} "
            f"connect_timeout={self.pg_connect_timeout} "
            f"options='-c statement_timeout={self.pg_statement_timeout_ms} "
            f"-c idle_in_transaction_session_timeout={self.pg_idle_in_tx_timeout_ms}'"
        )

    @property
    def push_configured(self) -> bool:
        return bool(self.push_enabled and self.fcm_server_key)

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("admin_token", self.admin_token),
            ("service_token", self.service_token),
            ("payment_webhook_secret", self.payment_webhook_secret),
            ("geo_matcher_url", self.geo_matcher_url),
        ]

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing

def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    # --- Admin / Security ---
    if s.admin_auth_mode in ("hmac", "both") and not s.admin_token:
        warnings.append("admin_auth_mode requires a shared secret, but admin_token is empty.")

    if not s.service_token:
        warnings.append("service_token is not set (request endpoints will reject every call).")

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    # --- Proxy headers trust ---
    if s.trust_proxy_headers:
        warnings.append(
            "trust_proxy_headers=True: ensure you are behind a trusted reverse proxy, "
            "otherwise X-Forwarded-For spoofing is possible."
        )

    # --- Metrics exposure ---
    if s.enable_metrics and not s.metrics_token:
        warnings.append(
            "enable_metrics=True but metrics_token is not set: metrics/health protection relies on internal_networks."
        )

    # --- Payments ---
    if not s.payment_webhook_secret and s.require_webhook_validation:
        warnings.append("require_webhook_validation=True but payment_webhook_secret is not set.")

    if not 0 <= s.default_commission_rate_bps <= 10000:
        warnings.append(
            f"default_commission_rate_bps={s.default_commission_rate_bps} is outside 0..10000."
        )

    # --- Dispatch ---
    if not s.geo_matcher_url:
        warnings.append("geo_matcher_url is not set (dispatch will find no candidates).")

    if s.push_enabled and not s.fcm_server_key:
        warnings.append("push_enabled=True but fcm_server_key is missing (in-app notifications only).")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
