# app/transport/security.py
"""
Security utilities for the dispatch API.

Security layers:
- Gateway endpoints: service token (Bearer) + acting principal headers
  (X-Actor-Id / X-Actor-Role) set by the API gateway
- Admin endpoints: admin token (Bearer) and/or HMAC request signing
- Metrics/health: metrics token or internal network
- Payment webhook: base64 HMAC-SHA256 over timestamp + raw body

All secret comparisons are constant-time.
"""
import base64
import hashlib
import hmac
import ipaddress
import secrets
import time
from functools import lru_cache

from fastapi import Request, HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config import settings
from app.core.dispatch.domain import Actor, ActorRole
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

MIN_TOKEN_LENGTH = 32
WEAK_TOKEN_PATTERNS = [
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
]

# Roles a gateway may assert; "system" is internal only
GATEWAY_ROLES = frozenset({ActorRole.CUSTOMER, ActorRole.HELPER, ActorRole.ADMIN})

bearer_scheme = HTTPBearer(
    scheme_name="Admin Token",
    description="Enter your admin token (without 'Bearer ' prefix)",
    auto_error=False,
)

service_bearer_scheme = HTTPBearer(
    scheme_name="Service Token",
    description="Gateway service token (without 'Bearer ' prefix)",
    auto_error=False,
)

metrics_bearer_scheme = HTTPBearer(
    scheme_name="Metrics Token",
    description="Enter your metrics token (without 'Bearer ' prefix)",
    auto_error=False,
)


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """
    Returns list of warnings (empty if token is strong).

    Checks minimum length, common weak patterns and character diversity.
    """
    warnings = []

    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(
            f"{token_name} is too short ({len(token)} chars). "
            f"Minimum recommended: {MIN_TOKEN_LENGTH} chars"
        )

    token_lower = token.lower()
    for pattern in WEAK_TOKEN_PATTERNS:
        if pattern in token_lower:
            warnings.append(
                f"{token_name} contains weak pattern '{pattern}'. "
                "Use a cryptographically random token"
            )
            break

    has_upper = any(c.isupper() for c in token)
    has_lower = any(c.islower() for c in token)
    has_digit = any(c.isdigit() for c in token)

    if not (has_upper and has_lower and has_digit):
        warnings.append(
            f"{token_name} has low character diversity. "
            "Recommended: mix of uppercase, lowercase, and numbers"
        )

    return warnings


def generate_secure_token(length: int = 32) -> str:
    """URL-safe random token for SERVICE_TOKEN / ADMIN_TOKEN / METRICS_TOKEN."""
    return secrets.token_urlsafe(length)


def check_configured_tokens():
    """Log warnings for weak configured secrets. Called at startup."""
    configured = [
        ("ADMIN_TOKEN", settings.admin_token),
        ("SERVICE_TOKEN", settings.service_token),
        ("METRICS_TOKEN", settings.metrics_token),
        ("PAYMENT_WEBHOOK_SECRET", settings.payment_webhook_secret),
    ]
    for name, value in configured:
        if not value:
            continue
        for warning in validate_token_strength(value, name):
            logger.warning(f"SECURITY: {warning}")


# =============================================================================
# Gateway principal
# =============================================================================

def require_service_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(service_bearer_scheme),
):
    """
    Gateway endpoints require the shared service token.

    Client example:
        curl -H "Authorization: Bearer $SERVICE_TOKEN" \\
             -H "X-Actor-Id: <uuid>" -H "X-Actor-Role: helper" ...
    """
    if not settings.service_token:
        logger.critical("SERVICE_TOKEN not configured but gateway endpoint accessed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable"
        )

    if not credentials or not hmac.compare_digest(credentials.credentials, settings.service_token):
        logger.warning("Gateway endpoint accessed with missing or invalid service token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_actor(request: Request) -> Actor:
    """
    Acting principal asserted by the gateway.

    Missing headers -> 401; unknown or internal-only role -> 403.
    """
    actor_id = (request.headers.get("X-Actor-Id") or "").strip()
    role_raw = (request.headers.get("X-Actor-Role") or "").strip().lower()

    if not actor_id or not role_raw:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Actor-Id or X-Actor-Role headers",
        )

    try:
        role = ActorRole(role_raw)
    except ValueError:
        role = None

    if role not in GATEWAY_ROLES:
        logger.warning(f"Rejected actor role from gateway: {role_raw[:16]}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    return Actor(id=actor_id, role=role)


# =============================================================================
# HMAC Request Signing for admin endpoints
# =============================================================================
# Client sends:
#   X-Timestamp: 1699999999
#   X-Signature: HMAC-SHA256(secret, timestamp.method.path.sha256(body))
# =============================================================================

HMAC_MAX_AGE_SECONDS = 300


def compute_request_signature(
    secret: str,
    timestamp: str,
    method: str,
    path: str,
    body: bytes = b"",
) -> str:
    """Hex-encoded HMAC-SHA256 over ``timestamp.METHOD.path.sha256(body)``."""
    body_hash = hashlib.sha256(body).hexdigest()
    signing_string = f"{timestamp}.{method.upper()}.{path}.{body_hash}"

    return hmac.new(
        secret.encode(),
        signing_string.encode(),
        hashlib.sha256
    ).hexdigest()


def verify_request_signature(
    secret: str,
    timestamp: str,
    signature: str,
    method: str,
    path: str,
    body: bytes = b"",
) -> tuple[bool, str | None]:
    """
    Returns:
        (is_valid, error_message)
    """
    try:
        request_time = int(timestamp)
    except ValueError:
        return False, "Invalid timestamp format"

    age = abs(int(time.time()) - request_time)
    if age > HMAC_MAX_AGE_SECONDS:
        return False, f"Request expired (age: {age}s, max: {HMAC_MAX_AGE_SECONDS}s)"

    expected = compute_request_signature(secret, timestamp, method, path, body)
    if not hmac.compare_digest(signature, expected):
        return False, "Invalid signature"

    return True, None


def require_admin_host(request: Request):
    """
    In production with ADMIN_HOST configured, admin endpoints answer only
    on that host; every other host gets 404.
    """
    if not settings.is_production or not settings.admin_host:
        return

    request_host = request.headers.get("host", "").split(":")[0]
    if request_host != settings.admin_host:
        logger.warning(
            f"Admin endpoint accessed from wrong host: {request_host}",
            extra={"request_host": request_host, "admin_host": settings.admin_host}
        )
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")


def _verify_bearer_token(credentials: HTTPAuthorizationCredentials | None) -> tuple[bool, str | None]:
    if not credentials:
        return False, "Missing Authorization header"

    if not hmac.compare_digest(credentials.credentials, settings.admin_token):
        return False, "Invalid token"

    return True, None


async def _verify_hmac_signature(request: Request) -> tuple[bool, str | None]:
    timestamp = request.headers.get("X-Timestamp")
    signature = request.headers.get("X-Signature")

    if not timestamp or not signature:
        return False, "Missing X-Timestamp or X-Signature headers"

    body = b""
    if request.method in ("POST", "PUT", "PATCH"):
        body = await request.body()

    return verify_request_signature(
        secret=settings.admin_token,
        timestamp=timestamp,
        signature=signature,
        method=request.method,
        path=request.url.path,
        body=body,
    )


async def require_admin_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    """
    Admin authentication via Bearer token and/or HMAC signing,
    selected by ADMIN_AUTH_MODE ("bearer" | "hmac" | "both").

    Bearer:
        curl -H "Authorization: Bearer $ADMIN_TOKEN" http://host/admin/sweep
    HMAC:
        X-Timestamp + X-Signature headers (see compute_request_signature)
    """
    if not settings.admin_token:
        logger.critical("ADMIN_TOKEN not configured but admin endpoint accessed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable"
        )

    auth_mode = settings.admin_auth_mode
    bearer_error = hmac_error = None

    if auth_mode in ("bearer", "both"):
        bearer_valid, bearer_error = _verify_bearer_token(credentials)
        if bearer_valid:
            return

    if auth_mode in ("hmac", "both"):
        hmac_valid, hmac_error = await _verify_hmac_signature(request)
        if hmac_valid:
            return

    logger.warning(
        f"Admin auth failed: mode={auth_mode}, bearer={bearer_error}, hmac={hmac_error}",
        extra={"path": request.url.path}
    )
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required",
        headers={"WWW-Authenticate": "Bearer"},
    )


# =============================================================================
# Internal network / metrics
# =============================================================================

@lru_cache(maxsize=1)
def _get_internal_networks() -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    networks = []
    for cidr in settings.internal_networks.split(","):
        cidr = cidr.strip()
        if not cidr:
            continue
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError as e:
            logger.warning(f"Invalid CIDR in INTERNAL_NETWORKS: {cidr} - {e}")
    return networks


def _get_client_ip(request: Request) -> str:
    """
    Real client IP. X-Forwarded-For / X-Real-IP are honoured only with
    TRUST_PROXY_HEADERS=true.
    """
    client_ip = request.client.host if request.client else "unknown"

    if settings.trust_proxy_headers:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            client_ip = forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip and not forwarded_for:
            client_ip = real_ip.strip()

    return client_ip


def _is_internal_ip(ip_str: str) -> bool:
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        logger.warning(f"Invalid IP address format: {ip_str}")
        return False

    return any(ip in network for network in _get_internal_networks())


def require_internal_network(request: Request):
    """Only allow access from INTERNAL_NETWORKS (comma-separated CIDRs)."""
    client_ip = _get_client_ip(request)

    if _is_internal_ip(client_ip):
        return

    logger.warning(
        f"Access denied from non-internal IP: {client_ip}",
        extra={"client_ip": client_ip, "allowed_networks": settings.internal_networks}
    )
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def require_metrics_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer_scheme),
):
    """
    Metrics/monitoring endpoints:
    1. METRICS_TOKEN set: require it as a Bearer token
    2. otherwise: require internal network access
    """
    if settings.metrics_token:
        if not credentials:
            logger.warning("Metrics endpoint accessed without token")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required",
                headers={"WWW-Authenticate": "Bearer"},
            )

        if not hmac.compare_digest(credentials.credentials, settings.metrics_token):
            logger.warning("Invalid metrics token attempt")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return

    require_internal_network(request)


# =============================================================================
# Payment gateway webhook signature
# =============================================================================
# X-Webhook-Timestamp: unix seconds
# X-Webhook-Signature: base64(HMAC-SHA256(secret, timestamp + raw_body))
# =============================================================================

def compute_payment_signature(secret: str, timestamp: str, body: bytes) -> str:
    digest = hmac.new(secret.encode(), timestamp.encode() + body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_payment_signature(
    secret: str,
    timestamp: str | None,
    signature: str | None,
    body: bytes,
    max_age_seconds: int = 300,
    now: float | None = None,
) -> tuple[bool, str | None]:
    """
    Returns:
        (is_valid, error_message)
    """
    if not timestamp or not signature:
        return False, "Missing signature headers"

    try:
        sent_at = int(timestamp)
    except ValueError:
        return False, "Invalid timestamp format"

    current = time.time() if now is None else now
    if abs(current - sent_at) > max_age_seconds:
        return False, "Timestamp outside allowed window"

    expected = compute_payment_signature(secret, timestamp, body)
    if not hmac.compare_digest(signature.encode(), expected.encode()):
        AppMetrics.webhook_validation_failed("payments")
        return False, "Invalid signature"

    return True, None


class SecurityHeaders:
    """OWASP recommended headers for a JSON API."""

    @staticmethod
    def add_security_headers(response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"

        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"

        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"

        response.headers["Cross-Origin-Opener-Policy"] = "same-origin"
        response.headers["Cross-Origin-Resource-Policy"] = "same-origin"

        if "Server" in response.headers:
            del response.headers["Server"]

        return response


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """Detailed messages in dev, generic ones in production."""
    if not is_production:
        return str(error)

    generic_messages = {
        "ValueError": "Invalid input",
        "KeyError": "Invalid request",
        "PostgresError": "Service temporarily unavailable",
        "ConnectionError": "Service temporarily unavailable",
        "TimeoutError": "Request timeout",
    }

    return generic_messages.get(type(error).__name__, "An error occurred")
