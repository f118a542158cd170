"""Security headers, origin validation and the global per-IP rate limit.

Every response gets the hardened header set. State-changing ``/api/``
requests from a foreign origin are rejected with 403 and logged as CSRF
violations. Every ``/api/`` request counts against the ``ip`` rate limit.
"""

import logging
from typing import Callable, Optional
from urllib.parse import urlsplit

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from config import get_settings
from guardrails.audit_logger import SecurityAuditLog
from middleware.rate_limit import RateLimiter, RateLimitType
from services.ip_hash import extract_security_context, get_client_ip, hash_ip

logger = logging.getLogger(__name__)

LOCAL_ORIGINS = ["http://localhost:3000", "http://localhost:3001"]
PREVIEW_ORIGIN_SUFFIX = ".vercel.app"

PERMISSIONS_POLICY = (
    "accelerometer=(), camera=(), geolocation=(), gyroscope=(), "
    "magnetometer=(), microphone=(), payment=(), usb=()"
)
HSTS_VALUE = "max-age=31536000; includeSubDomains; preload"

_SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


def build_csp(is_local: bool) -> str:
    """Content-Security-Policy; local hosts get eval and localhost sockets."""
    connect_src = (
        "connect-src 'self' https://api.openai.com https://api.anthropic.com https://api.x.ai "
        "https://vercel.live https://*.vercel.com https://*.sentry.io"
    )
    if is_local:
        script_src = "script-src 'self' 'unsafe-eval' 'unsafe-inline' https://vercel.live https://*.vercel-scripts.com"
        connect_src += " ws://localhost:* http://localhost:*"
    else:
        script_src = "script-src 'self' https://vercel.live https://*.vercel-scripts.com"

    directives = [
        "default-src 'self'",
        script_src,
        "style-src 'self' 'unsafe-inline'",
        "img-src 'self' data: blob: https:",
        "font-src 'self' data:",
        connect_src,
        "frame-src 'self'",
        "frame-ancestors 'none'",
        "form-action 'self'",
        "base-uri 'self'",
        "object-src 'none'",
    ]
    if not is_local:
        directives.append("upgrade-insecure-requests")
    return "; ".join(directives)


def get_security_headers(is_local: bool) -> dict[str, str]:
    headers = {
        "Content-Security-Policy": build_csp(is_local),
        "X-Frame-Options": "DENY",
        "X-Content-Type-Options": "nosniff",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "X-XSS-Protection": "1; mode=block",
        "Permissions-Policy": PERMISSIONS_POLICY,
    }
    if not is_local:
        headers["Strict-Transport-Security"] = HSTS_VALUE
    return headers


def allowed_origins() -> list[str]:
    origins = [get_settings().app_url, *LOCAL_ORIGINS]
    return list(dict.fromkeys(o for o in origins if o))


def validate_origin(origin: Optional[str], referer: Optional[str]) -> bool:
    """True when the request comes from our own front end.

    Requests with neither header (server-to-server, curl) are allowed.
    """
    if not origin and not referer:
        return True

    check_origin = origin
    if not check_origin and referer:
        parts = urlsplit(referer)
        check_origin = f"{parts.scheme}://{parts.netloc}" if parts.netloc else None
    if not check_origin:
        return True

    return check_origin in allowed_origins() or check_origin.endswith(PREVIEW_ORIGIN_SUFFIX)


def _is_local_request(request: Request) -> bool:
    if not get_settings().is_production:
        return True
    host = request.headers.get("host", "")
    return "localhost" in host or "127.0.0.1" in host


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Origin check and IP rate limit for the API, headers for everything."""

    def __init__(self, app, *, rate_limit_api: bool = True) -> None:
        super().__init__(app)
        self.rate_limit_api = rate_limit_api

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        is_local = _is_local_request(request)
        path = request.url.path

        if path.startswith("/api/"):
            rejection = await self._guard_api_request(request, path)
            if rejection is not None:
                self._apply_headers(rejection, is_local)
                return rejection

        response: Response = await call_next(request)
        self._apply_headers(response, is_local)
        return response

    async def _guard_api_request(self, request: Request, path: str) -> Optional[Response]:
        audit_log: Optional[SecurityAuditLog] = getattr(request.app.state, "audit_log", None)

        if request.method not in _SAFE_METHODS:
            origin = request.headers.get("origin")
            referer = request.headers.get("referer")
            if not validate_origin(origin, referer):
                logger.error(f"CSRF violation on {path}: origin={origin}, referer={referer}")
                if audit_log is not None:
                    audit_log.log_csrf_violation(extract_security_context(request.headers), path, "origin_mismatch")
                return JSONResponse({"error": "Invalid origin"}, status_code=403)

        rate_limiter: Optional[RateLimiter] = getattr(request.app.state, "rate_limiter", None)
        if not self.rate_limit_api or rate_limiter is None:
            return None

        ip_hash = hash_ip(get_client_ip(request.headers))
        result = await rate_limiter.check_rate_limit(ip_hash, RateLimitType.IP)
        if result.allowed:
            return None

        logger.warning(f"IP rate limit exceeded on {path}")
        if audit_log is not None:
            audit_log.log_rate_limit_violation(
                extract_security_context(request.headers),
                path,
                RateLimitType.IP.value,
                result.count,
                result.limit,
            )
        return JSONResponse(
            {"error": "Too many requests"},
            status_code=429,
            headers=RateLimiter.headers_for(result),
        )

    @staticmethod
    def _apply_headers(response: Response, is_local: bool) -> None:
        for name, value in get_security_headers(is_local).items():
            response.headers.setdefault(name, value)
