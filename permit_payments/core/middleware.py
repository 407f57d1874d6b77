"""
FastAPI Middleware

- Correlation ID injection (X-Correlation-ID in and out)
- Request logging with provider object ids masked
- Error responses for AppException and unexpected exceptions
- Security headers, plus no-store caching on the payment API
- Per-IP sliding-window rate limit on the webhook endpoint
"""
import math
import re
import time
from collections import deque
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from permit_payments.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id
)
from permit_payments.core.exceptions import (
    AppException,
    ErrorCode,
    RateLimitExceededError,
    SecurityRejection,
)

logger = get_logger(__name__)

# Provider object ids in URL paths (pi_..., cus_..., evt_...)
_PROVIDER_ID_IN_PATH_RE = re.compile(r"\b(pi|cus|evt|seti)_([A-Za-z0-9]{4})[A-Za-z0-9]+")

# Caller-supplied correlation ids end up in every log line
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")

_QUIET_PATHS = ("/health", "/health/ready")


def _mask_path_ids(path: str) -> str:
    """pi_3Nx8abcdef... → pi_3Nx8****"""
    return _PROVIDER_ID_IN_PATH_RE.sub(r"\1_\2****", path)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reuse a well-formed X-Correlation-ID from the caller, otherwise generate one"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = request.headers.get("X-Correlation-ID")
        if incoming and not _CORRELATION_ID_RE.match(incoming):
            incoming = None
        correlation_id = set_correlation_id(incoming)
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line per finished request; probes are logged at DEBUG"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.monotonic()
        path = request.url.path
        log_data = {
            "method": request.method,
            "path": _mask_path_ids(path),
            "client_host": request.client.host if request.client else None,
        }
        if "/webhooks" in path:
            log_data["signature_present"] = "stripe-signature" in request.headers

        try:
            response = await call_next(request)
        except Exception as e:
            log_data["duration_seconds"] = round(time.monotonic() - start, 4)
            log_data["error"] = str(e)
            logger.error(f"Request failed: {request.method} {log_data['path']}", extra_data=log_data, exc_info=True)
            raise

        log_data["status_code"] = response.status_code
        log_data["duration_seconds"] = round(time.monotonic() - start, 4)
        message = f"Request completed: {request.method} {log_data['path']}"
        if response.status_code >= 400:
            logger.warning(message, extra_data=log_data)
        elif path in _QUIET_PATHS:
            logger.debug(message, extra_data=log_data)
        else:
            logger.info(message, extra_data=log_data)
        return response


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Render an AppException; rule detail of a SecurityRejection stays in the logs"""
    log_data = {
        "error_code": exc.error_code.value,
        "message": exc.message,
        "details": exc.details,
        "path": _mask_path_ids(request.url.path),
    }
    headers = {"X-Correlation-ID": get_correlation_id()}

    if isinstance(exc, SecurityRejection):
        log_data["risk_score"] = exc.risk_score
        log_data["violations"] = [v.get("type") for v in exc.violations]
    elif isinstance(exc, RateLimitExceededError):
        headers["Retry-After"] = str(exc.retry_after_seconds)

    logger.warning(f"Application exception: {exc.error_code.value}", extra_data=log_data)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 with a generic body; the exception itself only goes to the logs"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": _mask_path_ids(request.url.path),
        },
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {}
            }
        },
        headers={"X-Correlation-ID": get_correlation_id()}
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Adds security headers to every response.

    - X-Content-Type-Options: nosniff (always)
    - Content-Security-Policy: upgrade-insecure-requests and HSTS (not in DEBUG,
      so local HTTP development keeps working)
    - Cache-Control: no-store on /api responses, which carry payment state
    """

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store"
        if not self._debug:
            response.headers["Content-Security-Policy"] = "upgrade-insecure-requests"
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window rate limit per client IP on /webhooks paths.

    Returns 429 with Retry-After (seconds until the oldest request in the
    window expires) when an IP exceeds ``max_requests`` within
    ``window_seconds``. Sits inside CorrelationIdMiddleware so rejected
    deliveries still carry a correlation id.
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        max_requests: int = 100,
        window_seconds: int = 60,
    ) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._requests: dict[str, deque[float]] = {}

    def _cleanup_window(self, ip: str, now: float) -> None:
        """Drop timestamps outside the window; forget IPs with none left."""
        timestamps = self._requests.get(ip)
        if timestamps is None:
            return
        cutoff = now - self._window_seconds
        while timestamps and timestamps[0] < cutoff:
            timestamps.popleft()
        if not timestamps:
            del self._requests[ip]

    def _retry_after(self, ip: str, now: float) -> int:
        oldest = self._requests[ip][0]
        return max(1, math.ceil(oldest + self._window_seconds - now))

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if "/webhooks" not in request.url.path:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.time()
        self._cleanup_window(client_ip, now)

        if len(self._requests.get(client_ip, ())) >= self._max_requests:
            retry_after = self._retry_after(client_ip, now)
            logger.warning(
                "Rate limit exceeded for webhook",
                extra_data={
                    "client_ip": client_ip,
                    "limit": self._max_requests,
                    "window_seconds": self._window_seconds,
                    "retry_after_seconds": retry_after,
                },
            )
            return JSONResponse(
                status_code=429,
                content={"error": "Too many requests. Please try again later."},
                headers={
                    "Retry-After": str(retry_after),
                    "X-Correlation-ID": get_correlation_id(),
                },
            )

        self._requests.setdefault(client_ip, deque()).append(now)
        return await call_next(request)


def setup_middleware(app: FastAPI) -> None:
    """Install the middleware stack on the application"""
    from permit_payments.core.config import settings

    # Last added is outermost. Request order:
    # SecurityHeaders → CorrelationId → RequestLogging → RateLimit → app
    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
