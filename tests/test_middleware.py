"""
Tests for permit_payments/core/middleware.py

Covers:
- CorrelationIdMiddleware: correlation ID propagation
- RequestLoggingMiddleware: request logs with provider ids masked
- WebhookRateLimitMiddleware: per-IP webhook throttling
- Exception handlers: AppException subclasses and unexpected exceptions
- SecurityHeadersMiddleware
- setup_middleware: the full stack on the real app
"""
import json
import time
from collections import deque
from unittest.mock import AsyncMock

import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse, JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from permit_payments.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    WebhookRateLimitMiddleware,
    _mask_path_ids,
    app_exception_handler,
    generic_exception_handler,
)
from permit_payments.core.exceptions import (
    AppException,
    ErrorCode,
    RateLimitExceededError,
    SecurityRejection,
    ValidationException,
)


# ============================================================================
# Helpers
# ============================================================================


def _hello(request: Request) -> PlainTextResponse:
    return PlainTextResponse("ok")


def _webhook(request: Request) -> PlainTextResponse:
    return PlainTextResponse("webhook ok")


def _error(request: Request) -> PlainTextResponse:
    raise ValueError("boom")


def _build_app(*, middlewares: list[tuple] | None = None) -> Starlette:
    """Minimal Starlette app with the given middleware."""
    app = Starlette(routes=[
        Route("/test", _hello),
        Route("/api/webhooks/stripe", _webhook, methods=["GET", "POST"]),
        Route("/error", _error),
    ])
    for mw_class, kwargs in middlewares or []:
        app.add_middleware(mw_class, **kwargs)
    return app


def _mock_request(path: str) -> AsyncMock:
    request = AsyncMock(spec=Request)
    request.url.path = path
    return request


# ============================================================================
# _mask_path_ids
# ============================================================================


class TestMaskPathIds:

    @pytest.mark.unit
    def test_masks_payment_intent_id(self) -> None:
        masked = _mask_path_ids("/api/payments/pi_3Nx8abcdefghijkl/status")
        assert masked == "/api/payments/pi_3Nx8****/status"

    @pytest.mark.unit
    def test_masks_customer_and_event_ids(self) -> None:
        masked = _mask_path_ids("/lookup/cus_ABCDE12345/evt_1Qwerty987")
        assert "ABCDE12345" not in masked
        assert masked.count("****") == 2

    @pytest.mark.unit
    def test_path_without_ids_unchanged(self) -> None:
        path = "/api/payments/applications/42/recover"
        assert _mask_path_ids(path) == path


# ============================================================================
# CorrelationIdMiddleware
# ============================================================================


class TestCorrelationIdMiddleware:

    @pytest.mark.unit
    def test_generates_correlation_id_when_missing(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.status_code == 200
            assert response.headers["x-correlation-id"]

    @pytest.mark.unit
    def test_preserves_existing_correlation_id(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test", headers={"X-Correlation-ID": "support-ticket-881"})
            assert response.headers["x-correlation-id"] == "support-ticket-881"

    @pytest.mark.unit
    def test_correlation_id_unique_per_request(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            first = client.get("/test").headers["x-correlation-id"]
            second = client.get("/test").headers["x-correlation-id"]
            assert first != second

    @pytest.mark.unit
    def test_malformed_correlation_id_is_replaced(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test", headers={"X-Correlation-ID": "abc\" injected=1"})
            assert response.headers["x-correlation-id"] != "abc\" injected=1"
            assert len(response.headers["x-correlation-id"]) == 8


# ============================================================================
# RequestLoggingMiddleware
# ============================================================================


class TestRequestLoggingMiddleware:

    @pytest.mark.unit
    def test_successful_request_logged(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app) as client:
            assert client.get("/test").status_code == 200

    @pytest.mark.unit
    def test_exception_in_handler_reraised(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app, raise_server_exceptions=False) as client:
            assert client.get("/error").status_code == 500


# ============================================================================
# WebhookRateLimitMiddleware
# ============================================================================


class TestWebhookRateLimitMiddleware:

    @pytest.mark.unit
    def test_allows_requests_under_limit(self) -> None:
        app = _build_app(middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 5, "window_seconds": 60})])
        with TestClient(app) as client:
            for _ in range(5):
                assert client.post("/api/webhooks/stripe").status_code == 200

    @pytest.mark.unit
    def test_blocks_requests_over_limit(self) -> None:
        app = _build_app(middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 3, "window_seconds": 60})])
        with TestClient(app) as client:
            for _ in range(3):
                assert client.post("/api/webhooks/stripe").status_code == 200

            response = client.post("/api/webhooks/stripe")
            assert response.status_code == 429
            assert response.headers["Retry-After"] == "60"

    @pytest.mark.unit
    def test_non_webhook_paths_not_limited(self) -> None:
        app = _build_app(middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60})])
        with TestClient(app) as client:
            assert client.post("/api/webhooks/stripe").status_code == 200
            assert client.post("/api/webhooks/stripe").status_code == 429

            assert client.get("/test").status_code == 200
            assert client.get("/test").status_code == 200

    @pytest.mark.unit
    def test_cleanup_removes_old_entries(self) -> None:
        mw = WebhookRateLimitMiddleware(_build_app(), max_requests=100, window_seconds=60)
        now = time.time()
        mw._requests["1.2.3.4"] = deque([now - 120, now - 90, now - 30, now])

        mw._cleanup_window("1.2.3.4", now)

        assert len(mw._requests["1.2.3.4"]) == 2

    @pytest.mark.unit
    def test_cleanup_deletes_empty_ip(self) -> None:
        mw = WebhookRateLimitMiddleware(_build_app(), max_requests=100, window_seconds=60)
        now = time.time()
        mw._requests["1.2.3.4"] = deque([now - 120])

        mw._cleanup_window("1.2.3.4", now)

        assert "1.2.3.4" not in mw._requests

    @pytest.mark.unit
    def test_retry_after_counts_down_from_oldest_request(self) -> None:
        mw = WebhookRateLimitMiddleware(_build_app(), max_requests=2, window_seconds=60)
        now = time.time()
        mw._requests["1.2.3.4"] = deque([now - 45, now - 10])

        assert mw._retry_after("1.2.3.4", now) == 15

    @pytest.mark.unit
    def test_429_response_includes_correlation_id(self) -> None:
        app = _build_app(middlewares=[
            (WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60}),
            (CorrelationIdMiddleware, {}),
        ])
        with TestClient(app) as client:
            client.post("/api/webhooks/stripe")
            response = client.post("/api/webhooks/stripe")

            assert response.status_code == 429
            assert "x-correlation-id" in response.headers


# ============================================================================
# Exception handlers
# ============================================================================


class TestAppExceptionHandler:

    @pytest.mark.unit
    async def test_handles_app_exception(self) -> None:
        exc = AppException(
            message="Payment order not found",
            error_code=ErrorCode.PAYMENT_ORDER_NOT_FOUND,
            status_code=404,
            details={"application_id": 123},
        )

        response = await app_exception_handler(_mock_request("/api/payments/applications/123"), exc)

        assert isinstance(response, JSONResponse)
        assert response.status_code == 404
        assert "x-correlation-id" in response.headers
        assert json.loads(response.body)["error"]["code"] == "ERR_2005"

    @pytest.mark.unit
    async def test_handles_validation_exception(self) -> None:
        exc = ValidationException(message="Invalid email", field="email")

        response = await app_exception_handler(_mock_request("/api/payments"), exc)

        assert response.status_code == 400

    @pytest.mark.unit
    async def test_rate_limit_sets_retry_after(self) -> None:
        exc = RateLimitExceededError("Too many attempts", retry_after_seconds=412)

        response = await app_exception_handler(_mock_request("/api/payments"), exc)

        assert response.status_code == 429
        assert response.headers["retry-after"] == "412"

    @pytest.mark.unit
    async def test_security_rejection_hides_rules(self) -> None:
        exc = SecurityRejection(
            risk_score=75,
            violations=[{"type": "card_hourly", "limit": 3, "current": 4, "severity": "high"}],
        )

        response = await app_exception_handler(_mock_request("/api/payments"), exc)

        body = response.body.decode()
        assert response.status_code == 403
        assert "card_hourly" not in body
        assert "75" not in body


class TestGenericExceptionHandler:

    @pytest.mark.unit
    async def test_handles_unexpected_exception(self) -> None:
        response = await generic_exception_handler(_mock_request("/api/something"), RuntimeError("unexpected"))

        assert isinstance(response, JSONResponse)
        assert response.status_code == 500
        assert "x-correlation-id" in response.headers

    @pytest.mark.unit
    async def test_does_not_leak_internal_details(self) -> None:
        exc = RuntimeError("database connection failed on host 10.0.0.1")

        response = await generic_exception_handler(_mock_request("/api/test"), exc)

        body = response.body.decode()
        assert "10.0.0.1" not in body
        assert "database connection" not in body
        assert "ERR_1000" in body


# ============================================================================
# SecurityHeadersMiddleware
# ============================================================================


class TestSecurityHeadersMiddleware:

    @pytest.mark.unit
    def test_nosniff_on_all_responses(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": False})])
        with TestClient(app) as client:
            assert client.get("/test").headers["x-content-type-options"] == "nosniff"

    @pytest.mark.unit
    def test_csp_and_hsts_in_production(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": False})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.headers["content-security-policy"] == "upgrade-insecure-requests"
            assert "includeSubDomains" in response.headers["strict-transport-security"]

    @pytest.mark.unit
    def test_no_csp_or_hsts_in_debug_mode(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": True})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert "content-security-policy" not in response.headers
            assert "strict-transport-security" not in response.headers
            assert response.headers["x-content-type-options"] == "nosniff"

    @pytest.mark.unit
    def test_api_responses_are_not_cached(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": True})])
        with TestClient(app) as client:
            assert client.post("/api/webhooks/stripe").headers["cache-control"] == "no-store"
            assert "cache-control" not in client.get("/test").headers


# ============================================================================
# setup_middleware
# ============================================================================


class TestSetupMiddleware:

    @pytest.mark.unit
    async def test_full_middleware_stack(self, test_client) -> None:
        response = await test_client.get("/health")

        assert response.status_code == 200
        assert "x-correlation-id" in response.headers
        assert response.headers.get("x-content-type-options") == "nosniff"

    @pytest.mark.unit
    async def test_webhook_error_passes_through_full_stack(self, test_client) -> None:
        response = await test_client.post("/api/webhooks/stripe", content=b"{}")

        assert response.status_code == 400
        assert "x-correlation-id" in response.headers
        assert response.headers.get("x-content-type-options") == "nosniff"
