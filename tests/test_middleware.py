"""
בדיקות ל-Middleware — app/core/middleware.py

מכסה:
- CorrelationIdMiddleware: הפצת correlation ID בבקשות
- WebhookRateLimitMiddleware: הגבלת קצב ל-callbacks של ספקים בלבד
- SecurityHeadersMiddleware: CSP/HSTS בפרודקשן, nosniff תמיד
- Exception handlers: צורת {success: false, error, code}
- _mask_path_pii: מיסוך מספרי MSISDN ב-URL
"""
import json
import time
from unittest.mock import AsyncMock

import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse, JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from app.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    WebhookRateLimitMiddleware,
    _mask_path_pii,
    app_exception_handler,
    generic_exception_handler,
)
from app.core.exceptions import (
    ErrorCode,
    InvalidStateTransitionError,
    ProviderUnavailableError,
    ValidationException,
)


def _hello(request: Request) -> PlainTextResponse:
    return PlainTextResponse("ok")


def _callback(request: Request) -> PlainTextResponse:
    """endpoint שמדמה callback של ספק."""
    return PlainTextResponse("callback ok")


def _error(request: Request) -> PlainTextResponse:
    raise ValueError("שגיאת בדיקה")


def _build_app(*, middlewares: list[tuple] | None = None) -> Starlette:
    """בונה אפליקציית Starlette מינימלית עם middleware."""
    app = Starlette(
        routes=[
            Route("/test", _hello),
            Route("/api/v1/webhooks/mpesa", _callback, methods=["GET", "POST"]),
            Route("/api/v1/webhooks", _hello, methods=["GET", "POST"]),
            Route("/error", _error),
        ]
    )
    for mw_class, kwargs in middlewares or []:
        app.add_middleware(mw_class, **kwargs)
    return app


def _mock_request(path: str) -> AsyncMock:
    request = AsyncMock(spec=Request)
    request.url.path = path
    return request


class TestMaskPathPii:
    """בדיקות למיסוך מספרי טלפון ב-URL path"""

    @pytest.mark.unit
    def test_masks_msisdn_in_path(self) -> None:
        assert _mask_path_pii("/api/v1/lookup/254712345678/x") == "/api/v1/lookup/254712***678/x"

    @pytest.mark.unit
    def test_no_phone_no_change(self) -> None:
        path = "/api/v1/transactions/txn_3f9a0c1b2d4e5f60"
        assert _mask_path_pii(path) == path

    @pytest.mark.unit
    def test_multiple_numbers(self) -> None:
        masked = _mask_path_pii("/a/254712345678/b/254798765432")
        assert masked.count("***") == 2


class TestCorrelationIdMiddleware:
    """בדיקות להפצת Correlation ID"""

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
            response = client.get("/test", headers={"X-Correlation-ID": "req-42"})
            assert response.headers["x-correlation-id"] == "req-42"

    @pytest.mark.unit
    def test_unique_per_request(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            first = client.get("/test").headers["x-correlation-id"]
            second = client.get("/test").headers["x-correlation-id"]
            assert first != second


class TestRequestLoggingMiddleware:

    @pytest.mark.unit
    def test_exception_in_handler_reraised(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app, raise_server_exceptions=False) as client:
            assert client.get("/test").status_code == 200
            assert client.get("/error").status_code == 500


class TestWebhookRateLimitMiddleware:
    """בדיקות להגבלת קצב על callbacks"""

    @pytest.mark.unit
    def test_blocks_callbacks_over_limit(self) -> None:
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 3, "window_seconds": 60})]
        )
        with TestClient(app) as client:
            for _ in range(3):
                assert client.post("/api/v1/webhooks/mpesa").status_code == 200

            response = client.post("/api/v1/webhooks/mpesa")
            assert response.status_code == 429
            assert response.headers["Retry-After"] == "60"
            assert response.json()["code"] == ErrorCode.RATE_LIMITED.value

    @pytest.mark.unit
    def test_only_callback_posts_are_limited(self) -> None:
        """ניהול subscriptions וקריאות GET לא נספרים"""
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60})]
        )
        with TestClient(app) as client:
            assert client.post("/api/v1/webhooks/mpesa").status_code == 200
            assert client.post("/api/v1/webhooks/mpesa").status_code == 429

            for _ in range(3):
                assert client.post("/api/v1/webhooks").status_code == 200
                assert client.get("/api/v1/webhooks/mpesa").status_code == 200
                assert client.get("/test").status_code == 200

    @pytest.mark.unit
    def test_cleanup_removes_old_entries(self) -> None:
        mw = WebhookRateLimitMiddleware(_build_app(), max_requests=100, window_seconds=60)
        now = time.time()
        mw._requests["10.0.0.1"] = [now - 120, now - 90, now - 30, now]

        mw._cleanup_window("10.0.0.1", now)

        assert len(mw._requests["10.0.0.1"]) == 2

    @pytest.mark.unit
    def test_cleanup_deletes_empty_ip(self) -> None:
        """IP בלי timestamps בחלון נמחק מהמילון"""
        mw = WebhookRateLimitMiddleware(_build_app(), max_requests=100, window_seconds=60)
        now = time.time()
        mw._requests["10.0.0.1"] = [now - 120]

        mw._cleanup_window("10.0.0.1", now)

        assert "10.0.0.1" not in mw._requests

    @pytest.mark.unit
    def test_429_includes_correlation_id(self) -> None:
        app = _build_app(
            middlewares=[
                (WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60}),
                (CorrelationIdMiddleware, {}),
            ]
        )
        with TestClient(app) as client:
            client.post("/api/v1/webhooks/mpesa")
            response = client.post("/api/v1/webhooks/mpesa")

            assert response.status_code == 429
            assert "x-correlation-id" in response.headers


class TestSecurityHeadersMiddleware:
    """כותרות אבטחה — CSP ו-HSTS רק מחוץ ל-DEBUG"""

    @pytest.mark.unit
    def test_production_headers(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": False})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert "upgrade-insecure-requests" in response.headers["content-security-policy"]
            assert "includeSubDomains" in response.headers["strict-transport-security"]
            assert response.headers["x-content-type-options"] == "nosniff"
            assert response.headers["cache-control"] == "no-store"

    @pytest.mark.unit
    def test_debug_skips_csp_and_hsts(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": True})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert "content-security-policy" not in response.headers
            assert "strict-transport-security" not in response.headers
            assert response.headers["x-content-type-options"] == "nosniff"


class TestExceptionHandlers:
    """צורת תשובת השגיאה"""

    @pytest.mark.unit
    async def test_app_exception_shape(self) -> None:
        exc = InvalidStateTransitionError("completed", "cancelled", "cancel")

        response = await app_exception_handler(_mock_request("/api/v1/payments/x/cancel"), exc)

        assert isinstance(response, JSONResponse)
        assert response.status_code == 409
        body = json.loads(response.body)
        assert body["success"] is False
        assert body["code"] == ErrorCode.INVALID_STATE_TRANSITION.value
        assert "x-correlation-id" in response.headers

    @pytest.mark.unit
    async def test_validation_exception_is_400(self) -> None:
        exc = ValidationException("Invalid phone number", field="phone")

        response = await app_exception_handler(_mock_request("/api/v1/payments/create-intent"), exc)

        assert response.status_code == 400
        assert json.loads(response.body)["details"]["field"] == "phone"

    @pytest.mark.unit
    async def test_provider_outage_is_503(self) -> None:
        exc = ProviderUnavailableError("mpesa", "HTTP 503")

        response = await app_exception_handler(_mock_request("/api/v1/payments/initiate/x"), exc)

        assert response.status_code == 503
        assert json.loads(response.body)["details"]["provider"] == "mpesa"

    @pytest.mark.unit
    async def test_generic_does_not_leak_internals(self) -> None:
        exc = RuntimeError("database connection failed on host 10.0.0.1")

        response = await generic_exception_handler(_mock_request("/api/v1/transactions"), exc)

        assert response.status_code == 500
        body = response.body.decode()
        assert "10.0.0.1" not in body
        assert ErrorCode.INTERNAL_ERROR.value in body


class TestFullStack:
    """ה-middleware stack של האפליקציה האמיתית"""

    @pytest.mark.integration
    async def test_headers_on_liveness(self, test_client) -> None:
        response = await test_client.get("/health")

        assert response.status_code == 200
        assert "x-correlation-id" in response.headers
        assert response.headers.get("x-content-type-options") == "nosniff"
        assert "upgrade-insecure-requests" in response.headers.get("content-security-policy", "")

    @pytest.mark.integration
    async def test_headers_on_error_responses(self, test_client) -> None:
        """גם תשובת 401 ו-400 נושאות את הכותרות"""
        unauthorized = await test_client.get("/api/v1/transactions")
        malformed = await test_client.post("/api/v1/webhooks/mpesa", json={"Body": {}})

        for response in (unauthorized, malformed):
            assert response.json()["success"] is False
            assert "x-correlation-id" in response.headers
            assert response.headers.get("x-content-type-options") == "nosniff"
        assert unauthorized.status_code == 401
        assert malformed.status_code == 400
