"""
FastAPI Middleware

Provides request/response middleware for:
- Correlation ID injection
- Request logging (with MSISDN masking)
- Global error handling in the {success: false, error, details?} shape
- Security headers
- Rate limiting for provider callback ingress
"""
import re
import time
from collections import defaultdict
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import settings
from app.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id
)
from app.core.exceptions import AppException, ErrorCode

logger = get_logger(__name__)

# מספרי טלפון קנייתיים ב-URL path
_PHONE_IN_PATH_RE = re.compile(r"(254\d{3})\d{3}(\d{3})")

_CALLBACK_PATH_PREFIX = "/api/v1/webhooks/"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation ID to requests"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        request.state.correlation_id = correlation_id
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


def _mask_path_pii(path: str) -> str:
    """מיסוך ספרות אמצעיות של מספר טלפון ב-URL path"""
    return _PHONE_IN_PATH_RE.sub(r"\1***\2", path)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests and responses (with PII masking)"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.monotonic()
        safe_path = _mask_path_pii(request.url.path)

        logger.info(
            f"Request started: {request.method} {safe_path}",
            extra_data={
                "method": request.method,
                "path": safe_path,
                "query_params": dict(request.query_params),
                "client_host": request.client.host if request.client else None,
            }
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {safe_path}",
                extra_data={
                    "method": request.method,
                    "path": safe_path,
                    "duration_seconds": round(time.monotonic() - start_time, 4),
                    "error": str(e),
                },
                exc_info=True
            )
            raise

        log_level = "info" if response.status_code < 400 else "warning"
        getattr(logger, log_level)(
            f"Request completed: {request.method} {safe_path}",
            extra_data={
                "method": request.method,
                "path": safe_path,
                "status_code": response.status_code,
                "duration_seconds": round(time.monotonic() - start_time, 4),
            }
        )
        return response


def _error_response(status_code: int, content: dict, headers: dict | None = None) -> JSONResponse:
    merged = {"X-Correlation-ID": get_correlation_id()}
    if headers:
        merged.update(headers)
    return JSONResponse(status_code=status_code, content=content, headers=merged)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle application exceptions"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "error_type": type(exc).__name__,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        }
    )
    return _error_response(exc.status_code, exc.to_dict(include_internal=settings.DEBUG))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body/query validation → 400"""
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    logger.info(
        "Request validation failed",
        extra_data={"path": request.url.path, "errors": errors},
    )
    return _error_response(
        400,
        {
            "success": False,
            "error": "Validation failed",
            "code": ErrorCode.VALIDATION_ERROR.value,
            "details": {"errors": errors},
        },
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(
        exc.status_code,
        {"success": False, "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": request.url.path,
        },
        exc_info=True
    )
    content = {
        "success": False,
        "error": "An unexpected error occurred",
        "code": ErrorCode.INTERNAL_ERROR.value,
    }
    if settings.DEBUG:
        content["details"] = {"exception": type(exc).__name__, "message": str(exc)}
    return _error_response(500, content)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Adds security headers to every response.

    HSTS and CSP upgrade-insecure-requests are applied only outside DEBUG so
    local development over plain HTTP keeps working.
    """

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Cache-Control"] = "no-store"
        if not self._debug:
            response.headers["Content-Security-Policy"] = "upgrade-insecure-requests"
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window rate limit per client IP on provider callback ingress
    (POST /api/v1/webhooks/{provider}). Returns 429 when exceeded.
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
        self._requests: dict[str, list[float]] = defaultdict(list)

    def _cleanup_window(self, ip: str, now: float) -> None:
        cutoff = now - self._window_seconds
        kept = [ts for ts in self._requests[ip] if ts >= cutoff]
        if kept:
            self._requests[ip] = kept
        else:
            # מחיקת מפתח ריק — מונע דליפת זיכרון מ-IP חד-פעמיים
            del self._requests[ip]

    @staticmethod
    def _is_callback_request(request: Request) -> bool:
        path = request.url.path
        return (
            request.method == "POST"
            and path.startswith(_CALLBACK_PATH_PREFIX)
            and len(path) > len(_CALLBACK_PATH_PREFIX)
        )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self._is_callback_request(request):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.time()
        self._cleanup_window(client_ip, now)

        if len(self._requests.get(client_ip, [])) >= self._max_requests:
            logger.warning(
                "Rate limit exceeded for provider callback",
                extra_data={
                    "client_ip": client_ip,
                    "path": request.url.path,
                    "limit": self._max_requests,
                    "window_seconds": self._window_seconds,
                },
            )
            return _error_response(
                429,
                {
                    "success": False,
                    "error": "Too many requests. Please try again later.",
                    "code": ErrorCode.RATE_LIMITED.value,
                },
                headers={"Retry-After": str(self._window_seconds)},
            )

        self._requests[client_ip].append(now)
        return await call_next(request)


def setup_middleware(app: FastAPI) -> None:
    """Setup all middleware for the application"""
    # ב-Starlette, ה-middleware האחרון שנוסף הוא ה-outermost.
    # סדר עיבוד בקשה: SecurityHeaders → CorrelationId → RequestLogging → RateLimit → app
    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup exception handlers"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
