"""
Kenyan Payment Gateway - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, Base

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "Payments", "description": "כוונות תשלום: יצירה, הפעלה מול הספק, ביטול והחזר."},
    {"name": "Transactions", "description": "צפייה בעסקאות של המשתמש המחובר."},
    {"name": "Admin", "description": "צפייה בעסקאות של כל הסוחרים (מנהלים בלבד)."},
    {
        "name": "Webhook Subscriptions",
        "description": "רישום endpoints של הסוחר לקבלת אירועי תשלום חתומים ב-HMAC.",
    },
    {"name": "Provider Callbacks", "description": "callbacks נכנסים מ-M-Pesa ומ-Equity."},
    {"name": "Health", "description": "בדיקות liveness ו-readiness."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "שער תשלומים ל-M-Pesa ול-Equity Bank. "
        "התיעוד מבוסס OpenAPI ומוצג ב-Swagger UI וב-ReDoc."
    ),
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

# Setup middleware (correlation ID, request logging, callback rate limit)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Safe dev default to support local frontend development without opening CORS in production.
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables and the webhook dispatcher on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    from app.domain.services.webhook_dispatcher import get_webhook_dispatcher
    get_webhook_dispatcher()


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    # עצירת ה-dispatcher לפני סגירת ה-DB — ניסיונות שבדרך עוד כותבים רשומות
    from app.domain.services.webhook_dispatcher import get_webhook_dispatcher
    await get_webhook_dispatcher().shutdown(settings.WEBHOOK_SHUTDOWN_GRACE_SECONDS)
    # סגירת חיבור Redis
    from app.core.redis_client import close_redis
    await close_redis()
    # סגירת חיבורי מסד הנתונים למניעת connection pool exhaustion
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description=(
        "בדיקה קלה שהתהליך חי ומגיב. "
        "לא בודק תלויות חיצוניות — כדי למנוע restart מיותר בגלל כשלון DB/Redis."
    ),
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness probe — התהליך חי ומגיב."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description=(
        "בדיקה של התלויות: DB, Redis, Celery broker. "
        "מחזיר status=healthy אם הכל תקין, או status=degraded עם פירוט השגיאה."
    ),
    responses={
        200: {
            "description": "כל התלויות תקינות",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "db": "ok",
                        "redis": "ok",
                        "celery": "ok",
                        "circuit_breakers": {"mpesa": "closed", "equity": "closed"},
                    }
                }
            },
        },
        503: {
            "description": "לפחות תלות אחת לא זמינה",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "db": "ok",
                        "redis": "error: redis_unavailable",
                        "celery": "ok",
                        "circuit_breakers": {"mpesa": "open"},
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    """Readiness probe — בדיקת כל התלויות החיצוניות."""
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
