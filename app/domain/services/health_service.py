"""
שירות בדיקת בריאות — בדיקות תלויות (DB, Redis, Celery broker).

מספק שתי רמות בדיקה:
- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: בדיקה מקיפה של כל התלויות החיצוניות

מצב ה-circuit breakers של הספקים מדווח לצורכי מידע בלבד ואינו משפיע על
הסטטוס הכללי: ספק חסום עדיין מאפשר callbacks ושאילתות.
"""
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

# סטטוסים אפשריים לתשובת readiness
_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# הודעות שגיאה מסוננות — ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_CELERY = "error: celery_unavailable"


async def _check_db() -> str:
    """בדיקת חיבור למסד הנתונים באמצעות שאילתה קלה."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except (SQLAlchemyError, OSError) as e:
        logger.warning("בדיקת בריאות DB נכשלה", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    """בדיקת חיבור ל-Redis באמצעות PING."""
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except (RedisError, OSError) as e:
        logger.warning("בדיקת בריאות Redis נכשלה", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_celery() -> str:
    """בדיקת זמינות ה-broker של Celery (Redis) — ה-sweep של reconciliation תלוי בו."""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except (RedisError, OSError) as e:
        logger.warning("בדיקת בריאות Celery נכשלה", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def check_readiness() -> dict[str, Any]:
    """
    בדיקת מוכנות מקיפה.

    מחזיר dict עם סטטוס כללי ופירוט לכל תלות:
    - status: "healthy" אם הכל תקין, "degraded" אם יש בעיה באחת התלויות
    - db / redis / celery: "ok" או "error: ..."
    - circuit_breakers: {"mpesa": "closed", ...}
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "celery": await _check_celery(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning(
            "בדיקת מוכנות — המערכת במצב degraded",
            extra_data=checks,
        )

    return {"status": overall_status, **checks, "circuit_breakers": CircuitBreaker.snapshot()}
