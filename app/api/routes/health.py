"""
Health API Route - versioned alias of the readiness probe
"""
from fastapi import APIRouter
from starlette.responses import JSONResponse

from app.domain.services.health_service import check_readiness

router = APIRouter()


@router.get(
    "",
    summary="בדיקת מוכנות (v1)",
    description="כמו /health/ready: DB, Redis ומצב ה-circuit breakers של הספקים.",
)
async def api_health() -> JSONResponse:
    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
