"""
FastAPI dependency לאימות בקשות API

שימוש:
    @router.post("/create-intent")
    async def create_intent(
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        principal.require(Capability.CREATE_PAYMENT)
"""
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import Principal, verify_token
from app.core.exceptions import UnauthorizedException
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.user import User
from app.domain.services.audit_service import RequestContext

logger = get_logger(__name__)

# auto_error=False — כדי שחוסר טוקן יחזיר 401 במבנה השגיאה האחיד ולא 403 של FastAPI
security = HTTPBearer(auto_error=False)


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """
    אימות JWT וטעינת המשתמש.

    זורק 401 אם הטוקן חסר, לא תקין, פג תוקף, או שהמשתמש לא קיים / לא פעיל.
    """
    if credentials is None or not credentials.credentials:
        raise UnauthorizedException("Authentication required")

    token_data = verify_token(credentials.credentials)
    if not token_data:
        raise UnauthorizedException("Invalid or expired token")

    result = await db.execute(select(User).where(User.id == token_data.user_id))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        logger.warning(
            "API access denied — user missing or inactive",
            extra_data={
                "user_id": token_data.user_id,
                "user_found": user is not None,
            },
        )
        raise UnauthorizedException("User is not active")

    # התפקיד מה-DB גובר על התפקיד שבטוקן — שינוי הרשאות נכנס לתוקף מיד
    role = user.role.value if hasattr(user.role, "value") else str(user.role)
    return Principal(user_id=user.id, role=role)


def get_request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
