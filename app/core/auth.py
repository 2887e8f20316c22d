"""
Bearer authentication and capability checks.

Tokens are issued elsewhere (the merchant dashboard); this module only signs
tokens for tooling/tests and verifies incoming ones. A verified token plus an
active user row becomes a `Principal`, and every operation performs one
explicit capability check against it.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

import jwt as pyjwt
from pydantic import BaseModel

from app.core.config import settings
from app.core.exceptions import ForbiddenException
from app.core.logging import get_logger

logger = get_logger(__name__)


class Capability(str, Enum):
    CREATE_PAYMENT = "create_payment"
    REFUND_PAYMENT = "refund_payment"
    MANAGE_WEBHOOKS = "manage_webhooks"
    VIEW_ALL_TRANSACTIONS = "view_all_transactions"


ROLE_CAPABILITIES: dict[str, frozenset[Capability]] = {
    "admin": frozenset(Capability),
    "merchant": frozenset({
        Capability.CREATE_PAYMENT,
        Capability.REFUND_PAYMENT,
        Capability.MANAGE_WEBHOOKS,
    }),
    "user": frozenset(),
}


class TokenPayload(BaseModel):
    """תוכן ה-JWT token"""
    user_id: int
    role: str
    exp: int  # Unix timestamp — סטנדרט JWT


@dataclass(frozen=True)
class Principal:
    """Resolved caller: who they are and what role they act under"""
    user_id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def can(self, capability: Capability) -> bool:
        return capability in ROLE_CAPABILITIES.get(self.role, frozenset())

    def require(self, capability: Capability) -> None:
        if not self.can(capability):
            logger.warning(
                "Capability check failed",
                extra_data={"user_id": self.user_id, "role": self.role, "capability": capability.value},
            )
            raise ForbiddenException(
                "Insufficient permissions",
                details={"required": capability.value},
            )

    def require_owner_or_admin(self, owner_id: int) -> None:
        if owner_id != self.user_id and not self.is_admin:
            raise ForbiddenException("Access denied")


def create_access_token(user_id: int, role: str, expires_minutes: int | None = None) -> str:
    if not settings.JWT_SECRET_KEY:
        raise ValueError("JWT_SECRET_KEY is not configured")
    minutes = expires_minutes if expires_minutes is not None else settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    payload = {"user_id": user_id, "role": role, "exp": int(expire.timestamp())}
    return pyjwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Optional[TokenPayload]:
    """אימות JWT token — מחזיר None אם לא תקין או פג תוקף"""
    if not settings.JWT_SECRET_KEY:
        logger.error("JWT_SECRET_KEY is empty, tokens cannot be verified")
        return None
    try:
        payload = pyjwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        return TokenPayload(**payload)
    except pyjwt.InvalidTokenError:
        logger.warning("JWT token invalid or expired")
        return None
    except (KeyError, ValueError) as e:
        logger.warning("JWT payload malformed", extra_data={"error": str(e)})
        return None
