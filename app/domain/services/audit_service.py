"""
Audit Service - append-only trail of payment and subscription actions
"""
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.models.audit_log import AuditAction, AuditLog

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """Where a request came from (recorded with audit entries and new transactions)"""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


SYSTEM_CONTEXT = RequestContext(user_agent="system")


class AuditService:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        action: AuditAction,
        resource: str,
        resource_id: str,
        *,
        user_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
        context: RequestContext = SYSTEM_CONTEXT,
    ) -> AuditLog:
        entry = AuditLog(
            user_id=user_id,
            action=action,
            resource=resource,
            resource_id=str(resource_id),
            details=details or {},
            ip_address=context.ip_address,
            user_agent=(context.user_agent or "")[:255] or None,
        )
        self.db.add(entry)
        await self.db.commit()
        logger.debug(
            "Audit entry recorded",
            extra_data={"action": action.value, "resource": resource, "resource_id": str(resource_id)},
        )
        return entry

    async def list_for_resource(self, resource: str, resource_id: str) -> list[AuditLog]:
        result = await self.db.execute(
            select(AuditLog)
            .where(AuditLog.resource == resource, AuditLog.resource_id == str(resource_id))
            .order_by(AuditLog.created_at, AuditLog.id)
        )
        return list(result.scalars().all())
