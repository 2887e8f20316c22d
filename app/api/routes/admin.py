"""
Admin API Routes - cross-merchant views
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.api.dependencies.auth import get_current_principal
from app.api.dependencies.services import get_payment_service
from app.api.routes.schemas import Envelope, Pagination, TransactionListData, TransactionSummary
from app.api.routes.transactions import build_filter
from app.core.auth import Principal
from app.db.models.transaction import TransactionStatus
from app.domain.services.payment_service import PaymentService

router = APIRouter()


@router.get(
    "/transactions",
    response_model=Envelope[TransactionListData],
    summary="כל העסקאות (מנהל)",
    description="דורש הרשאת view_all_transactions. סינון אופציונלי לפי משתמש, מצב וספק.",
    responses={403: {"description": "למנהלים בלבד"}},
)
async def list_all_transactions(
    user_id: Optional[int] = Query(None),
    status: Optional[TransactionStatus] = Query(None),
    provider: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
):
    items, total = await service.list_all_transactions(
        principal, build_filter(status, provider, user_id), page, limit
    )
    return Envelope(
        data=TransactionListData(
            transactions=[TransactionSummary.from_transaction(t) for t in items],
            pagination=Pagination.build(page, limit, total),
        )
    )
