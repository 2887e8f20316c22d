"""
Transaction API Routes - read access scoped to the caller
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.api.dependencies.auth import get_current_principal
from app.api.dependencies.services import get_payment_service
from app.api.routes.schemas import (
    Envelope,
    Pagination,
    TransactionData,
    TransactionListData,
    TransactionSummary,
)
from app.core.auth import Principal
from app.db.models.transaction import TransactionStatus
from app.domain.services.payment_service import PaymentService
from app.domain.services.transaction_store import TransactionFilter, resolve_provider

router = APIRouter()


def build_filter(
    status: Optional[TransactionStatus],
    provider: Optional[str],
    user_id: Optional[int] = None,
) -> TransactionFilter:
    return TransactionFilter(
        status=status,
        provider=resolve_provider(provider) if provider else None,
        user_id=user_id,
    )


@router.get(
    "/{transaction_id}",
    response_model=Envelope[TransactionData],
    summary="מצב עסקה",
    description="בעלים או מנהל בלבד. עסקה pending שפג תוקפה מבוטלת בזמן הקריאה.",
    responses={
        403: {"description": "העסקה שייכת למשתמש אחר"},
        404: {"description": "עסקה לא נמצאה"},
    },
)
async def get_transaction(
    transaction_id: str,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
):
    transaction = await service.get_transaction(principal, transaction_id)
    return Envelope(data=TransactionData.from_transaction(transaction))


@router.get(
    "",
    response_model=Envelope[TransactionListData],
    summary="רשימת העסקאות שלי",
    description="מהחדשה לישנה. total סופר את כל העסקאות שעונות לסינון, לפני חיתוך העמוד.",
)
async def list_transactions(
    status: Optional[TransactionStatus] = Query(None),
    provider: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
):
    items, total = await service.list_transactions(principal, build_filter(status, provider), page, limit)
    return Envelope(
        data=TransactionListData(
            transactions=[TransactionSummary.from_transaction(t) for t in items],
            pagination=Pagination.build(page, limit, total),
        )
    )
