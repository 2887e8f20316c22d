"""
Payment API Routes - payment intents and their lifecycle actions
"""
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator

from app.api.dependencies.auth import get_current_principal, get_request_context
from app.api.dependencies.services import get_payment_service
from app.api.routes.schemas import Envelope, TransactionData
from app.core.auth import Principal
from app.core.logging import get_logger
from app.core.validation import (
    account_number_validator,
    amount_validator,
    phone_validator,
    sanitized_text_validator,
)
from app.domain.services.audit_service import RequestContext
from app.domain.services.payment_service import PaymentService

logger = get_logger(__name__)

router = APIRouter()


class CreateIntentRequest(BaseModel):
    """Schema for creating a payment intent"""
    amount: Decimal
    currency: str = "KES"
    provider: str
    payment_method: Optional[str] = None
    phone: Optional[str] = None
    account_number: Optional[str] = None
    reference: Optional[str] = None
    description: Optional[str] = None
    metadata: dict[str, Any] = {}

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        return amount_validator(v)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        v = v.strip().upper()
        if len(v) != 3 or not v.isalpha():
            raise ValueError("Currency must be a 3-letter ISO code")
        return v

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        return phone_validator(v)

    @field_validator("account_number")
    @classmethod
    def validate_account(cls, v: str | None) -> str | None:
        return account_number_validator(v)

    @field_validator("reference")
    @classmethod
    def validate_reference(cls, v: str | None) -> str | None:
        return sanitized_text_validator(v, max_length=100)

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: str | None) -> str | None:
        return sanitized_text_validator(v, max_length=255)


class IntentCreatedData(BaseModel):
    transaction_id: str
    status: str
    amount: str
    currency: str
    provider: str
    payment_method: str
    expires_at: str
    created_at: str


class InitiatedData(BaseModel):
    transaction_id: str
    status: str
    provider_correlation_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    instructions: Optional[str] = None


@router.post(
    "/create-intent",
    response_model=Envelope[IntentCreatedData],
    status_code=201,
    summary="יצירת כוונת תשלום",
    description="יוצר עסקה במצב pending שתוקפה פג אחרי PAYMENT_INTENT_EXPIRY_MINUTES.",
    responses={
        201: {"description": "העסקה נוצרה"},
        400: {"description": "סכום לא תקין או שילוב ספק/אמצעי תשלום לא נתמך"},
        401: {"description": "חסר טוקן או שאינו תקין"},
        403: {"description": "אין הרשאת create_payment"},
    },
)
async def create_intent(
    body: CreateIntentRequest,
    principal: Principal = Depends(get_current_principal),
    context: RequestContext = Depends(get_request_context),
    service: PaymentService = Depends(get_payment_service),
):
    transaction = await service.create_intent(
        principal,
        amount=body.amount,
        provider=body.provider,
        payment_method=body.payment_method,
        currency=body.currency,
        phone=body.phone,
        account_number=body.account_number,
        reference=body.reference,
        description=body.description,
        metadata=body.metadata,
        context=context,
    )
    view = TransactionData.from_transaction(transaction)
    return Envelope(
        message="Payment intent created successfully",
        data=IntentCreatedData(
            transaction_id=view.transaction_id,
            status=view.status,
            amount=view.amount,
            currency=view.currency,
            provider=view.provider,
            payment_method=view.payment_method,
            expires_at=view.expires_at,
            created_at=view.created_at,
        ),
    )


@router.post(
    "/initiate/{transaction_id}",
    response_model=Envelope[InitiatedData],
    summary="הפעלת תשלום מול הספק",
    description=(
        "מעביר עסקה pending ל-processing וקורא לספק. "
        "כשל זמני אצל הספק משאיר את העסקה ב-processing לטובת callback או reconciliation."
    ),
    responses={
        200: {"description": "הבקשה נשלחה לספק"},
        400: {"description": "העסקה אינה pending או שפג תוקפה"},
        403: {"description": "העסקה שייכת למשתמש אחר"},
        404: {"description": "עסקה לא נמצאה"},
        502: {"description": "הספק דחה את הבקשה או שהאימות מולו נכשל"},
        503: {"description": "הספק לא זמין"},
    },
)
async def initiate_payment(
    transaction_id: str,
    principal: Principal = Depends(get_current_principal),
    context: RequestContext = Depends(get_request_context),
    service: PaymentService = Depends(get_payment_service),
):
    transaction = await service.initiate(principal, transaction_id, context)
    return Envelope(
        message="Payment initiated successfully",
        data=InitiatedData(
            transaction_id=transaction.transaction_id,
            status=transaction.status.value,
            provider_correlation_id=transaction.provider_correlation_id,
            merchant_request_id=transaction.merchant_request_id,
            instructions=transaction.customer_instructions,
        ),
    )


@router.post(
    "/{transaction_id}/cancel",
    response_model=Envelope[TransactionData],
    summary="ביטול עסקה",
    description="ביטול עסקה שעדיין אינה סופית (pending או processing). בעלים או מנהל בלבד.",
    responses={
        403: {"description": "העסקה שייכת למשתמש אחר"},
        404: {"description": "עסקה לא נמצאה"},
        409: {"description": "העסקה כבר במצב סופי"},
    },
)
async def cancel_payment(
    transaction_id: str,
    principal: Principal = Depends(get_current_principal),
    context: RequestContext = Depends(get_request_context),
    service: PaymentService = Depends(get_payment_service),
):
    transaction = await service.cancel(principal, transaction_id, context)
    return Envelope(message="Payment cancelled", data=TransactionData.from_transaction(transaction))


@router.post(
    "/{transaction_id}/refund",
    response_model=Envelope[TransactionData],
    summary="רישום החזר",
    description="מעביר עסקה completed ל-refunded. דורש הרשאת refund_payment ובעלות על העסקה.",
    responses={
        403: {"description": "אין הרשאה"},
        404: {"description": "עסקה לא נמצאה"},
        409: {"description": "העסקה אינה completed"},
    },
)
async def refund_payment(
    transaction_id: str,
    principal: Principal = Depends(get_current_principal),
    context: RequestContext = Depends(get_request_context),
    service: PaymentService = Depends(get_payment_service),
):
    transaction = await service.refund(principal, transaction_id, context)
    return Envelope(message="Payment refunded", data=TransactionData.from_transaction(transaction))
