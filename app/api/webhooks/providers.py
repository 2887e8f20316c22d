"""
Provider Callback Webhooks - M-Pesa and Equity ingress
"""
import json

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.api.dependencies.auth import get_request_context
from app.api.dependencies.callback_auth import verify_provider_callback
from app.api.dependencies.services import get_payment_service
from app.core.exceptions import MalformedCallbackError
from app.core.logging import get_logger
from app.domain.services.audit_service import RequestContext
from app.domain.services.payment_service import PaymentService

logger = get_logger(__name__)

router = APIRouter()


class CallbackAck(BaseModel):
    success: bool = True
    outcome: str
    transaction_id: str
    status: str


@router.post(
    "/{provider}",
    response_model=CallbackAck,
    summary="Webhook - callback מספק תשלום",
    description=(
        "נקודת כניסה לתוצאות תשלום מ-M-Pesa (STK / C2B) ומ-Equity. "
        "callback כפול או callback שסותר מצב סופי מחזיר 200 כדי שהספק לא ישלח שוב."
    ),
    responses={
        200: {"description": "ה-callback עובד (applied / duplicate / ignored)"},
        400: {"description": "גוף לא תקין"},
        401: {"description": "חתימה חסרה או שגויה"},
        404: {"description": "ספק לא מוכר או correlation id לא מוכר"},
    },
)
async def provider_callback(
    provider: str,
    raw_body: bytes = Depends(verify_provider_callback),
    context: RequestContext = Depends(get_request_context),
    service: PaymentService = Depends(get_payment_service),
):
    try:
        payload = json.loads(raw_body or b"")
    except (ValueError, UnicodeDecodeError):
        raise MalformedCallbackError(provider, "body is not valid JSON")

    result = await service.process_callback(provider, payload, context)
    logger.info(
        "Provider callback handled",
        extra_data={
            "provider": provider,
            "outcome": result.outcome,
            "transaction_id": result.transaction_id,
            "status": result.status.value,
        },
    )
    return CallbackAck(
        outcome=result.outcome,
        transaction_id=result.transaction_id,
        status=result.status.value,
    )
