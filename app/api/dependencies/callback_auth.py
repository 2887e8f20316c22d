"""
אימות חתימת callback נכנס מספק תשלום.

הספק (או ה-gateway שלפניו) שולח את הכותרת ``X-Callback-Signature``:
HMAC-SHA256 בהקסדצימלי על גוף הבקשה הגולמי, עם ה-secret של הספק.

שימוש:
    @router.post("/{provider}")
    async def provider_callback(
        ...,
        raw_body: bytes = Depends(verify_provider_callback),
    ):
        ...
"""
from fastapi import Header, Request

from app.core.config import settings
from app.core.exceptions import InvalidCallbackSignatureError, UnknownProviderError, ValidationException
from app.core.logging import get_logger
from app.core.signatures import verify_signature
from app.db.models.transaction import PaymentProvider
from app.domain.services.transaction_store import resolve_provider

logger = get_logger(__name__)


def callback_secret_for(provider: PaymentProvider) -> str:
    if provider == PaymentProvider.MPESA:
        return settings.MPESA_CALLBACK_SECRET
    if provider == PaymentProvider.EQUITY:
        return settings.EQUITY_CALLBACK_SECRET
    return ""


async def verify_provider_callback(
    provider: str,
    request: Request,
    x_callback_signature: str | None = Header(None),
) -> bytes:
    """
    מחזיר את גוף הבקשה הגולמי אחרי אימות החתימה.

    - ספק לא מוכר — 404.
    - secret לא מוגדר — מדלג (אזהרה בלוג, לפיתוח בלבד).
    - חתימה חסרה או שגויה — 401.
    """
    try:
        resolved = resolve_provider(provider)
    except ValidationException:
        raise UnknownProviderError(provider)

    body = await request.body()
    secret = callback_secret_for(resolved)
    if not secret:
        logger.warning(
            "Provider callback accepted without signature verification",
            extra_data={"provider": resolved.value},
        )
        return body

    # השוואה בטוחה מפני timing attacks
    if not verify_signature(body, x_callback_signature, secret):
        logger.warning(
            "Provider callback with missing or invalid signature",
            extra_data={
                "provider": resolved.value,
                "signature_present": bool(x_callback_signature),
                "client_host": request.client.host if request.client else None,
            },
        )
        raise InvalidCallbackSignatureError(resolved.value)
    return body
