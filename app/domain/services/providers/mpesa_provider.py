"""
M-Pesa Provider — Safaricom Daraja adapter.

- STK push (Lipa na M-Pesa Online): OAuth token → processrequest → callback
- Paybill / till: no outbound call, the customer pays from the handset and
  Safaricom posts a C2B confirmation with the account reference
- STK status query for the reconciliation sweep
"""
from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ValidationError

from app.core.circuit_breaker import CircuitBreaker
from app.core.clock import Clock, utcnow
from app.core.config import settings
from app.core.exceptions import MalformedCallbackError, ProviderAuthError, ProviderRejectedError
from app.core.logging import get_logger, log_async_operation
from app.core.validation import PhoneNumberValidator
from app.db.models.transaction import PaymentMethod, PaymentProvider, Transaction
from app.domain.services.providers.base_provider import (
    BaseProviderAdapter,
    CallbackOutcome,
    CanonicalResult,
    ProviderHandle,
)
from app.domain.services.providers.token_cache import AccessTokenCache

logger = get_logger(__name__)

# East Africa Time — ללא שעון קיץ
EAT = timezone(timedelta(hours=3), "EAT")

STK_INSTRUCTIONS = "Please check your phone and enter your M-Pesa PIN to complete the payment"


# ── מבני callback ──

class _StkItem(BaseModel):
    Name: str
    Value: Any = None


class _StkMetadata(BaseModel):
    Item: list[_StkItem] = []


class _StkCallback(BaseModel):
    MerchantRequestID: Optional[str] = None
    CheckoutRequestID: str
    ResultCode: int
    ResultDesc: str = ""
    CallbackMetadata: Optional[_StkMetadata] = None

    def item(self, name: str) -> Any:
        if not self.CallbackMetadata:
            return None
        for entry in self.CallbackMetadata.Item:
            if entry.Name == name:
                return entry.Value
        return None


class _StkBody(BaseModel):
    stkCallback: _StkCallback


class StkCallbackPayload(BaseModel):
    Body: _StkBody


class C2BConfirmationPayload(BaseModel):
    """Paybill/till confirmation (C2B v2)"""
    TransID: str
    TransAmount: Decimal
    BillRefNumber: str
    MSISDN: Optional[str] = None
    TransTime: Optional[str] = None
    BusinessShortCode: Optional[str] = None


def daraja_timestamp(now_utc: datetime) -> str:
    """YYYYMMDDHHMMSS בשעון ניירובי"""
    return now_utc.replace(tzinfo=timezone.utc).astimezone(EAT).strftime("%Y%m%d%H%M%S")


def parse_daraja_timestamp(value: Any) -> Optional[datetime]:
    """20240101120000 (EAT) → naive UTC"""
    if value is None:
        return None
    try:
        local = datetime.strptime(str(value), "%Y%m%d%H%M%S").replace(tzinfo=EAT)
    except ValueError:
        return None
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


class MpesaProvider(BaseProviderAdapter):
    """Daraja adapter. The OAuth token is cached and refreshed by one caller at a time."""

    provider = PaymentProvider.MPESA
    supported_methods = frozenset({PaymentMethod.STK_PUSH, PaymentMethod.PAYBILL, PaymentMethod.TILL})

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        transport: httpx.AsyncBaseTransport | None = None,
        *,
        base_url: str | None = None,
        consumer_key: str | None = None,
        consumer_secret: str | None = None,
        shortcode: str | None = None,
        passkey: str | None = None,
        till_number: str | None = None,
        callback_base_url: str | None = None,
        token_cache: AccessTokenCache | None = None,
        clock: Clock = utcnow,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(circuit_breaker, transport, timeout_seconds)
        self._base_url = (base_url or settings.MPESA_BASE_URL).rstrip("/")
        self._consumer_key = consumer_key if consumer_key is not None else settings.MPESA_CONSUMER_KEY
        self._consumer_secret = (
            consumer_secret if consumer_secret is not None else settings.MPESA_CONSUMER_SECRET
        )
        self._shortcode = shortcode or settings.MPESA_SHORTCODE
        self._passkey = passkey if passkey is not None else settings.MPESA_PASSKEY
        self._till_number = till_number or settings.MPESA_TILL_NUMBER or self._shortcode
        self._callback_url = f"{callback_base_url or settings.API_BASE_URL}/api/v1/webhooks/mpesa"
        self._clock = clock
        self.token_cache = token_cache or AccessTokenCache(
            "mpesa",
            self._fetch_access_token,
            refresh_margin_seconds=settings.MPESA_TOKEN_REFRESH_MARGIN_SECONDS,
        )

    # ── OAuth ──

    async def _fetch_access_token(self) -> tuple[str, int]:
        if not self._consumer_key or not self._consumer_secret:
            raise ProviderAuthError(self.provider_name, "M-Pesa consumer credentials are not configured")

        basic = base64.b64encode(f"{self._consumer_key}:{self._consumer_secret}".encode()).decode()
        response = await self._send(
            "GET",
            f"{self._base_url}/oauth/v1/generate",
            operation="oauth",
            params={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {basic}"},
        )
        data = self._json(response, "oauth")
        token = data.get("access_token")
        if not token:
            raise ProviderAuthError(self.provider_name, "OAuth response did not include an access token")
        try:
            expires_in = int(data.get("expires_in", 3599))
        except (TypeError, ValueError):
            expires_in = 3599
        return token, expires_in

    async def _authorized_post(self, path: str, payload: dict[str, Any], operation: str) -> dict[str, Any]:
        token = await self.token_cache.get_token()
        try:
            response = await self._send(
                "POST",
                f"{self._base_url}{path}",
                operation=operation,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except ProviderAuthError:
            # טוקן שנדחה לא ישמש שוב
            self.token_cache.invalidate()
            raise
        return self._json(response, operation)

    # ── initiate ──

    @log_async_operation("mpesa.initiate")
    async def initiate(self, transaction: Transaction) -> ProviderHandle:
        method = PaymentMethod(transaction.payment_method)
        if method == PaymentMethod.STK_PUSH:
            return await self._initiate_stk_push(transaction)
        return self._offline_handle(transaction, method)

    async def _initiate_stk_push(self, transaction: Transaction) -> ProviderHandle:
        timestamp = daraja_timestamp(self._clock())
        amount = int(Decimal(transaction.amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        payload = {
            "BusinessShortCode": self._shortcode,
            "Password": stk_password(self._shortcode, self._passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": amount,
            "PartyA": transaction.phone,
            "PartyB": self._shortcode,
            "PhoneNumber": transaction.phone,
            "CallBackURL": self._callback_url,
            "AccountReference": (transaction.reference or transaction.transaction_id)[:12],
            "TransactionDesc": (transaction.description or "Payment")[:13],
        }

        data = await self._authorized_post("/mpesa/stkpush/v1/processrequest", payload, "stk_push")

        if str(data.get("ResponseCode")) != "0" or not data.get("CheckoutRequestID"):
            reason = data.get("ResponseDescription") or data.get("errorMessage") or "STK push rejected"
            raise ProviderRejectedError(self.provider_name, f"STK push failed: {reason}", raw_response=data)

        logger.info(
            "STK push accepted",
            extra_data={
                "transaction_id": transaction.transaction_id,
                "checkout_request_id": data["CheckoutRequestID"],
                "phone": PhoneNumberValidator.mask(transaction.phone or ""),
            },
        )
        return ProviderHandle(
            correlation_id=data["CheckoutRequestID"],
            merchant_request_id=data.get("MerchantRequestID"),
            instructions=STK_INSTRUCTIONS,
            raw=data,
        )

    def _offline_handle(self, transaction: Transaction, method: PaymentMethod) -> ProviderHandle:
        """Paybill/till: ה-callback (C2B) מזוהה לפי מספר החשבון = מזהה העסקה"""
        account_reference = transaction.transaction_id
        amount = f"{Decimal(transaction.amount):.2f}"
        if method == PaymentMethod.TILL:
            instructions = f"Pay KES {amount} to Till {self._till_number}, Reference: {account_reference}"
        else:
            instructions = f"Pay KES {amount} to Paybill {self._shortcode}, Account: {account_reference}"
        return ProviderHandle(correlation_id=account_reference, instructions=instructions)

    # ── callbacks ──

    def normalize_callback(self, payload: Any) -> CanonicalResult:
        if not isinstance(payload, dict):
            raise MalformedCallbackError(self.provider_name, "body must be a JSON object")
        if "Body" in payload:
            return self._normalize_stk(payload)
        if "TransID" in payload:
            return self._normalize_c2b(payload)
        raise MalformedCallbackError(self.provider_name, "unrecognised callback shape")

    def _normalize_stk(self, payload: dict[str, Any]) -> CanonicalResult:
        try:
            callback = StkCallbackPayload.model_validate(payload).Body.stkCallback
        except ValidationError as e:
            raise MalformedCallbackError(self.provider_name, _first_error(e))

        if callback.ResultCode != 0:
            return CanonicalResult(
                provider=self.provider,
                correlation_id=callback.CheckoutRequestID,
                outcome=CallbackOutcome.FAILURE,
                reason=callback.ResultDesc or f"ResultCode {callback.ResultCode}",
            )

        receipt = callback.item("MpesaReceiptNumber")
        if not receipt:
            raise MalformedCallbackError(self.provider_name, "successful callback without MpesaReceiptNumber")

        phone = callback.item("PhoneNumber")
        return CanonicalResult(
            provider=self.provider,
            correlation_id=callback.CheckoutRequestID,
            outcome=CallbackOutcome.SUCCESS,
            receipt=str(receipt),
            settled_amount=self._settled_amount(callback.item("Amount"), "Amount"),
            counterparty=str(phone) if phone is not None else None,
            timestamp=parse_daraja_timestamp(callback.item("TransactionDate")),
        )

    def _normalize_c2b(self, payload: dict[str, Any]) -> CanonicalResult:
        try:
            confirmation = C2BConfirmationPayload.model_validate(payload)
        except ValidationError as e:
            raise MalformedCallbackError(self.provider_name, _first_error(e))

        return CanonicalResult(
            provider=self.provider,
            correlation_id=confirmation.BillRefNumber,
            outcome=CallbackOutcome.SUCCESS,
            receipt=confirmation.TransID,
            settled_amount=self._settled_amount(confirmation.TransAmount, "TransAmount"),
            counterparty=confirmation.MSISDN,
            timestamp=parse_daraja_timestamp(confirmation.TransTime),
        )

    # ── reconciliation ──

    @log_async_operation("mpesa.query_status")
    async def query_status(self, transaction: Transaction) -> Optional[CanonicalResult]:
        if transaction.payment_method != PaymentMethod.STK_PUSH or not transaction.provider_correlation_id:
            # C2B אין לו query — ממתינים ל-confirmation
            return None

        timestamp = daraja_timestamp(self._clock())
        data = await self._authorized_post(
            "/mpesa/stkpushquery/v1/query",
            {
                "BusinessShortCode": self._shortcode,
                "Password": stk_password(self._shortcode, self._passkey, timestamp),
                "Timestamp": timestamp,
                "CheckoutRequestID": transaction.provider_correlation_id,
            },
            "stk_query",
        )

        result_code = data.get("ResultCode")
        if result_code is None:
            return None
        outcome = CallbackOutcome.SUCCESS if str(result_code) == "0" else CallbackOutcome.FAILURE
        return CanonicalResult(
            provider=self.provider,
            correlation_id=transaction.provider_correlation_id,
            outcome=outcome,
            reason=None if outcome == CallbackOutcome.SUCCESS else data.get("ResultDesc"),
        )


def _first_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid')}"
