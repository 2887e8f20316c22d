"""
Equity Bank Provider — bank transfer and card payments.

Authentication is a static merchant API key (Bearer). The bank answers the
initiate call synchronously with its own transaction id and later posts the
outcome to /api/v1/webhooks/equity.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ValidationError, field_validator

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import MalformedCallbackError, ProviderAuthError, ProviderRejectedError
from app.core.logging import get_logger, log_async_operation
from app.db.models.transaction import PaymentMethod, PaymentProvider, Transaction
from app.domain.services.providers.base_provider import (
    BaseProviderAdapter,
    CallbackOutcome,
    CanonicalResult,
    ProviderHandle,
)

logger = get_logger(__name__)

EQUITY_INSTRUCTIONS = "Please complete the payment through your Equity Bank account"
EQUITY_SUCCESS_STATUS = "SUCCESS"
# סטטוסים שאינם סופיים בשאילתת סטטוס
EQUITY_PENDING_STATUSES = frozenset({"PENDING", "PROCESSING", "INITIATED"})


class EquityCallbackPayload(BaseModel):
    transactionId: str
    status: str
    receiptNumber: Optional[str] = None
    amount: Optional[Decimal] = None
    accountNumber: Optional[str] = None
    message: Optional[str] = None

    @field_validator("transactionId", "status")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class EquityProvider(BaseProviderAdapter):

    provider = PaymentProvider.EQUITY
    supported_methods = frozenset({PaymentMethod.BANK_TRANSFER, PaymentMethod.CARD})

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        transport: httpx.AsyncBaseTransport | None = None,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        merchant_id: str | None = None,
        callback_base_url: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(circuit_breaker, transport, timeout_seconds)
        self._base_url = (base_url or settings.EQUITY_BASE_URL).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.EQUITY_API_KEY
        self._merchant_id = merchant_id if merchant_id is not None else settings.EQUITY_MERCHANT_ID
        self._callback_url = f"{callback_base_url or settings.API_BASE_URL}/api/v1/webhooks/equity"

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise ProviderAuthError(self.provider_name, "Equity API key is not configured")
        return {"Authorization": f"Bearer {self._api_key}"}

    @log_async_operation("equity.initiate")
    async def initiate(self, transaction: Transaction) -> ProviderHandle:
        payload = {
            "merchantId": self._merchant_id,
            # סכום כמחרוזת עשרונית — לא float
            "amount": f"{Decimal(transaction.amount):.2f}",
            "currency": transaction.currency,
            "reference": transaction.reference or transaction.transaction_id,
            "description": transaction.description or "Payment",
            "accountNumber": transaction.account_number,
            "callbackUrl": self._callback_url,
            "customerPhone": transaction.phone,
            "paymentMethod": PaymentMethod(transaction.payment_method).value,
        }
        response = await self._send(
            "POST",
            f"{self._base_url}/v1/payments/initiate",
            operation="initiate",
            json=payload,
            headers=self._headers(),
        )
        data = self._json(response, "initiate")

        if data.get("success") is not True:
            raise ProviderRejectedError(
                self.provider_name,
                f"Equity payment failed: {data.get('message') or 'rejected'}",
                raw_response=data,
            )

        body = data.get("data") if isinstance(data.get("data"), dict) else {}
        correlation_id = body.get("transactionId") or data.get("transactionId")
        if not correlation_id:
            raise ProviderRejectedError(
                self.provider_name, "Equity response did not include a transaction id", raw_response=data
            )

        logger.info(
            "Equity payment initiated",
            extra_data={"transaction_id": transaction.transaction_id, "equity_transaction_id": correlation_id},
        )
        return ProviderHandle(
            correlation_id=str(correlation_id),
            merchant_request_id=body.get("merchantRequestId") or data.get("merchantRequestId"),
            instructions=EQUITY_INSTRUCTIONS,
            raw=data,
        )

    def normalize_callback(self, payload: Any) -> CanonicalResult:
        if not isinstance(payload, dict):
            raise MalformedCallbackError(self.provider_name, "body must be a JSON object")
        try:
            callback = EquityCallbackPayload.model_validate(payload)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            raise MalformedCallbackError(self.provider_name, f"{location}: {first.get('msg', 'invalid')}")

        if callback.status.upper() != EQUITY_SUCCESS_STATUS:
            return CanonicalResult(
                provider=self.provider,
                correlation_id=callback.transactionId,
                outcome=CallbackOutcome.FAILURE,
                reason=callback.message or callback.status,
            )

        return CanonicalResult(
            provider=self.provider,
            correlation_id=callback.transactionId,
            outcome=CallbackOutcome.SUCCESS,
            # חלק מה-callbacks לא מחזירים receipt — מזהה הבנק משמש כאסמכתא
            receipt=callback.receiptNumber or callback.transactionId,
            settled_amount=self._settled_amount(callback.amount, "amount"),
            counterparty=callback.accountNumber,
        )

    @log_async_operation("equity.query_status")
    async def query_status(self, transaction: Transaction) -> Optional[CanonicalResult]:
        if not transaction.provider_correlation_id:
            return None

        response = await self._send(
            "GET",
            f"{self._base_url}/v1/payments/status/{transaction.provider_correlation_id}",
            operation="status",
            headers=self._headers(),
        )
        data = self._json(response, "status")
        body = data.get("data") if isinstance(data.get("data"), dict) else data
        status = str(body.get("status") or "").upper()
        if not status or status in EQUITY_PENDING_STATUSES:
            return None

        if status == EQUITY_SUCCESS_STATUS:
            return CanonicalResult(
                provider=self.provider,
                correlation_id=transaction.provider_correlation_id,
                outcome=CallbackOutcome.SUCCESS,
                receipt=body.get("receiptNumber") or transaction.provider_correlation_id,
            )
        return CanonicalResult(
            provider=self.provider,
            correlation_id=transaction.provider_correlation_id,
            outcome=CallbackOutcome.FAILURE,
            reason=body.get("message") or status,
        )
