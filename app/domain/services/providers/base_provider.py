"""
Payment provider adapter interface.

Every provider (M-Pesa, Equity) translates a transaction into its own
initiation call and normalises its own callback bodies into a
`CanonicalResult`. Adapters never touch the transaction store; the state
machine is the single writer of transaction state.
"""
from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import (
    MalformedCallbackError,
    ProviderAuthError,
    ProviderError,
    ProviderRejectedError,
    ProviderUnavailableError,
)
from app.core.logging import get_logger
from app.core.validation import AmountValidator
from app.db.models.transaction import PaymentMethod, PaymentProvider, Transaction

logger = get_logger(__name__)

# קודים שנחשבים לתקלה זמנית אצל הספק — נספרים ב-circuit breaker
TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class CallbackOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class CanonicalResult:
    """Provider-agnostic outcome of one payment attempt"""
    provider: PaymentProvider
    correlation_id: str
    outcome: CallbackOutcome
    receipt: Optional[str] = None
    settled_amount: Optional[Decimal] = None
    counterparty: Optional[str] = None
    timestamp: Optional[datetime] = None
    reason: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.outcome == CallbackOutcome.SUCCESS


@dataclass(frozen=True)
class ProviderHandle:
    """What initiate hands back: correlation ids and customer instructions"""
    correlation_id: str
    instructions: str
    merchant_request_id: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


def _counts_as_breaker_failure(error: Exception) -> bool:
    return isinstance(error, ProviderUnavailableError)


class BaseProviderAdapter(ABC):
    """
    Uniform provider interface.

    Subclasses implement `initiate`, `normalize_callback` and `query_status`.
    `_send` performs one HTTP round-trip through the provider's circuit
    breaker and maps transport and HTTP failures onto the ProviderError
    family. It never retries: a repeated initiate could charge twice.
    """

    provider: PaymentProvider
    supported_methods: frozenset[PaymentMethod]

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._transport = transport
        self._timeout = timeout_seconds or settings.PROVIDER_TIMEOUT_SECONDS

    @property
    def provider_name(self) -> str:
        return self.provider.value

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _send(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        **kwargs: Any,
    ) -> httpx.Response:
        return await self._circuit_breaker.execute(
            self._send_once,
            method,
            url,
            operation=operation,
            counts_as_failure=_counts_as_breaker_failure,
            **kwargs,
        )

    async def _send_once(self, method: str, url: str, *, operation: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            logger.warning(
                f"{self.provider_name} {operation} timed out",
                extra_data={"provider": self.provider_name, "operation": operation},
            )
            raise ProviderUnavailableError(self.provider_name, f"{operation} timed out")
        except httpx.RequestError as exc:
            logger.warning(
                f"{self.provider_name} {operation} network error",
                extra_data={"provider": self.provider_name, "operation": operation, "error": str(exc)},
            )
            raise ProviderUnavailableError(self.provider_name, f"{operation} network error")

        if response.status_code in (401, 403):
            raise ProviderAuthError(self.provider_name, raw_response=response.text[:500])
        if response.status_code in TRANSIENT_STATUS_CODES:
            raise ProviderUnavailableError(
                self.provider_name,
                f"{operation} returned status {response.status_code}",
                raw_response=response.text[:500],
            )
        if response.status_code >= 400:
            raise ProviderRejectedError(
                self.provider_name,
                f"{operation} returned status {response.status_code}",
                raw_response=response.text[:500],
            )
        return response

    def _json(self, response: httpx.Response, operation: str) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            raise ProviderRejectedError(
                self.provider_name,
                f"{operation} returned a non-JSON body",
                raw_response=response.text[:500],
            )
        if not isinstance(data, dict):
            raise ProviderRejectedError(self.provider_name, f"{operation} returned an unexpected body")
        return data

    def _settled_amount(self, value: Any, field_name: str) -> Optional[Decimal]:
        """Amount field of a callback; MalformedCallbackError if it is not a storable amount"""
        if value is None:
            return None
        try:
            return AmountValidator.to_settled_amount(value)
        except ValueError:
            raise MalformedCallbackError(self.provider_name, f"{field_name} is not a valid amount")

    @abstractmethod
    async def initiate(self, transaction: Transaction) -> ProviderHandle:
        """
        Start the payment with the provider.

        Raises:
            ProviderAuthError / ProviderRejectedError / ProviderUnavailableError
        """

    @abstractmethod
    def normalize_callback(self, payload: Any) -> CanonicalResult:
        """
        Parse a raw callback body.

        Raises:
            MalformedCallbackError: required fields missing or of the wrong shape
        """

    @abstractmethod
    async def query_status(self, transaction: Transaction) -> Optional[CanonicalResult]:
        """Ask the provider for the final outcome; None while still pending"""


__all__ = [
    "BaseProviderAdapter",
    "CallbackOutcome",
    "CanonicalResult",
    "ProviderError",
    "ProviderHandle",
]
