"""
Custom Exception Hierarchy

Structured exceptions for consistent error handling across the gateway.
Every HTTP-visible error renders as {"success": false, "error": ..., "details": ...}.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    CONFLICT = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Transaction errors (2xxx)
    TRANSACTION_NOT_FOUND = "ERR_2001"
    INVALID_STATE_TRANSITION = "ERR_2002"
    TRANSACTION_NOT_INITIABLE = "ERR_2003"
    UNSUPPORTED_PAYMENT_METHOD = "ERR_2004"

    # Provider errors (3xxx)
    PROVIDER_AUTH_FAILURE = "ERR_3001"
    PROVIDER_REJECTED = "ERR_3002"
    PROVIDER_UNAVAILABLE = "ERR_3003"
    UNKNOWN_PROVIDER = "ERR_3004"

    # Callback ingress errors (4xxx)
    MALFORMED_CALLBACK = "ERR_4001"
    UNKNOWN_CORRELATION = "ERR_4002"
    INVALID_CALLBACK_SIGNATURE = "ERR_4003"

    # Webhook subscription errors (5xxx)
    SUBSCRIPTION_NOT_FOUND = "ERR_5001"
    DELIVERY_EXHAUSTED = "ERR_5002"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
        internal_details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        # מידע פנימי (תשובה גולמית של ספק וכו') — מוצג רק ב-DEBUG
        self.internal_details = internal_details or {}

    def to_dict(self, include_internal: bool = False) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        body: dict[str, Any] = {
            "success": False,
            "error": self.message,
            "code": self.error_code.value,
        }
        if self.details:
            body["details"] = dict(self.details)
        if include_internal and self.internal_details:
            body.setdefault("details", {})["internal"] = self.internal_details
        return body


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class UnauthorizedException(AppException):
    """Missing, invalid or expired credentials"""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message=message,
            error_code=ErrorCode.UNAUTHORIZED,
            status_code=401,
        )


class ForbiddenException(AppException):
    """Authenticated principal lacks the capability or ownership"""

    def __init__(self, message: str = "Access denied", details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.FORBIDDEN,
            status_code=403,
            details=details,
        )


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class ConflictException(AppException):
    """Raised when the request conflicts with current resource state"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.CONFLICT,
            status_code=409,
            details=details,
        )


class TransactionNotFoundError(NotFoundException):
    def __init__(self, transaction_id: str):
        super().__init__("Transaction", transaction_id, ErrorCode.TRANSACTION_NOT_FOUND)


class SubscriptionNotFoundError(NotFoundException):
    def __init__(self, subscription_id: Any):
        super().__init__("Webhook subscription", subscription_id, ErrorCode.SUBSCRIPTION_NOT_FOUND)


class UnknownProviderError(NotFoundException):
    def __init__(self, provider: str):
        super().__init__("Payment provider", provider, ErrorCode.UNKNOWN_PROVIDER)


class UnknownCorrelationError(NotFoundException):
    """Callback is well-formed but matches no transaction"""

    def __init__(self, provider: str, correlation_id: str):
        super().__init__("Transaction", correlation_id, ErrorCode.UNKNOWN_CORRELATION)
        self.details["provider"] = provider


class InvalidStateTransitionError(AppException):
    """Raised when a status transition is not allowed by the state machine"""

    def __init__(
        self,
        current_state: str,
        target_state: str,
        event: str,
        transaction_id: str | None = None,
        status_code: int = 409,
        error_code: ErrorCode = ErrorCode.INVALID_STATE_TRANSITION,
        message: str | None = None,
    ):
        super().__init__(
            message=message or f"Cannot transition from {current_state} to {target_state} on {event}",
            error_code=error_code,
            status_code=status_code,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "event": event,
            }
        )
        self.current_state = current_state
        self.target_state = target_state
        self.event = event
        if transaction_id:
            self.details["transaction_id"] = transaction_id


class TransactionNotInitiableError(InvalidStateTransitionError):
    """Initiate requested on a transaction that is not PENDING or has expired"""

    def __init__(self, current_state: str, transaction_id: str, reason: str):
        super().__init__(
            current_state=current_state,
            target_state="processing",
            event="initiate",
            transaction_id=transaction_id,
            status_code=400,
            error_code=ErrorCode.TRANSACTION_NOT_INITIABLE,
            message=f"Transaction cannot be initiated: {reason}",
        )


class ProviderError(AppException):
    """Base for failures talking to an external payment provider"""

    def __init__(
        self,
        provider: str,
        message: str,
        error_code: ErrorCode,
        status_code: int,
        raw_response: Any = None,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details={"provider": provider},
            internal_details={"raw_response": raw_response} if raw_response is not None else None,
        )
        self.provider = provider


class ProviderAuthError(ProviderError):
    """Credential handshake with the provider failed"""

    def __init__(self, provider: str, message: str = "Provider authentication failed", raw_response: Any = None):
        super().__init__(provider, message, ErrorCode.PROVIDER_AUTH_FAILURE, 502, raw_response)


class ProviderRejectedError(ProviderError):
    """Provider answered but declined the request (non-retryable)"""

    def __init__(self, provider: str, message: str = "Provider rejected the request", raw_response: Any = None):
        super().__init__(provider, message, ErrorCode.PROVIDER_REJECTED, 502, raw_response)


class ProviderUnavailableError(ProviderError):
    """Provider unreachable, timed out, or answered with a server error"""

    def __init__(
        self,
        provider: str,
        message: str = "Provider temporarily unavailable",
        raw_response: Any = None,
        retry_after: float | None = None,
    ):
        super().__init__(provider, message, ErrorCode.PROVIDER_UNAVAILABLE, 503, raw_response)
        if retry_after is not None:
            self.details["retry_after_seconds"] = round(retry_after, 1)


class MalformedCallbackError(AppException):
    """Provider callback body does not match the expected shape"""

    def __init__(self, provider: str, reason: str):
        super().__init__(
            message=f"Malformed {provider} callback: {reason}",
            error_code=ErrorCode.MALFORMED_CALLBACK,
            status_code=400,
            details={"provider": provider},
        )


class InvalidCallbackSignatureError(AppException):
    def __init__(self, provider: str):
        super().__init__(
            message="Invalid callback signature",
            error_code=ErrorCode.INVALID_CALLBACK_SIGNATURE,
            status_code=401,
            details={"provider": provider},
        )


class DeliveryExhaustedError(AppException):
    """All delivery attempts to a subscriber failed. Logged, never returned over HTTP."""

    def __init__(self, subscription_id: int, transaction_id: str, event: str, attempts: int):
        super().__init__(
            message=f"Webhook delivery exhausted after {attempts} attempts",
            error_code=ErrorCode.DELIVERY_EXHAUSTED,
            details={
                "subscription_id": subscription_id,
                "transaction_id": transaction_id,
                "event": event,
                "attempts": attempts,
            },
        )


class CircuitBreakerOpenError(ProviderUnavailableError):
    """Calls to the provider are short-circuited while its breaker is open"""

    def __init__(self, service_name: str, retry_after: float = 0.0):
        super().__init__(
            provider=service_name,
            message=f"Provider {service_name} is temporarily unavailable",
            retry_after=retry_after,
        )
