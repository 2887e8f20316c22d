"""
בדיקות ל-adapters של M-Pesa ו-Equity — initiate, נרמול callbacks, שאילתת סטטוס ומיפוי שגיאות.
"""
import asyncio
import base64
import json
from datetime import datetime
from decimal import Decimal

import httpx
import pytest

from app.core.circuit_breaker import CircuitState, get_mpesa_circuit_breaker
from app.core.exceptions import (
    CircuitBreakerOpenError,
    MalformedCallbackError,
    ProviderAuthError,
    ProviderRejectedError,
    ProviderUnavailableError,
    UnknownProviderError,
)
from app.db.models.transaction import PaymentMethod, PaymentProvider, Transaction, TransactionStatus
from app.domain.services.providers.base_provider import CallbackOutcome
from app.domain.services.providers.mpesa_provider import (
    daraja_timestamp,
    parse_daraja_timestamp,
    stk_password,
)
from app.domain.services.providers.provider_factory import ProviderRegistry
from app.domain.services.providers.token_cache import AccessTokenCache
from tests.callback_payloads import (
    c2b_confirmation,
    equity_callback,
    stk_failure_callback,
    stk_success_callback,
)
from tests.provider_fakes import build_equity_provider, build_mpesa_provider

STK_PATH = "/mpesa/stkpush/v1/processrequest"


def _transaction(**overrides) -> Transaction:
    values = dict(
        transaction_id="txn_abc123def456",
        user_id=1,
        amount=Decimal("500.00"),
        currency="KES",
        provider=PaymentProvider.MPESA,
        payment_method=PaymentMethod.STK_PUSH,
        phone="254712345678",
        status=TransactionStatus.PROCESSING,
        extra_metadata={},
    )
    values.update(overrides)
    return Transaction(**values)


def _equity_transaction(**overrides) -> Transaction:
    values = dict(
        provider=PaymentProvider.EQUITY,
        payment_method=PaymentMethod.BANK_TRANSFER,
        phone=None,
        account_number="0170123456789",
    )
    values.update(overrides)
    return _transaction(**values)


@pytest.fixture
def transport(provider_api) -> httpx.MockTransport:
    return httpx.MockTransport(provider_api.handler)


@pytest.fixture
def mpesa(transport):
    return build_mpesa_provider(transport, clock=lambda: datetime(2024, 1, 15, 9, 0, 0))


@pytest.fixture
def equity(transport):
    return build_equity_provider(transport)


class TestDarajaHelpers:

    @pytest.mark.unit
    def test_timestamp_is_nairobi_time(self) -> None:
        assert daraja_timestamp(datetime(2024, 1, 15, 9, 0, 0)) == "20240115120000"

    @pytest.mark.unit
    def test_parse_timestamp_back_to_utc(self) -> None:
        assert parse_daraja_timestamp(20191219102115) == datetime(2019, 12, 19, 7, 21, 15)
        assert parse_daraja_timestamp("garbage") is None
        assert parse_daraja_timestamp(None) is None

    @pytest.mark.unit
    def test_stk_password(self) -> None:
        decoded = base64.b64decode(stk_password("174379", "passkey", "20240115120000")).decode()
        assert decoded == "174379passkey20240115120000"


class TestTokenCache:
    """בדיקות למטמון ה-OAuth token"""

    @pytest.mark.unit
    async def test_concurrent_callers_share_one_refresh(self) -> None:
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return f"token-{calls}", 3600

        cache = AccessTokenCache("test", fetch, shared=False)

        tokens = await asyncio.gather(*(cache.get_token() for _ in range(10)))

        assert set(tokens) == {"token-1"}
        assert calls == 1
        assert cache.refresh_count == 1

    @pytest.mark.unit
    async def test_refreshes_inside_margin(self) -> None:
        now = {"t": 1000.0}
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return f"token-{calls}", 120

        cache = AccessTokenCache("test", fetch, refresh_margin_seconds=60, clock=lambda: now["t"], shared=False)

        assert await cache.get_token() == "token-1"
        now["t"] += 59
        assert await cache.get_token() == "token-1"
        now["t"] += 2
        assert await cache.get_token() == "token-2"

    @pytest.mark.unit
    async def test_shared_token_is_reused_from_redis(self, fake_redis) -> None:
        async def fetch_first():
            return "shared-token", 3600

        async def fetch_never():
            raise AssertionError("should reuse the cached token")

        await AccessTokenCache("mpesa", fetch_first).get_token()
        other_process = AccessTokenCache("mpesa", fetch_never)

        assert await other_process.get_token() == "shared-token"
        assert "provider_token:mpesa" in fake_redis._store

    @pytest.mark.unit
    async def test_invalidated_token_is_not_reloaded(self, fake_redis) -> None:
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return f"token-{calls}", 3600

        cache = AccessTokenCache("mpesa", fetch)
        assert await cache.get_token() == "token-1"

        cache.invalidate()

        assert await cache.get_token() == "token-2"


class TestMpesaInitiate:
    """בדיקות ל-STK push ולתשלום paybill/till"""

    @pytest.mark.unit
    async def test_stk_push_request(self, mpesa, provider_api) -> None:
        handle = await mpesa.initiate(_transaction())

        assert handle.correlation_id == "ws_CO_191220191020363925"
        assert handle.merchant_request_id == "29115-34620561-1"
        assert "PIN" in handle.instructions

        [request] = provider_api.calls_to(STK_PATH)
        assert request.headers["Authorization"] == "Bearer token-1"
        body = json.loads(request.content)
        assert body["Amount"] == 500
        assert body["PhoneNumber"] == "254712345678"
        assert body["Timestamp"] == "20240115120000"
        assert body["CallBackURL"] == "https://pay.example.co.ke/api/v1/webhooks/mpesa"

    @pytest.mark.unit
    async def test_token_fetched_once_for_several_pushes(self, mpesa, provider_api) -> None:
        await mpesa.initiate(_transaction())
        await mpesa.initiate(_transaction(transaction_id="txn_second000001"))
        assert provider_api.oauth_calls == 1

    @pytest.mark.unit
    async def test_rejected_push(self, mpesa, provider_api) -> None:
        provider_api.stk_response = (
            200,
            {"ResponseCode": "1", "ResponseDescription": "Invalid PhoneNumber"},
        )
        with pytest.raises(ProviderRejectedError) as exc_info:
            await mpesa.initiate(_transaction())
        assert "Invalid PhoneNumber" in exc_info.value.message

    @pytest.mark.unit
    async def test_http_400_is_rejection(self, mpesa, provider_api) -> None:
        provider_api.stk_response = (400, {"errorMessage": "Bad Request - Invalid Amount"})
        with pytest.raises(ProviderRejectedError):
            await mpesa.initiate(_transaction())

    @pytest.mark.unit
    async def test_http_401_invalidates_token(self, mpesa, provider_api) -> None:
        provider_api.stk_response = (401, {"errorMessage": "Invalid Access Token"})
        with pytest.raises(ProviderAuthError):
            await mpesa.initiate(_transaction())

        provider_api.stk_response = (200, {"ResponseCode": "0", "CheckoutRequestID": "ws_CO_retry"})
        await mpesa.initiate(_transaction())

        assert provider_api.oauth_calls == 2
        assert provider_api.calls_to(STK_PATH)[-1].headers["Authorization"] == "Bearer token-2"

    @pytest.mark.unit
    async def test_http_503_is_unavailable(self, mpesa, provider_api) -> None:
        provider_api.stk_response = (503, {"errorMessage": "Service Unavailable"})
        with pytest.raises(ProviderUnavailableError):
            await mpesa.initiate(_transaction())

    @pytest.mark.unit
    async def test_timeout_is_unavailable(self) -> None:
        def slow(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        provider = build_mpesa_provider(httpx.MockTransport(slow))
        with pytest.raises(ProviderUnavailableError):
            await provider.initiate(_transaction())

    @pytest.mark.unit
    async def test_missing_credentials_is_auth_error(self, transport) -> None:
        provider = build_mpesa_provider(transport, consumer_key="", consumer_secret="")
        with pytest.raises(ProviderAuthError):
            await provider.initiate(_transaction())

    @pytest.mark.unit
    async def test_paybill_makes_no_outbound_call(self, mpesa, provider_api) -> None:
        handle = await mpesa.initiate(_transaction(payment_method=PaymentMethod.PAYBILL, phone=None))

        assert handle.correlation_id == "txn_abc123def456"
        assert "Paybill 174379" in handle.instructions
        assert "KES 500.00" in handle.instructions
        assert provider_api.requests == []

    @pytest.mark.unit
    async def test_till_instructions(self, mpesa) -> None:
        handle = await mpesa.initiate(_transaction(payment_method=PaymentMethod.TILL, phone=None))
        assert "Till 5566778" in handle.instructions


class TestCircuitBreaker:
    """בדיקות לשילוב ה-circuit breaker בקריאות לספק"""

    @pytest.mark.unit
    async def test_outages_open_the_breaker(self, mpesa, provider_api) -> None:
        provider_api.stk_response = (503, {"errorMessage": "Service Unavailable"})
        for _ in range(5):
            with pytest.raises(ProviderUnavailableError):
                await mpesa.initiate(_transaction())

        assert get_mpesa_circuit_breaker().state == CircuitState.OPEN
        sent = len(provider_api.calls_to(STK_PATH))

        with pytest.raises(CircuitBreakerOpenError):
            await mpesa.initiate(_transaction())
        assert len(provider_api.calls_to(STK_PATH)) == sent

    @pytest.mark.unit
    async def test_rejections_do_not_trip_the_breaker(self, mpesa, provider_api) -> None:
        provider_api.stk_response = (400, {"errorMessage": "Bad Request"})
        for _ in range(8):
            with pytest.raises(ProviderRejectedError):
                await mpesa.initiate(_transaction())

        assert get_mpesa_circuit_breaker().state == CircuitState.CLOSED


class TestMpesaCallbacks:
    """בדיקות לנרמול callbacks של M-Pesa"""

    @pytest.mark.unit
    def test_stk_success(self, mpesa) -> None:
        result = mpesa.normalize_callback(stk_success_callback())

        assert result.outcome == CallbackOutcome.SUCCESS
        assert result.correlation_id == "ws_CO_191220191020363925"
        assert result.receipt == "NLJ7RT61SV"
        assert result.settled_amount == Decimal("500.00")
        assert result.counterparty == "254712345678"
        assert result.timestamp == datetime(2019, 12, 19, 7, 21, 15)

    @pytest.mark.unit
    def test_stk_failure(self, mpesa) -> None:
        result = mpesa.normalize_callback(stk_failure_callback())
        assert result.outcome == CallbackOutcome.FAILURE
        assert result.reason == "Request cancelled by user"
        assert result.receipt is None

    @pytest.mark.unit
    def test_c2b_confirmation(self, mpesa) -> None:
        result = mpesa.normalize_callback(c2b_confirmation("txn_abc123def456"))
        assert result.outcome == CallbackOutcome.SUCCESS
        assert result.correlation_id == "txn_abc123def456"
        assert result.receipt == "RKTQDM7W6S"
        assert result.settled_amount == Decimal("500.00")

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "payload",
        [
            [],
            {"unexpected": True},
            {"Body": {}},
            {"Body": {"stkCallback": {"ResultCode": 0}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1", "ResultCode": "abc"}}},
        ],
    )
    def test_malformed(self, mpesa, payload) -> None:
        with pytest.raises(MalformedCallbackError):
            mpesa.normalize_callback(payload)

    @pytest.mark.unit
    def test_success_without_receipt_is_malformed(self, mpesa) -> None:
        payload = stk_success_callback()
        items = payload["Body"]["stkCallback"]["CallbackMetadata"]["Item"]
        payload["Body"]["stkCallback"]["CallbackMetadata"]["Item"] = [
            item for item in items if item["Name"] != "MpesaReceiptNumber"
        ]
        with pytest.raises(MalformedCallbackError):
            mpesa.normalize_callback(payload)

    @pytest.mark.unit
    @pytest.mark.parametrize("amount", [1e30, "10000000000.00", -5, "five hundred"])
    def test_stk_amount_out_of_range_is_malformed(self, mpesa, amount) -> None:
        """סכום שלא נכנס ל-Numeric(12,2) נדחה כ-callback פגום"""
        with pytest.raises(MalformedCallbackError) as exc_info:
            mpesa.normalize_callback(stk_success_callback(amount=amount))
        assert "Amount" in exc_info.value.message

    @pytest.mark.unit
    @pytest.mark.parametrize("amount", ["1e30", "10000000000.00", "-5.00"])
    def test_c2b_amount_out_of_range_is_malformed(self, mpesa, amount) -> None:
        with pytest.raises(MalformedCallbackError) as exc_info:
            mpesa.normalize_callback(c2b_confirmation("txn_abc123def456", amount=amount))
        assert "TransAmount" in exc_info.value.message

    @pytest.mark.unit
    def test_largest_storable_amount_accepted(self, mpesa) -> None:
        result = mpesa.normalize_callback(c2b_confirmation("txn_abc123def456", amount="9999999999.99"))
        assert result.settled_amount == Decimal("9999999999.99")


class TestMpesaQueryStatus:

    @pytest.mark.unit
    async def test_completed_push(self, mpesa) -> None:
        result = await mpesa.query_status(_transaction(provider_correlation_id="ws_CO_1"))
        assert result.outcome == CallbackOutcome.SUCCESS

    @pytest.mark.unit
    async def test_failed_push(self, mpesa, provider_api) -> None:
        provider_api.stk_query_response = (200, {"ResultCode": "1032", "ResultDesc": "Request cancelled by user"})
        result = await mpesa.query_status(_transaction(provider_correlation_id="ws_CO_1"))
        assert result.outcome == CallbackOutcome.FAILURE
        assert result.reason == "Request cancelled by user"

    @pytest.mark.unit
    async def test_still_pending(self, mpesa, provider_api) -> None:
        provider_api.stk_query_response = (200, {"ResponseCode": "0"})
        assert await mpesa.query_status(_transaction(provider_correlation_id="ws_CO_1")) is None

    @pytest.mark.unit
    async def test_paybill_has_nothing_to_query(self, mpesa, provider_api) -> None:
        transaction = _transaction(payment_method=PaymentMethod.PAYBILL, provider_correlation_id="txn_abc123def456")
        assert await mpesa.query_status(transaction) is None
        assert provider_api.requests == []


class TestEquity:
    """בדיקות ל-adapter של Equity"""

    @pytest.mark.unit
    async def test_initiate(self, equity, provider_api) -> None:
        handle = await equity.initiate(_equity_transaction())

        assert handle.correlation_id == "EQ-7788"
        [request] = provider_api.calls_to("/v1/payments/initiate")
        assert request.headers["Authorization"] == "Bearer equity-api-key"
        body = json.loads(request.content)
        assert body["amount"] == "500.00"
        assert body["accountNumber"] == "0170123456789"
        assert body["paymentMethod"] == "bank_transfer"
        assert body["callbackUrl"] == "https://pay.example.co.ke/api/v1/webhooks/equity"

    @pytest.mark.unit
    async def test_declined(self, equity, provider_api) -> None:
        provider_api.equity_response = (200, {"success": False, "message": "Account blocked"})
        with pytest.raises(ProviderRejectedError) as exc_info:
            await equity.initiate(_equity_transaction())
        assert "Account blocked" in exc_info.value.message

    @pytest.mark.unit
    async def test_missing_api_key(self, transport) -> None:
        provider = build_equity_provider(transport, api_key="")
        with pytest.raises(ProviderAuthError):
            await provider.initiate(_equity_transaction())

    @pytest.mark.unit
    async def test_forbidden(self, equity, provider_api) -> None:
        provider_api.equity_response = (403, {"message": "Forbidden"})
        with pytest.raises(ProviderAuthError):
            await equity.initiate(_equity_transaction())

    @pytest.mark.unit
    def test_callback_success(self, equity) -> None:
        result = equity.normalize_callback(equity_callback())
        assert result.outcome == CallbackOutcome.SUCCESS
        assert result.receipt == "EQR-1001"
        assert result.settled_amount == Decimal("500.00")

    @pytest.mark.unit
    def test_callback_without_receipt_uses_bank_id(self, equity) -> None:
        result = equity.normalize_callback(equity_callback(receipt=None))
        assert result.receipt == "EQ-7788"

    @pytest.mark.unit
    def test_callback_failure(self, equity) -> None:
        result = equity.normalize_callback(equity_callback(status="FAILED"))
        assert result.outcome == CallbackOutcome.FAILURE
        assert result.reason == "Insufficient funds"

    @pytest.mark.unit
    @pytest.mark.parametrize("payload", ["text", {"status": "SUCCESS"}, {"transactionId": " ", "status": "SUCCESS"}])
    def test_callback_malformed(self, equity, payload) -> None:
        with pytest.raises(MalformedCallbackError):
            equity.normalize_callback(payload)

    @pytest.mark.unit
    @pytest.mark.parametrize("amount", [1e30, "10000000000.00", "-1.00"])
    def test_callback_amount_out_of_range_is_malformed(self, equity, amount) -> None:
        with pytest.raises(MalformedCallbackError) as exc_info:
            equity.normalize_callback(equity_callback(amount=amount))
        assert "amount" in exc_info.value.message

    @pytest.mark.unit
    async def test_query_status_pending_then_final(self, equity, provider_api) -> None:
        transaction = _equity_transaction(provider_correlation_id="EQ-7788")
        assert await equity.query_status(transaction) is None

        provider_api.equity_status_response = (200, {"data": {"status": "FAILED", "message": "Timeout at bank"}})
        result = await equity.query_status(transaction)
        assert result.outcome == CallbackOutcome.FAILURE
        assert result.reason == "Timeout at bank"


class TestProviderRegistry:

    @pytest.mark.unit
    def test_lookup_by_alias(self, provider_registry) -> None:
        assert provider_registry.get("mobile-money").provider == PaymentProvider.MPESA
        assert provider_registry.get("bank").provider == PaymentProvider.EQUITY
        assert provider_registry.get(PaymentProvider.MPESA).provider == PaymentProvider.MPESA

    @pytest.mark.unit
    def test_unknown_provider(self, provider_registry) -> None:
        with pytest.raises(UnknownProviderError):
            provider_registry.get("airtel")

    @pytest.mark.unit
    def test_unregistered_provider(self, transport) -> None:
        registry = ProviderRegistry([build_mpesa_provider(transport)])
        with pytest.raises(UnknownProviderError):
            registry.get("equity")
