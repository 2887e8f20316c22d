"""
Payment Service - payment intent lifecycle.

Orchestrates the store, the provider adapters, the state machine and the
webhook dispatcher. Capability and ownership checks happen here, once per
operation, against the resolved Principal.
"""
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import Capability, Principal
from app.core.clock import Clock, utcnow
from app.core.config import settings
from app.core.exceptions import (
    InvalidStateTransitionError,
    ProviderError,
    ProviderRejectedError,
    TransactionNotFoundError,
    TransactionNotInitiableError,
    UnknownCorrelationError,
)
from app.core.logging import get_logger
from app.db.models.audit_log import AuditAction
from app.db.models.transaction import Transaction, TransactionStatus
from app.domain.services.audit_service import SYSTEM_CONTEXT, AuditService, RequestContext
from app.domain.services.providers.provider_factory import ProviderRegistry
from app.domain.services.transaction_store import (
    SqlAlchemyTransactionStore,
    TransactionFilter,
    TransactionSpec,
    TransactionStore,
)
from app.domain.services.webhook_dispatcher import WebhookDispatcher
from app.state_machine.manager import TransactionStateMachine, TransitionResult

logger = get_logger(__name__)

TRANSACTION_RESOURCE = "transaction"

CALLBACK_APPLIED = "applied"
CALLBACK_DUPLICATE = "duplicate"
CALLBACK_IGNORED = "ignored"


@dataclass
class CallbackProcessingResult:
    outcome: str
    transaction_id: str
    status: TransactionStatus


@dataclass
class ReconciliationReport:
    expired: int = 0
    resolved: int = 0
    still_processing: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "expired": self.expired,
            "resolved": self.resolved,
            "still_processing": self.still_processing,
            "errors": self.errors,
        }


class PaymentService:
    """Service for the payment intent lifecycle"""

    def __init__(
        self,
        db: AsyncSession,
        providers: ProviderRegistry,
        dispatcher: WebhookDispatcher,
        clock: Clock = utcnow,
        store: Optional[TransactionStore] = None,
    ):
        self.db = db
        self.providers = providers
        self.dispatcher = dispatcher
        self.clock = clock
        self.store = store or SqlAlchemyTransactionStore(db, clock=clock)
        self.state_machine = TransactionStateMachine(self.store, clock)
        self.audit = AuditService(db)

    # ── עזרים ──

    async def _get_owned(self, principal: Principal, transaction_id: str) -> Transaction:
        transaction = await self.store.get(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        principal.require_owner_or_admin(transaction.user_id)
        return transaction

    async def _notify(self, result: TransitionResult) -> None:
        """Fan the transition out to subscribers; delivery problems never undo the transition"""
        event = result.event
        if event is None:
            return
        try:
            await self.dispatcher.dispatch(result.transaction.transaction_id, event)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to start webhook dispatch",
                extra_data={
                    "transaction_id": result.transaction.transaction_id,
                    "event": event.value,
                    "error": str(e),
                },
            )

    async def _expire(self, transaction: Transaction, user_id: Optional[int] = None) -> Optional[TransitionResult]:
        result = await self.state_machine.expire_if_due(transaction)
        if result is not None:
            await self.audit.record(
                AuditAction.PAYMENT_EXPIRED,
                TRANSACTION_RESOURCE,
                transaction.transaction_id,
                user_id=user_id,
                details={"expires_at": transaction.expires_at.isoformat()},
            )
            await self._notify(result)
        return result

    # ── פעולות ──

    async def create_intent(
        self,
        principal: Principal,
        *,
        amount: Decimal,
        provider: str,
        payment_method: Optional[str] = None,
        currency: Optional[str] = None,
        phone: Optional[str] = None,
        account_number: Optional[str] = None,
        reference: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        context: RequestContext = SYSTEM_CONTEXT,
    ) -> Transaction:
        """
        Create a PENDING transaction that expires after
        PAYMENT_INTENT_EXPIRY_MINUTES.

        Raises:
            ForbiddenException: caller cannot create payments
            ValidationException: non-positive amount or unsupported provider/method
        """
        principal.require(Capability.CREATE_PAYMENT)
        transaction = await self.store.create(
            TransactionSpec(
                user_id=principal.user_id,
                amount=amount,
                provider=provider,
                payment_method=payment_method,
                currency=currency or settings.DEFAULT_CURRENCY,
                phone=phone,
                account_number=account_number,
                reference=reference,
                description=description,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                metadata=metadata or {},
            )
        )
        await self.audit.record(
            AuditAction.PAYMENT_INTENT_CREATED,
            TRANSACTION_RESOURCE,
            transaction.transaction_id,
            user_id=principal.user_id,
            details={
                "amount": str(transaction.amount),
                "currency": transaction.currency,
                "provider": transaction.provider.value,
                "payment_method": transaction.payment_method.value,
            },
            context=context,
        )
        return transaction

    async def initiate(
        self,
        principal: Principal,
        transaction_id: str,
        context: RequestContext = SYSTEM_CONTEXT,
    ) -> Transaction:
        """
        Hand a PENDING transaction to its provider.

        The transaction moves to PROCESSING before the provider is called, so
        a concurrent second initiate is refused without reaching the provider.
        A provider rejection marks it FAILED; auth and availability failures
        leave it PROCESSING for the callback or the reconciliation sweep.

        Raises:
            TransactionNotFoundError, ForbiddenException
            TransactionNotInitiableError: not PENDING, expired, or already initiated
            ProviderError: the provider call failed (re-raised after bookkeeping)
        """
        transaction = await self._get_owned(principal, transaction_id)

        if self.state_machine.is_expired(transaction):
            await self._expire(transaction, principal.user_id)
            raise TransactionNotInitiableError(
                TransactionStatus.PENDING.value, transaction_id, "payment intent expired"
            )

        started = await self.state_machine.begin_initiation(transaction_id)
        adapter = self.providers.get(started.transaction.provider)

        try:
            handle = await adapter.initiate(started.transaction)
        except ProviderRejectedError as e:
            failed = await self.state_machine.mark_failed(transaction_id, e.message)
            await self.audit.record(
                AuditAction.PAYMENT_INITIATION_FAILED,
                TRANSACTION_RESOURCE,
                transaction_id,
                user_id=principal.user_id,
                details={"error": e.error_code.value, "status": TransactionStatus.FAILED.value},
                context=context,
            )
            await self._notify(failed)
            raise
        except ProviderError as e:
            logger.warning(
                "Provider initiate failed, transaction left processing",
                extra_data={
                    "transaction_id": transaction_id,
                    "provider": e.provider,
                    "error_code": e.error_code.value,
                },
            )
            await self.audit.record(
                AuditAction.PAYMENT_INITIATION_FAILED,
                TRANSACTION_RESOURCE,
                transaction_id,
                user_id=principal.user_id,
                details={"error": e.error_code.value, "status": TransactionStatus.PROCESSING.value},
                context=context,
            )
            raise

        updated = await self.state_machine.record_handle(transaction_id, handle)
        await self.audit.record(
            AuditAction.PAYMENT_INITIATED,
            TRANSACTION_RESOURCE,
            transaction_id,
            user_id=principal.user_id,
            details={"correlation_id": handle.correlation_id},
            context=context,
        )
        # ביטול מקבילי בזמן הקריאה לספק — לא מודיעים על processing
        if TransactionStatus(updated.status) == TransactionStatus.PROCESSING:
            await self._notify(
                TransitionResult(transaction=updated, applied=True, previous_status=started.previous_status)
            )
        return updated

    async def get_transaction(self, principal: Principal, transaction_id: str) -> Transaction:
        """Owner or admin; a PENDING transaction read past expiry is cancelled first"""
        transaction = await self._get_owned(principal, transaction_id)
        result = await self._expire(transaction, principal.user_id)
        return result.transaction if result is not None else transaction

    async def list_transactions(
        self,
        principal: Principal,
        filters: TransactionFilter,
        page: int,
        limit: int,
    ) -> tuple[list[Transaction], int]:
        return await self.store.list_by_owner(principal.user_id, filters, page, limit)

    async def list_all_transactions(
        self,
        principal: Principal,
        filters: TransactionFilter,
        page: int,
        limit: int,
    ) -> tuple[list[Transaction], int]:
        principal.require(Capability.VIEW_ALL_TRANSACTIONS)
        return await self.store.search(filters, page, limit)

    async def cancel(
        self,
        principal: Principal,
        transaction_id: str,
        context: RequestContext = SYSTEM_CONTEXT,
    ) -> Transaction:
        await self._get_owned(principal, transaction_id)
        result = await self.state_machine.cancel(transaction_id)
        await self.audit.record(
            AuditAction.PAYMENT_CANCELLED,
            TRANSACTION_RESOURCE,
            transaction_id,
            user_id=principal.user_id,
            details={"previous_status": result.previous_status.value},
            context=context,
        )
        await self._notify(result)
        return result.transaction

    async def refund(
        self,
        principal: Principal,
        transaction_id: str,
        context: RequestContext = SYSTEM_CONTEXT,
    ) -> Transaction:
        """
        Record a refund of a COMPLETED payment. Moving money back is done by
        the provider outside this service.
        """
        principal.require(Capability.REFUND_PAYMENT)
        await self._get_owned(principal, transaction_id)
        result = await self.state_machine.refund(transaction_id)
        await self.audit.record(
            AuditAction.PAYMENT_REFUNDED,
            TRANSACTION_RESOURCE,
            transaction_id,
            user_id=principal.user_id,
            details={"amount": str(result.transaction.amount)},
            context=context,
        )
        await self._notify(result)
        return result.transaction

    async def process_callback(
        self,
        provider_name: str,
        payload: Any,
        context: RequestContext = SYSTEM_CONTEXT,
    ) -> CallbackProcessingResult:
        """
        Normalise a provider callback and feed it to the state machine.

        Raises:
            UnknownProviderError: no adapter for `provider_name`
            MalformedCallbackError: body does not match the provider's shape
            UnknownCorrelationError: no transaction carries the correlation id
        """
        adapter = self.providers.get(provider_name)
        result = adapter.normalize_callback(payload)

        try:
            transition = await self.state_machine.apply_result(result)
        except UnknownCorrelationError:
            logger.warning(
                "Callback for unknown correlation id",
                extra_data={"provider": adapter.provider_name, "correlation_id": result.correlation_id},
            )
            raise
        except InvalidStateTransitionError as e:
            # מצב לא חוקי — מתריעים ומחזירים 200 כדי שהספק לא ינסה שוב לנצח
            logger.error(
                "Provider callback rejected by state machine",
                extra_data={
                    "provider": adapter.provider_name,
                    "correlation_id": result.correlation_id,
                    "current_state": e.current_state,
                    "target_state": e.target_state,
                },
            )
            transaction_id = e.details.get("transaction_id", "")
            await self.audit.record(
                AuditAction.PROVIDER_CALLBACK_PROCESSED,
                TRANSACTION_RESOURCE,
                transaction_id,
                details={"outcome": CALLBACK_IGNORED, "reported": result.outcome.value},
                context=context,
            )
            return CallbackProcessingResult(
                outcome=CALLBACK_IGNORED,
                transaction_id=transaction_id,
                status=TransactionStatus(e.current_state),
            )

        transaction = transition.transaction
        outcome = CALLBACK_APPLIED if transition.applied else CALLBACK_DUPLICATE
        await self.audit.record(
            AuditAction.PROVIDER_CALLBACK_PROCESSED,
            TRANSACTION_RESOURCE,
            transaction.transaction_id,
            details={"outcome": outcome, "reported": result.outcome.value, "receipt": result.receipt},
            context=context,
        )
        await self._notify(transition)
        return CallbackProcessingResult(
            outcome=outcome,
            transaction_id=transaction.transaction_id,
            status=TransactionStatus(transaction.status),
        )

    async def reconcile(
        self,
        stale_after_minutes: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> ReconciliationReport:
        """
        Expire stale PENDING intents and resolve PROCESSING transactions the
        provider never called back about, using the adapter status query.
        """
        stale_minutes = stale_after_minutes or settings.RECONCILIATION_STALE_PROCESSING_MINUTES
        limit = batch_size or settings.RECONCILIATION_BATCH_SIZE
        now = self.clock()
        report = ReconciliationReport()

        for transaction in await self.store.list_expired_pending(now, limit):
            if await self._expire(transaction) is not None:
                report.expired += 1

        stale = await self.store.list_stale_processing(now - timedelta(minutes=stale_minutes), limit)
        for transaction in stale:
            if not transaction.provider_correlation_id:
                report.still_processing += 1
                continue
            adapter = self.providers.get(transaction.provider)
            try:
                result = await adapter.query_status(transaction)
            except ProviderError as e:
                logger.warning(
                    "Status query failed during reconciliation",
                    extra_data={
                        "transaction_id": transaction.transaction_id,
                        "provider": e.provider,
                        "error_code": e.error_code.value,
                    },
                )
                report.errors += 1
                continue

            if result is None:
                report.still_processing += 1
                continue

            try:
                transition = await self.state_machine.apply_result(result)
            except (InvalidStateTransitionError, UnknownCorrelationError) as e:
                logger.warning(
                    "Reconciliation result not applied",
                    extra_data={"transaction_id": transaction.transaction_id, "error": e.message},
                )
                report.errors += 1
                continue

            if transition.applied:
                report.resolved += 1
                await self.audit.record(
                    AuditAction.PAYMENT_RECONCILED,
                    TRANSACTION_RESOURCE,
                    transaction.transaction_id,
                    details={"status": TransactionStatus(transition.transaction.status).value},
                )
                await self._notify(transition)

        logger.info("Reconciliation sweep finished", extra_data=report.as_dict())
        return report
