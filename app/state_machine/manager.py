"""
Transaction State Machine - the single writer of transaction status.

Every status change goes through `transition`, which validates the move
against TRANSACTION_TRANSITIONS and then performs a compare-and-set on the
store. Two callers racing on the same transaction cannot both win: the loser
sees the status the winner wrote and gets InvalidStateTransitionError (or an
idempotent no-op when the winner produced exactly the outcome it wanted).
"""
from dataclasses import dataclass
from typing import Any, Optional

from app.core.clock import Clock, utcnow
from app.core.exceptions import (
    InvalidStateTransitionError,
    TransactionNotFoundError,
    TransactionNotInitiableError,
    UnknownCorrelationError,
)
from app.core.logging import get_logger
from app.db.models.transaction import Transaction, TransactionStatus
from app.db.models.webhook_subscription import WebhookEventType
from app.domain.services.providers.base_provider import CanonicalResult, ProviderHandle
from app.domain.services.transaction_store import TransactionStore
from app.state_machine.states import STATUS_EVENTS, can_transition, is_terminal

logger = get_logger(__name__)

EXPIRED_REASON = "Payment intent expired"


@dataclass
class TransitionResult:
    transaction: Transaction
    applied: bool
    previous_status: TransactionStatus

    @property
    def event(self) -> Optional[WebhookEventType]:
        """The subscriber event to fan out, or None for a no-op"""
        if not self.applied:
            return None
        return STATUS_EVENTS.get(self.transaction.status)


class TransactionStateMachine:
    """Validates and applies transaction status transitions"""

    def __init__(self, store: TransactionStore, clock: Clock = utcnow):
        self.store = store
        self.clock = clock

    async def _load(self, transaction_id: str) -> Transaction:
        transaction = await self.store.get(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        return transaction

    async def transition(
        self,
        transaction_id: str,
        target: TransactionStatus,
        event: str,
        changes: Optional[dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        Move a transaction to `target`.

        Raises:
            TransactionNotFoundError: unknown transaction id
            InvalidStateTransitionError: the move is not allowed from the
                current status, or a concurrent writer changed it first
        """
        transaction = await self._load(transaction_id)
        current = TransactionStatus(transaction.status)

        if not can_transition(current, target):
            logger.warning(
                "Invalid state transition attempted",
                extra_data={
                    "transaction_id": transaction_id,
                    "current_state": current.value,
                    "target_state": target.value,
                    "event": event,
                },
            )
            raise InvalidStateTransitionError(current.value, target.value, event, transaction_id)

        values = dict(changes or {})
        values["status"] = target
        # REFUNDED שומר את זמן ההשלמה המקורי
        if is_terminal(target) and target != TransactionStatus.REFUNDED:
            values["completed_at"] = self.clock()

        updated = await self.store.compare_and_set_status(transaction_id, current, values)
        if updated is None:
            winner = await self._load(transaction_id)
            logger.warning(
                "Concurrent state transition lost",
                extra_data={
                    "transaction_id": transaction_id,
                    "expected_state": current.value,
                    "actual_state": TransactionStatus(winner.status).value,
                    "target_state": target.value,
                    "event": event,
                },
            )
            raise InvalidStateTransitionError(
                TransactionStatus(winner.status).value, target.value, event, transaction_id
            )

        logger.info(
            "Transaction state changed",
            extra_data={
                "transaction_id": transaction_id,
                "from_state": current.value,
                "to_state": target.value,
                "event": event,
            },
        )
        return TransitionResult(transaction=updated, applied=True, previous_status=current)

    # ── initiation ──

    def is_expired(self, transaction: Transaction) -> bool:
        return (
            TransactionStatus(transaction.status) == TransactionStatus.PENDING
            and self.clock() >= transaction.expires_at
        )

    async def expire_if_due(self, transaction: Transaction) -> Optional[TransitionResult]:
        """Cancel a PENDING transaction read past its expiry. None when not due or already moved on."""
        if not self.is_expired(transaction):
            return None
        try:
            return await self.transition(
                transaction.transaction_id,
                TransactionStatus.CANCELLED,
                "expire",
                {"failure_reason": EXPIRED_REASON},
            )
        except InvalidStateTransitionError:
            return None

    async def begin_initiation(self, transaction_id: str) -> TransitionResult:
        """
        PENDING → PROCESSING before the provider is called, so a second
        concurrent initiate cannot reach the provider.

        Raises:
            TransactionNotInitiableError: not PENDING, expired (the transaction
                is cancelled on the way out), or initiated concurrently
        """
        transaction = await self._load(transaction_id)
        status = TransactionStatus(transaction.status)

        if status != TransactionStatus.PENDING:
            raise TransactionNotInitiableError(status.value, transaction_id, f"status is {status.value}")

        if self.is_expired(transaction):
            await self.expire_if_due(transaction)
            raise TransactionNotInitiableError(status.value, transaction_id, "payment intent expired")

        try:
            return await self.transition(
                transaction_id,
                TransactionStatus.PROCESSING,
                "initiate",
                {"initiated_at": self.clock()},
            )
        except InvalidStateTransitionError as e:
            raise TransactionNotInitiableError(e.current_state, transaction_id, "already initiated")

    async def record_handle(self, transaction_id: str, handle: ProviderHandle) -> Transaction:
        """Stamp provider correlation ids on a PROCESSING transaction (not a status change)"""
        updated = await self.store.update(
            transaction_id,
            {
                "provider_correlation_id": handle.correlation_id,
                "merchant_request_id": handle.merchant_request_id,
                "customer_instructions": handle.instructions,
            },
        )
        if updated is None:
            raise TransactionNotFoundError(transaction_id)
        return updated

    async def mark_failed(self, transaction_id: str, reason: str) -> TransitionResult:
        return await self.transition(
            transaction_id,
            TransactionStatus.FAILED,
            "initiate_failed",
            {"failure_reason": reason[:255]},
        )

    # ── provider results ──

    async def apply_result(self, result: CanonicalResult) -> TransitionResult:
        """
        Apply a normalised provider outcome to the transaction it correlates to.

        A repeat of an outcome that was already applied is an idempotent no-op
        (applied=False). Any other disallowed move raises.

        Raises:
            UnknownCorrelationError: no transaction carries this correlation id
            InvalidStateTransitionError: e.g. a failure report for a completed payment
        """
        transaction = await self.store.get_by_correlation_id(result.provider, result.correlation_id)
        if transaction is None:
            raise UnknownCorrelationError(result.provider.value, result.correlation_id)

        target = TransactionStatus.COMPLETED if result.is_success else TransactionStatus.FAILED
        if TransactionStatus(transaction.status) == target:
            logger.info(
                "Duplicate provider result ignored",
                extra_data={
                    "transaction_id": transaction.transaction_id,
                    "correlation_id": result.correlation_id,
                    "status": target.value,
                },
            )
            return TransitionResult(transaction=transaction, applied=False, previous_status=target)

        if result.is_success:
            changes = {
                "receipt_number": result.receipt,
                "settled_amount": result.settled_amount,
                "counterparty": result.counterparty,
            }
            event = "provider_success"
        else:
            changes = {"failure_reason": (result.reason or "Payment failed")[:255]}
            event = "provider_failure"

        try:
            return await self.transition(transaction.transaction_id, target, event, changes)
        except InvalidStateTransitionError:
            # callback כפול שהגיע במקביל — המנצח כבר כתב את אותה תוצאה
            current = await self._load(transaction.transaction_id)
            if TransactionStatus(current.status) == target:
                return TransitionResult(transaction=current, applied=False, previous_status=target)
            raise

    # ── explicit actions ──

    async def cancel(self, transaction_id: str, reason: str = "Cancelled by request") -> TransitionResult:
        return await self.transition(
            transaction_id,
            TransactionStatus.CANCELLED,
            "cancel",
            {"failure_reason": reason[:255]},
        )

    async def refund(self, transaction_id: str) -> TransitionResult:
        return await self.transition(transaction_id, TransactionStatus.REFUNDED, "refund")
