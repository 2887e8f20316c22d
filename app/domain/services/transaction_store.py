"""
Transaction Store - authoritative record of transaction state.

`TransactionStore` is the interface the state machine, payment service and
dispatcher depend on. `SqlAlchemyTransactionStore` is the production backend;
`InMemoryTransactionStore` keeps everything in a dict and is used where no
database is wanted.

Status is never written through `update`; only `compare_and_set_status`
changes it, and only the state machine calls that.
"""
import asyncio
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, utcnow
from app.core.config import settings
from app.core.exceptions import ErrorCode, ValidationException
from app.core.logging import get_logger
from app.db.models.transaction import (
    PROVIDER_ALIASES,
    PROVIDER_METHODS,
    DEFAULT_METHODS,
    PaymentMethod,
    PaymentProvider,
    Transaction,
    TransactionStatus,
)

logger = get_logger(__name__)


def generate_transaction_id() -> str:
    """txn_ + 12 URL-safe random characters"""
    return "txn_" + secrets.token_urlsafe(9)


def resolve_provider(name: str) -> PaymentProvider:
    """'mpesa' / 'mobile-money' → PaymentProvider.MPESA"""
    normalized = (name or "").strip().lower()
    if normalized in PROVIDER_ALIASES:
        return PROVIDER_ALIASES[normalized]
    try:
        return PaymentProvider(normalized)
    except ValueError:
        raise ValidationException(
            f"Unsupported payment provider: {name}",
            field="provider",
            error_code=ErrorCode.UNSUPPORTED_PAYMENT_METHOD,
        )


@dataclass
class TransactionSpec:
    """Input for a new payment intent"""
    user_id: int
    amount: Decimal
    provider: str
    payment_method: Optional[str] = None
    currency: str = "KES"
    phone: Optional[str] = None
    account_number: Optional[str] = None
    reference: Optional[str] = None
    description: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class TransactionFilter:
    status: Optional[TransactionStatus] = None
    provider: Optional[PaymentProvider] = None
    user_id: Optional[int] = None


class TransactionStore(ABC):
    """Storage interface for transactions"""

    def __init__(self, clock: Clock = utcnow, expiry_minutes: int | None = None):
        self.clock = clock
        self.expiry_minutes = (
            expiry_minutes if expiry_minutes is not None else settings.PAYMENT_INTENT_EXPIRY_MINUTES
        )

    def build_transaction(self, spec: TransactionSpec) -> Transaction:
        """
        Validate a spec and materialise a PENDING transaction.

        Raises:
            ValidationException: amount not positive, or provider/method not supported
        """
        amount = Decimal(spec.amount)
        if not amount.is_finite() or amount <= 0:
            raise ValidationException("Amount must be greater than zero", field="amount")

        provider = resolve_provider(spec.provider)
        if spec.payment_method:
            try:
                method = PaymentMethod(spec.payment_method)
            except ValueError:
                method = None
        else:
            method = DEFAULT_METHODS[provider]
        if method is None or method not in PROVIDER_METHODS[provider]:
            raise ValidationException(
                f"Payment method {spec.payment_method} is not supported by {provider.value}",
                field="payment_method",
                error_code=ErrorCode.UNSUPPORTED_PAYMENT_METHOD,
            )
        if method == PaymentMethod.STK_PUSH and not spec.phone:
            raise ValidationException("Phone number is required for STK push", field="phone")
        if provider == PaymentProvider.EQUITY and not (spec.account_number or spec.phone):
            raise ValidationException(
                "Account number or phone is required for bank payments",
                field="account_number",
            )

        now = self.clock()
        return Transaction(
            transaction_id=generate_transaction_id(),
            user_id=spec.user_id,
            amount=amount,
            currency=spec.currency,
            provider=provider,
            payment_method=method,
            phone=spec.phone,
            account_number=spec.account_number,
            reference=spec.reference,
            description=spec.description,
            status=TransactionStatus.PENDING,
            webhook_attempts=0,
            ip_address=spec.ip_address,
            user_agent=spec.user_agent,
            extra_metadata=dict(spec.metadata),
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(minutes=self.expiry_minutes),
        )

    @abstractmethod
    async def create(self, spec: TransactionSpec) -> Transaction:
        ...

    @abstractmethod
    async def get(self, transaction_id: str) -> Optional[Transaction]:
        ...

    @abstractmethod
    async def get_by_correlation_id(
        self, provider: PaymentProvider, correlation_id: str
    ) -> Optional[Transaction]:
        ...

    @abstractmethod
    async def update(self, transaction_id: str, changes: dict[str, Any]) -> Optional[Transaction]:
        """Apply non-status field changes and refresh updated_at"""

    @abstractmethod
    async def compare_and_set_status(
        self,
        transaction_id: str,
        expected: TransactionStatus,
        changes: dict[str, Any],
    ) -> Optional[Transaction]:
        """
        Atomically apply `changes` (which include the new status) only if the
        stored status still equals `expected`. Returns None when it does not.
        """

    @abstractmethod
    async def search(
        self, filters: TransactionFilter, page: int, limit: int
    ) -> tuple[list[Transaction], int]:
        """Newest first; total counts every match before the page is sliced"""

    async def list_by_owner(
        self,
        owner_id: int,
        filters: TransactionFilter,
        page: int,
        limit: int,
    ) -> tuple[list[Transaction], int]:
        scoped = TransactionFilter(status=filters.status, provider=filters.provider, user_id=owner_id)
        return await self.search(scoped, page, limit)

    @abstractmethod
    async def list_expired_pending(self, now: datetime, limit: int) -> list[Transaction]:
        ...

    @abstractmethod
    async def list_stale_processing(self, initiated_before: datetime, limit: int) -> list[Transaction]:
        ...

    @abstractmethod
    async def increment_webhook_attempts(self, transaction_id: str) -> None:
        ...


def _check_no_status(changes: dict[str, Any]) -> None:
    if "status" in changes:
        raise ValueError("status must be changed through the state machine")


class SqlAlchemyTransactionStore(TransactionStore):
    """Transaction store on an AsyncSession; each write commits"""

    def __init__(self, db: AsyncSession, clock: Clock = utcnow, expiry_minutes: int | None = None):
        super().__init__(clock=clock, expiry_minutes=expiry_minutes)
        self.db = db

    async def create(self, spec: TransactionSpec) -> Transaction:
        transaction = self.build_transaction(spec)
        self.db.add(transaction)
        await self.db.commit()
        await self.db.refresh(transaction)
        logger.info(
            "Transaction created",
            extra_data={
                "transaction_id": transaction.transaction_id,
                "user_id": transaction.user_id,
                "provider": transaction.provider.value,
                "amount": str(transaction.amount),
            },
        )
        return transaction

    async def get(self, transaction_id: str) -> Optional[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_correlation_id(
        self, provider: PaymentProvider, correlation_id: str
    ) -> Optional[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .where(
                Transaction.provider == provider,
                Transaction.provider_correlation_id == correlation_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def update(self, transaction_id: str, changes: dict[str, Any]) -> Optional[Transaction]:
        _check_no_status(changes)
        await self.db.execute(
            update(Transaction)
            .where(Transaction.transaction_id == transaction_id)
            .values(**changes, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return await self.get(transaction_id)

    async def compare_and_set_status(
        self,
        transaction_id: str,
        expected: TransactionStatus,
        changes: dict[str, Any],
    ) -> Optional[Transaction]:
        # UPDATE ... WHERE status = :expected — אטומי בכל DB, ללא נעילה מחזיקה
        result = await self.db.execute(
            update(Transaction)
            .where(
                Transaction.transaction_id == transaction_id,
                Transaction.status == expected,
            )
            .values(**changes, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            return None
        await self.db.commit()
        return await self.get(transaction_id)

    @staticmethod
    def _conditions(filters: TransactionFilter) -> list:
        conditions = []
        if filters.user_id is not None:
            conditions.append(Transaction.user_id == filters.user_id)
        if filters.status is not None:
            conditions.append(Transaction.status == filters.status)
        if filters.provider is not None:
            conditions.append(Transaction.provider == filters.provider)
        return conditions

    async def search(
        self, filters: TransactionFilter, page: int, limit: int
    ) -> tuple[list[Transaction], int]:
        conditions = self._conditions(filters)
        total = await self.db.scalar(
            select(func.count()).select_from(Transaction).where(*conditions)
        )
        result = await self.db.execute(
            select(Transaction)
            .where(*conditions)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), int(total or 0)

    async def list_expired_pending(self, now: datetime, limit: int) -> list[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .where(
                Transaction.status == TransactionStatus.PENDING,
                Transaction.expires_at <= now,
            )
            .order_by(Transaction.expires_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_stale_processing(self, initiated_before: datetime, limit: int) -> list[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .where(
                Transaction.status == TransactionStatus.PROCESSING,
                Transaction.initiated_at <= initiated_before,
            )
            .order_by(Transaction.initiated_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def increment_webhook_attempts(self, transaction_id: str) -> None:
        await self.db.execute(
            update(Transaction)
            .where(Transaction.transaction_id == transaction_id)
            .values(webhook_attempts=Transaction.webhook_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()


class InMemoryTransactionStore(TransactionStore):
    """Dict-backed store; a single asyncio.Lock makes check-and-set atomic"""

    def __init__(self, clock: Clock = utcnow, expiry_minutes: int | None = None):
        super().__init__(clock=clock, expiry_minutes=expiry_minutes)
        self._items: dict[str, Transaction] = {}
        self._lock = asyncio.Lock()
        self._next_id = 1

    async def create(self, spec: TransactionSpec) -> Transaction:
        transaction = self.build_transaction(spec)
        async with self._lock:
            transaction.id = self._next_id
            self._next_id += 1
            self._items[transaction.transaction_id] = transaction
        return transaction

    async def get(self, transaction_id: str) -> Optional[Transaction]:
        return self._items.get(transaction_id)

    async def get_by_correlation_id(
        self, provider: PaymentProvider, correlation_id: str
    ) -> Optional[Transaction]:
        for transaction in self._items.values():
            if transaction.provider == provider and transaction.provider_correlation_id == correlation_id:
                return transaction
        return None

    async def update(self, transaction_id: str, changes: dict[str, Any]) -> Optional[Transaction]:
        _check_no_status(changes)
        async with self._lock:
            transaction = self._items.get(transaction_id)
            if transaction is None:
                return None
            for key, value in changes.items():
                setattr(transaction, key, value)
            transaction.updated_at = self.clock()
            return transaction

    async def compare_and_set_status(
        self,
        transaction_id: str,
        expected: TransactionStatus,
        changes: dict[str, Any],
    ) -> Optional[Transaction]:
        async with self._lock:
            transaction = self._items.get(transaction_id)
            if transaction is None or transaction.status != expected:
                return None
            for key, value in changes.items():
                setattr(transaction, key, value)
            transaction.updated_at = self.clock()
            return transaction

    def _matches(self, transaction: Transaction, filters: TransactionFilter) -> bool:
        if filters.user_id is not None and transaction.user_id != filters.user_id:
            return False
        if filters.status is not None and transaction.status != filters.status:
            return False
        if filters.provider is not None and transaction.provider != filters.provider:
            return False
        return True

    async def search(
        self, filters: TransactionFilter, page: int, limit: int
    ) -> tuple[list[Transaction], int]:
        matching = [t for t in self._items.values() if self._matches(t, filters)]
        matching.sort(key=lambda t: (t.created_at, t.id), reverse=True)
        offset = (page - 1) * limit
        return matching[offset:offset + limit], len(matching)

    async def list_expired_pending(self, now: datetime, limit: int) -> list[Transaction]:
        expired = [
            t for t in self._items.values()
            if t.status == TransactionStatus.PENDING and t.expires_at <= now
        ]
        return sorted(expired, key=lambda t: t.expires_at)[:limit]

    async def list_stale_processing(self, initiated_before: datetime, limit: int) -> list[Transaction]:
        stale = [
            t for t in self._items.values()
            if t.status == TransactionStatus.PROCESSING
            and t.initiated_at is not None
            and t.initiated_at <= initiated_before
        ]
        return sorted(stale, key=lambda t: t.initiated_at)[:limit]

    async def increment_webhook_attempts(self, transaction_id: str) -> None:
        async with self._lock:
            transaction = self._items.get(transaction_id)
            if transaction is not None:
                transaction.webhook_attempts = (transaction.webhook_attempts or 0) + 1
