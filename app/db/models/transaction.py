"""
Transaction Model - one payment attempt from intent to terminal outcome
"""
import enum
from sqlalchemy import (
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.types import JSON

from app.core.clock import utcnow
from app.db.database import Base


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentProvider(str, enum.Enum):
    MPESA = "mpesa"
    EQUITY = "equity"


class PaymentMethod(str, enum.Enum):
    STK_PUSH = "stk_push"
    PAYBILL = "paybill"
    TILL = "till"
    BANK_TRANSFER = "bank_transfer"
    CARD = "card"


class Transaction(Base):
    """Payment transaction. Status is written only through TransactionStateMachine."""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(String(32), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="KES")
    provider = Column(
        SQLEnum(PaymentProvider, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    payment_method = Column(
        SQLEnum(PaymentMethod, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    phone = Column(String(15), nullable=True)
    account_number = Column(String(32), nullable=True)
    reference = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)

    status = Column(
        SQLEnum(TransactionStatus, values_callable=lambda x: [e.value for e in x]),
        default=TransactionStatus.PENDING,
        nullable=False,
        index=True,
    )

    # מזהים מצד הספק
    provider_correlation_id = Column(String(100), nullable=True, index=True)
    merchant_request_id = Column(String(100), nullable=True)
    receipt_number = Column(String(100), nullable=True)
    settled_amount = Column(Numeric(12, 2), nullable=True)
    counterparty = Column(String(64), nullable=True)
    failure_reason = Column(String(255), nullable=True)
    customer_instructions = Column(Text, nullable=True)

    webhook_attempts = Column(Integer, nullable=False, default=0)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)
    extra_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    initiated_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_transactions_user_created", "user_id", "created_at"),
        Index("ix_transactions_provider_correlation", "provider", "provider_correlation_id"),
    )

    @property
    def is_terminal(self) -> bool:
        from app.state_machine.states import TERMINAL_STATUSES
        return self.status in TERMINAL_STATUSES


# שילובי ספק/אמצעי תשלום נתמכים
PROVIDER_METHODS: dict[PaymentProvider, frozenset[PaymentMethod]] = {
    PaymentProvider.MPESA: frozenset({PaymentMethod.STK_PUSH, PaymentMethod.PAYBILL, PaymentMethod.TILL}),
    PaymentProvider.EQUITY: frozenset({PaymentMethod.BANK_TRANSFER, PaymentMethod.CARD}),
}

DEFAULT_METHODS: dict[PaymentProvider, PaymentMethod] = {
    PaymentProvider.MPESA: PaymentMethod.STK_PUSH,
    PaymentProvider.EQUITY: PaymentMethod.BANK_TRANSFER,
}

# שמות גנריים שה-API מקבל כשם ספק
PROVIDER_ALIASES: dict[str, PaymentProvider] = {
    "mobile-money": PaymentProvider.MPESA,
    "bank": PaymentProvider.EQUITY,
}
