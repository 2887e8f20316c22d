"""
סכמות תגובה משותפות ל-routes של ה-API

כל תגובה מוצלחת עטופה ב-{"success": true, "message"?, "data": ...}
"""
import math
from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel

from app.core.validation import PhoneNumberValidator
from app.db.models.transaction import Transaction

T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    message: Optional[str] = None
    data: T


def iso_or_none(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _money(value: Optional[Decimal]) -> Optional[str]:
    return f"{Decimal(value):.2f}" if value is not None else None


class TransactionData(BaseModel):
    """Transaction view; money as decimal strings"""
    transaction_id: str
    status: str
    amount: str
    currency: str
    provider: str
    payment_method: str
    phone: Optional[str] = None
    account_number: Optional[str] = None
    reference: Optional[str] = None
    description: Optional[str] = None
    provider_correlation_id: Optional[str] = None
    receipt_number: Optional[str] = None
    settled_amount: Optional[str] = None
    counterparty: Optional[str] = None
    failure_reason: Optional[str] = None
    customer_instructions: Optional[str] = None
    webhook_attempts: int = 0
    metadata: dict[str, Any] = {}
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    initiated_at: Optional[str] = None
    completed_at: Optional[str] = None
    expires_at: Optional[str] = None

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> "TransactionData":
        return cls(
            transaction_id=transaction.transaction_id,
            status=transaction.status.value,
            amount=_money(transaction.amount),
            currency=transaction.currency,
            provider=transaction.provider.value,
            payment_method=transaction.payment_method.value,
            phone=transaction.phone,
            account_number=transaction.account_number,
            reference=transaction.reference,
            description=transaction.description,
            provider_correlation_id=transaction.provider_correlation_id,
            receipt_number=transaction.receipt_number,
            settled_amount=_money(transaction.settled_amount),
            counterparty=transaction.counterparty,
            failure_reason=transaction.failure_reason,
            customer_instructions=transaction.customer_instructions,
            webhook_attempts=transaction.webhook_attempts or 0,
            metadata=dict(transaction.extra_metadata or {}),
            created_at=iso_or_none(transaction.created_at),
            updated_at=iso_or_none(transaction.updated_at),
            initiated_at=iso_or_none(transaction.initiated_at),
            completed_at=iso_or_none(transaction.completed_at),
            expires_at=iso_or_none(transaction.expires_at),
        )


class TransactionSummary(BaseModel):
    """שורת רשימה — טלפון ממוסך"""
    transaction_id: str
    status: str
    amount: str
    currency: str
    provider: str
    payment_method: str
    phone: Optional[str] = None
    reference: Optional[str] = None
    receipt_number: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> "TransactionSummary":
        return cls(
            transaction_id=transaction.transaction_id,
            status=transaction.status.value,
            amount=_money(transaction.amount),
            currency=transaction.currency,
            provider=transaction.provider.value,
            payment_method=transaction.payment_method.value,
            phone=PhoneNumberValidator.mask(transaction.phone) if transaction.phone else None,
            reference=transaction.reference,
            receipt_number=transaction.receipt_number,
            created_at=iso_or_none(transaction.created_at),
            completed_at=iso_or_none(transaction.completed_at),
        )


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if limit else 0)


class TransactionListData(BaseModel):
    transactions: list[TransactionSummary]
    pagination: Pagination
