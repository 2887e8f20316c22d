"""
Audit Log Model — append-only record of security and state relevant actions.

Who did what to which resource, when, and from where. Rows are never updated.
"""
import enum
from sqlalchemy import Column, Integer, DateTime, ForeignKey, String, Enum as SQLEnum
from sqlalchemy.types import JSON

from app.core.clock import utcnow
from app.db.database import Base


class AuditAction(str, enum.Enum):
    PAYMENT_INTENT_CREATED = "payment_intent_created"
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_INITIATION_FAILED = "payment_initiation_failed"
    PAYMENT_CANCELLED = "payment_cancelled"
    PAYMENT_REFUNDED = "payment_refunded"
    PAYMENT_EXPIRED = "payment_expired"
    PROVIDER_CALLBACK_PROCESSED = "provider_callback_processed"
    PAYMENT_RECONCILED = "payment_reconciled"
    WEBHOOK_SUBSCRIPTION_CREATED = "webhook_subscription_created"
    WEBHOOK_SUBSCRIPTION_UPDATED = "webhook_subscription_updated"


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    # NULL כשהפעולה בוצעה ע"י המערכת (callback של ספק, sweep)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    action = Column(
        SQLEnum(AuditAction, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        index=True,
    )
    resource = Column(String(50), nullable=False)
    resource_id = Column(String(64), nullable=False, index=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
