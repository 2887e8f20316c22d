"""
Webhook Subscription Model - a merchant endpoint plus its delivery policy
"""
import enum
from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.types import JSON

from app.core.clock import utcnow
from app.db.database import Base


class WebhookEventType(str, enum.Enum):
    """Closed vocabulary of events a merchant can subscribe to"""
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_CANCELLED = "payment.cancelled"
    PAYMENT_PROCESSING = "payment.processing"


class WebhookSubscription(Base):
    __tablename__ = "webhook_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    # רשימת ערכי WebhookEventType
    events = Column(JSON, nullable=False, default=list)
    # נוצר פעם אחת ביצירה — אין מסלול עדכון
    secret = Column(String(64), nullable=False)
    max_attempts = Column(Integer, nullable=False, default=3)
    timeout_seconds = Column(Float, nullable=False, default=30.0)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def subscribes_to(self, event: str) -> bool:
        return event in (self.events or [])
