"""
Webhook Delivery Model - immutable record of one delivery attempt
"""
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text

from app.core.clock import utcnow
from app.db.database import Base


class WebhookDelivery(Base):
    __tablename__ = "webhook_deliveries"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("webhook_subscriptions.id"), nullable=False, index=True)
    transaction_id = Column(String(32), nullable=False, index=True)
    event = Column(String(50), nullable=False)
    payload = Column(Text, nullable=False)
    attempt = Column(Integer, nullable=False)  # 1-based
    success = Column(Boolean, nullable=False)
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index(
            "ix_webhook_deliveries_triple",
            "subscription_id",
            "transaction_id",
            "event",
            "attempt",
            unique=True,
        ),
    )
