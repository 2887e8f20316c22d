"""
Database Models
"""
from app.db.models.user import User, UserRole
from app.db.models.transaction import (
    Transaction,
    TransactionStatus,
    PaymentProvider,
    PaymentMethod,
)
from app.db.models.webhook_subscription import WebhookSubscription, WebhookEventType
from app.db.models.webhook_delivery import WebhookDelivery
from app.db.models.audit_log import AuditLog, AuditAction

__all__ = [
    "User",
    "UserRole",
    "Transaction",
    "TransactionStatus",
    "PaymentProvider",
    "PaymentMethod",
    "WebhookSubscription",
    "WebhookEventType",
    "WebhookDelivery",
    "AuditLog",
    "AuditAction",
]
