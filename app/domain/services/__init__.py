"""
Domain Services
"""
from app.domain.services.audit_service import AuditService, RequestContext
from app.domain.services.payment_service import PaymentService
from app.domain.services.subscription_service import SubscriptionService
from app.domain.services.transaction_store import (
    InMemoryTransactionStore,
    SqlAlchemyTransactionStore,
    TransactionStore,
)
from app.domain.services.webhook_dispatcher import WebhookDispatcher, get_webhook_dispatcher

__all__ = [
    "AuditService",
    "RequestContext",
    "PaymentService",
    "SubscriptionService",
    "InMemoryTransactionStore",
    "SqlAlchemyTransactionStore",
    "TransactionStore",
    "WebhookDispatcher",
    "get_webhook_dispatcher",
]
