"""
Service wiring for routes.

Collaborators (provider registry, webhook dispatcher) come in through
`Depends` so tests swap them with `app.dependency_overrides`.
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.database import get_db
from app.domain.services.payment_service import PaymentService
from app.domain.services.providers.provider_factory import ProviderRegistry, get_provider_registry
from app.domain.services.subscription_service import SubscriptionService
from app.domain.services.webhook_dispatcher import WebhookDispatcher, get_webhook_dispatcher


def get_payment_service(
    db: AsyncSession = Depends(get_db),
    providers: ProviderRegistry = Depends(get_provider_registry),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
) -> PaymentService:
    return PaymentService(db, providers, dispatcher)


def get_subscription_service(
    db: AsyncSession = Depends(get_db),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
) -> SubscriptionService:
    return SubscriptionService(db, dispatcher)
