"""
Subscription Service - merchant webhook endpoints and their delivery history
"""
import secrets
from typing import Any, Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import Capability, Principal
from app.core.config import settings
from app.core.exceptions import ConflictException, SubscriptionNotFoundError, ValidationException
from app.core.logging import get_logger
from app.db.models.audit_log import AuditAction
from app.db.models.webhook_delivery import WebhookDelivery
from app.db.models.webhook_subscription import WebhookEventType, WebhookSubscription
from app.domain.services.audit_service import SYSTEM_CONTEXT, AuditService, RequestContext
from app.domain.services.webhook_dispatcher import WebhookDispatcher

logger = get_logger(__name__)

SUBSCRIPTION_RESOURCE = "webhook_subscription"

# שדות שמותר לעדכן — ה-secret לא ביניהם
UPDATABLE_FIELDS = frozenset({"url", "events", "max_attempts", "timeout_seconds", "is_active"})


def generate_webhook_secret() -> str:
    """whsec_ + 32 hex characters"""
    return "whsec_" + secrets.token_hex(16)


def _normalize_events(events: list[str]) -> list[str]:
    if not events:
        raise ValidationException("At least one event is required", field="events")
    normalized = []
    for event in events:
        try:
            value = WebhookEventType(event).value
        except ValueError:
            raise ValidationException(f"Unknown webhook event: {event}", field="events")
        if value not in normalized:
            normalized.append(value)
    return normalized


class SubscriptionService:
    """Service for managing webhook subscriptions"""

    def __init__(self, db: AsyncSession, dispatcher: WebhookDispatcher):
        self.db = db
        self.dispatcher = dispatcher
        self.audit = AuditService(db)

    async def _load(self, subscription_id: int) -> WebhookSubscription:
        result = await self.db.execute(
            select(WebhookSubscription)
            .where(WebhookSubscription.id == subscription_id)
            .execution_options(populate_existing=True)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    async def _ensure_url_free(self, user_id: int, url: str, exclude_id: Optional[int] = None) -> None:
        """ConflictException if another active subscription of the user posts to `url`"""
        query = select(WebhookSubscription.id).where(
            WebhookSubscription.user_id == user_id,
            WebhookSubscription.url == url,
            WebhookSubscription.is_active == True,  # noqa: E712
        )
        if exclude_id is not None:
            query = query.where(WebhookSubscription.id != exclude_id)
        existing = await self.db.execute(query)
        if existing.first() is not None:
            raise ConflictException(
                "An active webhook subscription for this URL already exists",
                details={"url": url},
            )

    async def create(
        self,
        principal: Principal,
        *,
        url: str,
        events: list[str],
        max_attempts: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        context: RequestContext = SYSTEM_CONTEXT,
    ) -> WebhookSubscription:
        """
        Register an endpoint. The signing secret is generated here and never changes.

        Raises:
            ForbiddenException: caller cannot manage webhooks
            ConflictException: an active subscription for the same URL exists
        """
        principal.require(Capability.MANAGE_WEBHOOKS)
        normalized_events = _normalize_events(events)
        await self._ensure_url_free(principal.user_id, url)

        subscription = WebhookSubscription(
            user_id=principal.user_id,
            url=url,
            events=normalized_events,
            secret=generate_webhook_secret(),
            max_attempts=max_attempts or settings.WEBHOOK_DEFAULT_MAX_ATTEMPTS,
            timeout_seconds=timeout_seconds or settings.WEBHOOK_DEFAULT_TIMEOUT_SECONDS,
            is_active=True,
        )
        self.db.add(subscription)
        await self.db.commit()
        await self.db.refresh(subscription)

        await self.audit.record(
            AuditAction.WEBHOOK_SUBSCRIPTION_CREATED,
            SUBSCRIPTION_RESOURCE,
            str(subscription.id),
            user_id=principal.user_id,
            details={"url": url, "events": normalized_events},
            context=context,
        )
        logger.info(
            "Webhook subscription created",
            extra_data={"subscription_id": subscription.id, "user_id": principal.user_id, "events": normalized_events},
        )
        return subscription

    async def list_for_principal(self, principal: Principal) -> list[WebhookSubscription]:
        principal.require(Capability.MANAGE_WEBHOOKS)
        result = await self.db.execute(
            select(WebhookSubscription)
            .where(WebhookSubscription.user_id == principal.user_id)
            .order_by(WebhookSubscription.created_at.desc(), WebhookSubscription.id.desc())
        )
        return list(result.scalars().all())

    async def get(self, principal: Principal, subscription_id: int) -> WebhookSubscription:
        subscription = await self._load(subscription_id)
        principal.require_owner_or_admin(subscription.user_id)
        return subscription

    async def update(
        self,
        principal: Principal,
        subscription_id: int,
        changes: dict[str, Any],
        context: RequestContext = SYSTEM_CONTEXT,
    ) -> WebhookSubscription:
        """
        Toggle the active flag or change delivery settings. Deactivating
        cancels retries that are waiting for their next attempt.

        Raises:
            ValidationException: unknown field, or an explicit null
            ConflictException: the new URL (or a reactivated one) is already
                used by another active subscription of the same user
        """
        principal.require(Capability.MANAGE_WEBHOOKS)
        subscription = await self.get(principal, subscription_id)

        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationException(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        nulls = sorted(key for key, value in changes.items() if value is None)
        if nulls:
            raise ValidationException(
                f"Fields cannot be null: {', '.join(nulls)}", field=nulls[0]
            )
        if "events" in changes:
            changes = {**changes, "events": _normalize_events(changes["events"])}

        url = changes.get("url", subscription.url)
        will_be_active = changes.get("is_active", subscription.is_active)
        if will_be_active and (url != subscription.url or not subscription.is_active):
            await self._ensure_url_free(subscription.user_id, url, exclude_id=subscription.id)

        was_active = subscription.is_active
        for key, value in changes.items():
            setattr(subscription, key, value)
        await self.db.commit()
        await self.db.refresh(subscription)

        if was_active and not subscription.is_active:
            self.dispatcher.cancel_subscription(subscription.id)

        await self.audit.record(
            AuditAction.WEBHOOK_SUBSCRIPTION_UPDATED,
            SUBSCRIPTION_RESOURCE,
            str(subscription.id),
            user_id=principal.user_id,
            details={"changed": sorted(changes)},
            context=context,
        )
        return subscription

    async def list_deliveries(
        self,
        principal: Principal,
        subscription_id: int,
        limit: int = 50,
    ) -> tuple[list[WebhookDelivery], dict[str, Any]]:
        """Newest attempts first, plus totals over the whole history"""
        subscription = await self.get(principal, subscription_id)

        result = await self.db.execute(
            select(WebhookDelivery)
            .where(WebhookDelivery.subscription_id == subscription.id)
            .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc())
            .limit(limit)
        )
        deliveries = list(result.scalars().all())

        totals = (
            await self.db.execute(
                select(
                    func.count(WebhookDelivery.id),
                    func.sum(case((WebhookDelivery.success == True, 1), else_=0)),  # noqa: E712
                ).where(WebhookDelivery.subscription_id == subscription.id)
            )
        ).one()
        total = int(totals[0] or 0)
        successful = int(totals[1] or 0)
        stats = {
            "total": total,
            "successful": successful,
            "failed": total - successful,
            "success_rate": round(successful / total * 100, 2) if total else 0.0,
        }
        return deliveries, stats
