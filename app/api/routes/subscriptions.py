"""
Webhook Subscription API Routes
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator

from app.api.dependencies.auth import get_current_principal, get_request_context
from app.api.dependencies.services import get_subscription_service
from app.api.routes.schemas import Envelope, iso_or_none
from app.core.auth import Principal
from app.core.validation import webhook_url_validator
from app.db.models.webhook_delivery import WebhookDelivery
from app.db.models.webhook_subscription import WebhookEventType, WebhookSubscription
from app.domain.services.audit_service import RequestContext
from app.domain.services.subscription_service import SubscriptionService

router = APIRouter()


class SubscriptionCreateRequest(BaseModel):
    url: str
    events: list[WebhookEventType] = Field(..., min_length=1)
    max_attempts: Optional[int] = Field(None, ge=1, le=10)
    timeout_seconds: Optional[float] = Field(None, gt=0, le=60)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return webhook_url_validator(v)


class SubscriptionUpdateRequest(BaseModel):
    url: Optional[str] = None
    events: Optional[list[WebhookEventType]] = Field(None, min_length=1)
    max_attempts: Optional[int] = Field(None, ge=1, le=10)
    timeout_seconds: Optional[float] = Field(None, gt=0, le=60)
    is_active: Optional[bool] = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        return webhook_url_validator(v) if v is not None else None


class SubscriptionData(BaseModel):
    id: int
    url: str
    events: list[str]
    max_attempts: int
    timeout_seconds: float
    is_active: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    # מוחזר רק ביצירה
    secret: Optional[str] = None

    @classmethod
    def from_subscription(cls, subscription: WebhookSubscription, include_secret: bool = False) -> "SubscriptionData":
        return cls(
            id=subscription.id,
            url=subscription.url,
            events=list(subscription.events or []),
            max_attempts=subscription.max_attempts,
            timeout_seconds=subscription.timeout_seconds,
            is_active=subscription.is_active,
            created_at=iso_or_none(subscription.created_at),
            updated_at=iso_or_none(subscription.updated_at),
            secret=subscription.secret if include_secret else None,
        )


class DeliveryData(BaseModel):
    id: int
    transaction_id: str
    event: str
    attempt: int
    success: bool
    response_status: Optional[int] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_delivery(cls, delivery: WebhookDelivery) -> "DeliveryData":
        return cls(
            id=delivery.id,
            transaction_id=delivery.transaction_id,
            event=delivery.event,
            attempt=delivery.attempt,
            success=delivery.success,
            response_status=delivery.response_status,
            error_message=delivery.error_message,
            created_at=iso_or_none(delivery.created_at),
        )


class DeliveryStats(BaseModel):
    total: int
    successful: int
    failed: int
    success_rate: float


class DeliveryHistoryData(BaseModel):
    deliveries: list[DeliveryData]
    stats: DeliveryStats


@router.get(
    "",
    response_model=Envelope[list[SubscriptionData]],
    summary="רשימת webhooks",
    description="ה-subscriptions של המשתמש המחובר. ה-secret אינו מוחזר.",
)
async def list_subscriptions(
    principal: Principal = Depends(get_current_principal),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscriptions = await service.list_for_principal(principal)
    return Envelope(data=[SubscriptionData.from_subscription(s) for s in subscriptions])


@router.post(
    "",
    response_model=Envelope[SubscriptionData],
    status_code=201,
    summary="רישום webhook",
    description="ה-secret לאימות חתימות מוחזר פעם אחת בלבד, בתגובה הזו.",
    responses={
        201: {"description": "ה-webhook נרשם"},
        403: {"description": "אין הרשאת manage_webhooks"},
        409: {"description": "כבר קיים webhook פעיל לאותה כתובת"},
    },
)
async def create_subscription(
    body: SubscriptionCreateRequest,
    principal: Principal = Depends(get_current_principal),
    context: RequestContext = Depends(get_request_context),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = await service.create(
        principal,
        url=body.url,
        events=[e.value for e in body.events],
        max_attempts=body.max_attempts,
        timeout_seconds=body.timeout_seconds,
        context=context,
    )
    return Envelope(
        message="Webhook subscription created",
        data=SubscriptionData.from_subscription(subscription, include_secret=True),
    )


@router.get(
    "/{subscription_id}",
    response_model=Envelope[SubscriptionData],
    summary="פרטי webhook",
    responses={404: {"description": "webhook לא נמצא"}},
)
async def get_subscription(
    subscription_id: int,
    principal: Principal = Depends(get_current_principal),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = await service.get(principal, subscription_id)
    return Envelope(data=SubscriptionData.from_subscription(subscription))


@router.patch(
    "/{subscription_id}",
    response_model=Envelope[SubscriptionData],
    summary="עדכון webhook",
    description="is_active=false מבטל ניסיונות חוזרים שממתינים לשליחה.",
    responses={404: {"description": "webhook לא נמצא"}},
)
async def update_subscription(
    subscription_id: int,
    body: SubscriptionUpdateRequest,
    principal: Principal = Depends(get_current_principal),
    context: RequestContext = Depends(get_request_context),
    service: SubscriptionService = Depends(get_subscription_service),
):
    changes = body.model_dump(exclude_unset=True, mode="json")
    subscription = await service.update(principal, subscription_id, changes, context)
    return Envelope(message="Webhook subscription updated", data=SubscriptionData.from_subscription(subscription))


@router.get(
    "/{subscription_id}/deliveries",
    response_model=Envelope[DeliveryHistoryData],
    summary="היסטוריית שליחות",
    description="הניסיונות האחרונים, מהחדש לישן, וסטטיסטיקה על כל ההיסטוריה.",
    responses={404: {"description": "webhook לא נמצא"}},
)
async def list_deliveries(
    subscription_id: int,
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
    service: SubscriptionService = Depends(get_subscription_service),
):
    deliveries, stats = await service.list_deliveries(principal, subscription_id, limit)
    return Envelope(
        data=DeliveryHistoryData(
            deliveries=[DeliveryData.from_delivery(d) for d in deliveries],
            stats=DeliveryStats(**stats),
        )
    )
