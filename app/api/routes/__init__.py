"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin import router as admin_router
from app.api.routes.health import router as health_router
from app.api.routes.payments import router as payments_router
from app.api.routes.subscriptions import router as subscriptions_router
from app.api.routes.transactions import router as transactions_router
from app.api.webhooks.providers import router as provider_callbacks_router

router = APIRouter(prefix="/v1")

router.include_router(payments_router, prefix="/payments", tags=["Payments"])
router.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
router.include_router(admin_router, prefix="/admin", tags=["Admin"])
# GET/PATCH /webhooks/{id} ניהול subscriptions; POST /webhooks/{provider} callback מספק
router.include_router(subscriptions_router, prefix="/webhooks", tags=["Webhook Subscriptions"])
router.include_router(provider_callbacks_router, prefix="/webhooks", tags=["Provider Callbacks"])
router.include_router(health_router, prefix="/health", tags=["Health"])
