"""
Celery Tasks - reconciliation sweep

Each task runs on its own event loop, so it builds its own engine,
provider adapters and webhook dispatcher instead of reusing the
process-wide singletons of the API.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Optional

from redis.exceptions import RedisError

from app.workers.celery_app import celery_app
from app.db.database import task_session_factory
from app.db.models.transaction import PaymentProvider
from app.domain.services.payment_service import PaymentService
from app.domain.services.providers.provider_factory import ProviderRegistry, create_provider
from app.domain.services.webhook_dispatcher import WebhookDispatcher
from app.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop — מונע שימוש חוזר
            # ב-client שמחובר ל-event loop סגור בהרצה הבאה
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except (RedisError, OSError) as e:
            logger.warning(
                "כשלון בסגירת Redis בסיום task",
                extra_data={"error": str(e)},
            )
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


def build_task_registry() -> ProviderRegistry:
    """adapters טריים — ה-singleton של ה-API מחזיק httpx client של loop אחר"""
    return ProviderRegistry(create_provider(p) for p in PaymentProvider)


async def _reconcile(
    stale_after_minutes: Optional[int],
    batch_size: Optional[int],
) -> dict:
    async with task_session_factory() as session_factory:
        dispatcher = WebhookDispatcher(session_factory)
        async with session_factory() as db:
            service = PaymentService(db, build_task_registry(), dispatcher)
            report = await service.reconcile(stale_after_minutes, batch_size)
        # ה-loop נסגר בסוף ה-task — ממתינים לכל השליחות כולל ניסיונות חוזרים
        await dispatcher.drain()
        return report.as_dict()


@celery_app.task(name="app.workers.tasks.reconcile_stale_transactions")
def reconcile_stale_transactions(
    stale_after_minutes: Optional[int] = None,
    batch_size: Optional[int] = None,
):
    """
    Cancel expired PENDING intents and resolve stale PROCESSING transactions
    through the provider status query.
    """
    result = run_async(_reconcile(stale_after_minutes, batch_size))
    logger.info("Reconciliation task finished", extra_data=result)
    return result
