"""
Webhook Dispatcher - fan-out of transaction events to merchant endpoints.

Each (subscription, event) pair is delivered by its own asyncio task so one
slow or broken endpoint never holds up another. A failed attempt is retried
after an exponential backoff, up to the subscription's max_attempts, and
every attempt (successful or not) is appended to webhook_deliveries.

Retries sleep inside the task. A sleeping retry can be cancelled
(subscription deactivated, process shutting down); an attempt already on
the wire is always allowed to finish so its delivery record is written.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import Clock, utcnow
from app.core.config import settings
from app.core.exceptions import DeliveryExhaustedError
from app.core.logging import get_logger
from app.core.signatures import canonical_json, sign_payload
from app.db.models.transaction import Transaction
from app.db.models.webhook_delivery import WebhookDelivery
from app.db.models.webhook_subscription import WebhookEventType, WebhookSubscription
from app.domain.services.transaction_store import SqlAlchemyTransactionStore, TransactionStore

logger = get_logger(__name__)

RESPONSE_SNIPPET_LENGTH = 500

Sleep = Callable[[float], Awaitable[Any]]


def calculate_backoff_seconds(
    attempt: int,
    *,
    base_seconds: float,
    max_backoff_seconds: float,
) -> float:
    """
    Delay after failed attempt number `attempt` (1-based):

        base_seconds * 2 ** (attempt - 1), capped at max_backoff_seconds
    """
    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0.0
    exponent = max(attempt - 1, 0)
    # 2**64 כבר גדול מכל תקרה סבירה — לא מחשבים חזקות ענק
    if exponent >= 64:
        return float(max_backoff_seconds)
    return float(min(base_seconds * (1 << exponent), max_backoff_seconds))


def _format_amount(amount: Any) -> str:
    return f"{Decimal(amount):.2f}"


def build_event_payload(transaction: Transaction, event: WebhookEventType, timestamp) -> dict[str, Any]:
    """Canonical event body. Amounts are decimal strings, never floats."""
    payload: dict[str, Any] = {
        "event": event.value,
        "transaction_id": transaction.transaction_id,
        "status": getattr(transaction.status, "value", transaction.status),
        "amount": _format_amount(transaction.amount),
        "currency": transaction.currency,
        "provider": getattr(transaction.provider, "value", transaction.provider),
        "timestamp": timestamp.isoformat(),
        "metadata": dict(transaction.extra_metadata or {}),
    }
    if transaction.receipt_number:
        payload["receipt_number"] = transaction.receipt_number
    return payload


@dataclass(frozen=True)
class DeliveryTarget:
    """Detached copy of a subscription, safe to use after its session closes"""
    subscription_id: int
    url: str
    secret: str
    max_attempts: int
    timeout_seconds: float

    @classmethod
    def from_subscription(cls, subscription: WebhookSubscription) -> "DeliveryTarget":
        return cls(
            subscription_id=subscription.id,
            url=subscription.url,
            secret=subscription.secret,
            max_attempts=max(1, subscription.max_attempts or 1),
            timeout_seconds=subscription.timeout_seconds or settings.WEBHOOK_DEFAULT_TIMEOUT_SECONDS,
        )


class WebhookDispatcher:
    """
    Delivers events to active subscriptions with signed payloads and retries.

    `session_factory` opens a fresh AsyncSession per unit of work; delivery
    tasks outlive the request that triggered them, so they never borrow the
    request's session. Subscriptions and delivery records live on those
    sessions. Transactions are read and their attempt counter bumped through
    a TransactionStore: the injected `store` if given, otherwise a
    SqlAlchemyTransactionStore on a fresh session.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transport: httpx.AsyncBaseTransport | None = None,
        *,
        store: TransactionStore | None = None,
        base_delay_seconds: float | None = None,
        max_delay_seconds: float | None = None,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
        user_agent: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._transport = transport
        self._base_delay = (
            base_delay_seconds if base_delay_seconds is not None else settings.WEBHOOK_RETRY_BASE_SECONDS
        )
        self._max_delay = (
            max_delay_seconds if max_delay_seconds is not None else settings.WEBHOOK_MAX_BACKOFF_SECONDS
        )
        self._clock = clock
        self._sleep = sleep
        self._user_agent = user_agent or settings.WEBHOOK_USER_AGENT

        # task → subscription_id לכל משימת משלוח חיה
        self._jobs: dict[asyncio.Task, int] = {}
        # משימות שישנות כרגע בין ניסיונות — רק אותן מותר לבטל
        self._sleeping: set[asyncio.Task] = set()
        # משימות שסומנו לביטול בזמן ניסיון פעיל — ייעצרו לפני ההמתנה הבאה
        self._stop_requested: set[asyncio.Task] = set()
        # משימות של subscription שהושבת — לא שולחות אף ניסיון נוסף, גם לא את הראשון
        self._withdrawn: set[asyncio.Task] = set()
        self._closing = False

    @property
    def is_closing(self) -> bool:
        return self._closing

    @property
    def pending_count(self) -> int:
        return len(self._jobs)

    # ── ציבורי ──

    async def dispatch(self, transaction_id: str, event: WebhookEventType) -> list[asyncio.Task]:
        """
        Start delivery of `event` for a transaction to every active
        subscription of its owner that subscribes to the event.
        Returns immediately with the spawned tasks.
        """
        if self._closing:
            logger.warning(
                "Dispatcher is shutting down, event not dispatched",
                extra_data={"transaction_id": transaction_id, "event": event.value},
            )
            return []

        async with self._open_store() as store:
            transaction = await store.get(transaction_id)
            if transaction is None:
                logger.warning(
                    "Dispatch requested for unknown transaction",
                    extra_data={"transaction_id": transaction_id, "event": event.value},
                )
                return []
            owner_id = transaction.user_id
            body = canonical_json(build_event_payload(transaction, event, self._clock()))

        async with self._session_factory() as session:
            subscriptions = (
                await session.execute(
                    select(WebhookSubscription)
                    .where(
                        WebhookSubscription.user_id == owner_id,
                        WebhookSubscription.is_active == True,  # noqa: E712
                    )
                    .order_by(WebhookSubscription.id)
                )
            ).scalars().all()
            targets = [
                DeliveryTarget.from_subscription(s) for s in subscriptions if s.subscribes_to(event.value)
            ]

        if not targets:
            logger.debug(
                "No subscribers for event",
                extra_data={"transaction_id": transaction_id, "event": event.value},
            )
            return []

        tasks = []
        for target in targets:
            task = asyncio.create_task(self._deliver(target, transaction_id, event, body))
            self._jobs[task] = target.subscription_id
            task.add_done_callback(self._forget)
            tasks.append(task)

        logger.info(
            "Webhook dispatch started",
            extra_data={
                "transaction_id": transaction_id,
                "event": event.value,
                "subscriptions": [t.subscription_id for t in targets],
            },
        )
        return tasks

    def cancel_subscription(self, subscription_id: int) -> int:
        """
        Stop pending retries for a subscription. Sleeping retries are
        cancelled now; an attempt in flight finishes and then stops.
        Returns the number of jobs affected.
        """
        affected = 0
        for task, job_subscription in list(self._jobs.items()):
            if job_subscription != subscription_id:
                continue
            affected += 1
            if task in self._sleeping:
                task.cancel()
            else:
                self._stop_requested.add(task)
                self._withdrawn.add(task)
        if affected:
            logger.info(
                "Pending webhook retries cancelled",
                extra_data={"subscription_id": subscription_id, "jobs": affected},
            )
        return affected

    async def drain(self) -> None:
        """Wait until every delivery job (including retries) has finished"""
        while self._jobs:
            await asyncio.gather(*list(self._jobs), return_exceptions=True)

    async def shutdown(self, grace_seconds: float | None = None) -> None:
        """
        Stop accepting dispatches, cancel sleeping retries and give in-flight
        attempts up to `grace_seconds` to finish.
        """
        grace = grace_seconds if grace_seconds is not None else settings.WEBHOOK_SHUTDOWN_GRACE_SECONDS
        self._closing = True

        for task in list(self._jobs):
            if task in self._sleeping:
                task.cancel()
            else:
                self._stop_requested.add(task)

        remaining = list(self._jobs)
        if not remaining:
            return
        done, pending = await asyncio.wait(remaining, timeout=grace)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "Webhook deliveries abandoned at shutdown",
                extra_data={"abandoned": len(pending), "finished": len(done)},
            )
        logger.info("Webhook dispatcher stopped")

    # ── פנימי ──

    def _forget(self, task: asyncio.Task) -> None:
        self._jobs.pop(task, None)
        self._sleeping.discard(task)
        self._stop_requested.discard(task)
        self._withdrawn.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Webhook delivery job crashed",
                extra_data={"error": str(task.exception())},
            )

    def _should_stop(self, task: Optional[asyncio.Task]) -> bool:
        return self._closing or task in self._stop_requested

    @asynccontextmanager
    async def _open_store(self) -> AsyncIterator[TransactionStore]:
        if self._store is not None:
            yield self._store
            return
        async with self._session_factory() as session:
            yield SqlAlchemyTransactionStore(session, clock=self._clock)

    async def _deliver(
        self,
        target: DeliveryTarget,
        transaction_id: str,
        event: WebhookEventType,
        body: bytes,
    ) -> bool:
        task = asyncio.current_task()
        first_attempt = await self._next_attempt_number(target.subscription_id, transaction_id, event)
        last_attempt = first_attempt + target.max_attempts - 1
        attempt = first_attempt

        while True:
            if task in self._withdrawn:
                logger.info(
                    "Webhook delivery withdrawn, subscription deactivated",
                    extra_data={
                        "subscription_id": target.subscription_id,
                        "transaction_id": transaction_id,
                        "event": event.value,
                        "attempts_made": attempt - first_attempt,
                    },
                )
                return False
            if await self._attempt(target, transaction_id, event, body, attempt):
                return True
            if attempt >= last_attempt:
                break

            if self._should_stop(task):
                logger.info(
                    "Webhook retries stopped",
                    extra_data={
                        "subscription_id": target.subscription_id,
                        "transaction_id": transaction_id,
                        "event": event.value,
                        "attempts_made": attempt - first_attempt + 1,
                    },
                )
                return False

            delay = calculate_backoff_seconds(
                attempt - first_attempt + 1,
                base_seconds=self._base_delay,
                max_backoff_seconds=self._max_delay,
            )
            self._sleeping.add(task)
            try:
                await self._sleep(delay)
            except asyncio.CancelledError:
                logger.info(
                    "Webhook retry cancelled while waiting",
                    extra_data={
                        "subscription_id": target.subscription_id,
                        "transaction_id": transaction_id,
                        "event": event.value,
                        "next_attempt": attempt + 1,
                    },
                )
                raise
            finally:
                self._sleeping.discard(task)
            attempt += 1

        exhausted = DeliveryExhaustedError(
            target.subscription_id, transaction_id, event.value, target.max_attempts
        )
        logger.error(exhausted.message, extra_data=exhausted.details)
        return False

    async def _next_attempt_number(
        self, subscription_id: int, transaction_id: str, event: WebhookEventType
    ) -> int:
        """מספור ממשיך מהניסיון האחרון לאותו (subscription, transaction, event)"""
        async with self._session_factory() as session:
            last = await session.scalar(
                select(func.max(WebhookDelivery.attempt)).where(
                    WebhookDelivery.subscription_id == subscription_id,
                    WebhookDelivery.transaction_id == transaction_id,
                    WebhookDelivery.event == event.value,
                )
            )
        return int(last or 0) + 1

    async def _attempt(
        self,
        target: DeliveryTarget,
        transaction_id: str,
        event: WebhookEventType,
        body: bytes,
        attempt: int,
    ) -> bool:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            "X-Webhook-Signature": sign_payload(body, target.secret),
            "X-Webhook-Event": event.value,
            "X-Webhook-Delivery-Attempt": str(attempt),
        }
        response_status: Optional[int] = None
        response_body: Optional[str] = None
        error_message: Optional[str] = None
        success = False

        try:
            async with httpx.AsyncClient(timeout=target.timeout_seconds, transport=self._transport) as client:
                response = await client.post(target.url, content=body, headers=headers)
            response_status = response.status_code
            response_body = response.text[:RESPONSE_SNIPPET_LENGTH]
            success = 200 <= response.status_code < 300
            if not success:
                error_message = f"HTTP {response.status_code}"
        except httpx.TimeoutException:
            error_message = f"Timed out after {target.timeout_seconds}s"
        except httpx.HTTPError as e:
            error_message = f"{type(e).__name__}: {e}"[:RESPONSE_SNIPPET_LENGTH]

        log = logger.info if success else logger.warning
        log(
            "Webhook delivery attempt",
            extra_data={
                "subscription_id": target.subscription_id,
                "transaction_id": transaction_id,
                "event": event.value,
                "attempt": attempt,
                "success": success,
                "response_status": response_status,
                "error": error_message,
            },
        )

        await self._record_attempt(
            WebhookDelivery(
                subscription_id=target.subscription_id,
                transaction_id=transaction_id,
                event=event.value,
                payload=body.decode("utf-8"),
                attempt=attempt,
                success=success,
                response_status=response_status,
                response_body=response_body,
                error_message=error_message,
                created_at=self._clock(),
            )
        )
        return success

    async def _record_attempt(self, record: WebhookDelivery) -> None:
        try:
            async with self._session_factory() as session:
                session.add(record)
                await session.commit()
            async with self._open_store() as store:
                await store.increment_webhook_attempts(record.transaction_id)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to record webhook delivery attempt",
                extra_data={
                    "subscription_id": record.subscription_id,
                    "transaction_id": record.transaction_id,
                    "attempt": record.attempt,
                    "error": str(e),
                },
                exc_info=True,
            )


_dispatcher: WebhookDispatcher | None = None


def get_webhook_dispatcher() -> WebhookDispatcher:
    """Process-wide dispatcher; also used as a FastAPI dependency"""
    global _dispatcher
    if _dispatcher is None:
        from app.db.database import AsyncSessionLocal

        _dispatcher = WebhookDispatcher(AsyncSessionLocal)
    return _dispatcher


def reset_webhook_dispatcher() -> None:
    """איפוס ה-singleton — לשימוש בבדיקות בלבד"""
    global _dispatcher
    _dispatcher = None
