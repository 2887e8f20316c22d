"""
Transaction lifecycle states and the legal transitions between them
"""
from app.db.models.transaction import TransactionStatus
from app.db.models.webhook_subscription import WebhookEventType


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
    TransactionStatus.REFUNDED,
})

# State transitions mapping
TRANSACTION_TRANSITIONS = {
    TransactionStatus.PENDING: [
        TransactionStatus.PROCESSING,
        TransactionStatus.CANCELLED,   # ביטול יזום או תפוגה
    ],
    TransactionStatus.PROCESSING: [
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    ],
    # refund בלבד — מבוצע מחוץ למערכת, כאן רק רישום המצב
    TransactionStatus.COMPLETED: [TransactionStatus.REFUNDED],
    TransactionStatus.FAILED: [],
    TransactionStatus.CANCELLED: [],
    TransactionStatus.REFUNDED: [],
}

TRANSACTION_LABELS: dict[str, str] = {
    TransactionStatus.PENDING.value: "Intent created",
    TransactionStatus.PROCESSING.value: "Awaiting provider",
    TransactionStatus.COMPLETED.value: "Paid",
    TransactionStatus.FAILED.value: "Failed",
    TransactionStatus.CANCELLED.value: "Cancelled / expired",
    TransactionStatus.REFUNDED.value: "Refunded",
}

# האירוע שנשלח למנויים כשעסקה נכנסת למצב
STATUS_EVENTS = {
    TransactionStatus.PROCESSING: WebhookEventType.PAYMENT_PROCESSING,
    TransactionStatus.COMPLETED: WebhookEventType.PAYMENT_COMPLETED,
    TransactionStatus.FAILED: WebhookEventType.PAYMENT_FAILED,
    TransactionStatus.CANCELLED: WebhookEventType.PAYMENT_CANCELLED,
    TransactionStatus.REFUNDED: WebhookEventType.PAYMENT_REFUNDED,
}


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in TRANSACTION_TRANSITIONS.get(current, [])


def is_terminal(status: TransactionStatus) -> bool:
    return status in TERMINAL_STATUSES
