"""
Transaction State Machine

The transition table lives in `states`; `manager.TransactionStateMachine`
applies it to stored transactions.
"""
from app.state_machine.states import (
    TRANSACTION_TRANSITIONS,
    TERMINAL_STATUSES,
    STATUS_EVENTS,
    can_transition,
    is_terminal,
)

__all__ = [
    "TRANSACTION_TRANSITIONS",
    "TERMINAL_STATUSES",
    "STATUS_EVENTS",
    "can_transition",
    "is_terminal",
]
