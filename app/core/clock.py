"""
Naive-UTC clock.

Timestamps are stored without tzinfo (PostgreSQL `timestamp`, SQLite) and
always mean UTC.
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
