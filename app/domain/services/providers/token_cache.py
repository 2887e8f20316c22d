"""
OAuth access-token cache for provider APIs.

One token per process, refreshed when it is within `refresh_margin_seconds`
of expiry. Concurrent callers that find the token stale wait on a single
refresh instead of each hitting the OAuth endpoint. The token is mirrored to
Redis so that API workers and Celery workers share it.
"""
from __future__ import annotations

import asyncio
import json
import time
from typing import Awaitable, Callable, Optional

from app.core.logging import get_logger
from app.core.redis_client import cache_get, cache_set

logger = get_logger(__name__)

# (access_token, expires_in_seconds)
TokenFetcher = Callable[[], Awaitable[tuple[str, int]]]


class AccessTokenCache:

    def __init__(
        self,
        name: str,
        fetcher: TokenFetcher,
        refresh_margin_seconds: int = 60,
        clock: Callable[[], float] = time.time,
        shared: bool = True,
    ) -> None:
        self._name = name
        self._fetcher = fetcher
        self._margin = refresh_margin_seconds
        self._clock = clock
        self._shared = shared
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._rejected: Optional[str] = None
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    @property
    def redis_key(self) -> str:
        return f"provider_token:{self._name}"

    def _is_fresh(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at - self._margin

    def invalidate(self) -> None:
        """שכחת הטוקן המקומי (למשל אחרי 401 מהספק)"""
        self._rejected = self._token
        self._token = None
        self._expires_at = 0.0

    async def get_token(self) -> str:
        if self._is_fresh():
            return self._token  # type: ignore[return-value]

        async with self._lock:
            # בדיקה חוזרת אחרי נעילה — קורא מקבילי אולי כבר רענן
            if self._is_fresh():
                return self._token  # type: ignore[return-value]

            if self._shared and await self._load_shared():
                return self._token  # type: ignore[return-value]

            token, expires_in = await self._fetcher()
            self._token = token
            self._expires_at = self._clock() + expires_in
            self.refresh_count += 1
            logger.info(
                "Provider access token refreshed",
                extra_data={"provider": self._name, "expires_in": expires_in},
            )
            if self._shared:
                await cache_set(
                    self.redis_key,
                    json.dumps({"token": token, "expires_at": self._expires_at}),
                    ttl_seconds=int(expires_in - self._margin),
                )
            return token

    async def _load_shared(self) -> bool:
        raw = await cache_get(self.redis_key)
        if not raw:
            return False
        try:
            cached = json.loads(raw)
            token = cached["token"]
            expires_at = float(cached["expires_at"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring unreadable cached token", extra_data={"provider": self._name})
            return False
        if token == self._rejected:
            return False
        self._token = token
        self._expires_at = expires_at
        return self._is_fresh()
