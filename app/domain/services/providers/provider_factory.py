"""
Provider Factory — יצירת adapters לספקי תשלום.

מספק שתי נקודות גישה:
- get_provider_registry() — רישום singleton לשימוש ה-API (גם FastAPI dependency)
- create_provider() — מופע טרי, לשימוש Celery tasks (event loop נפרד לכל task)
"""
from __future__ import annotations

import threading
from typing import Iterable

from app.core.circuit_breaker import get_equity_circuit_breaker, get_mpesa_circuit_breaker
from app.core.exceptions import UnknownProviderError, ValidationException
from app.core.logging import get_logger
from app.db.models.transaction import PaymentProvider
from app.domain.services.providers.base_provider import BaseProviderAdapter
from app.domain.services.transaction_store import resolve_provider

logger = get_logger(__name__)

_registry: "ProviderRegistry | None" = None
_lock = threading.Lock()


def create_provider(provider: PaymentProvider) -> BaseProviderAdapter:
    """יצירת adapter לפי ספק."""
    if provider == PaymentProvider.MPESA:
        from app.domain.services.providers.mpesa_provider import MpesaProvider

        return MpesaProvider(circuit_breaker=get_mpesa_circuit_breaker())

    if provider == PaymentProvider.EQUITY:
        from app.domain.services.providers.equity_provider import EquityProvider

        return EquityProvider(circuit_breaker=get_equity_circuit_breaker())

    raise UnknownProviderError(str(provider))


class ProviderRegistry:
    """Adapters keyed by provider. Accepts aliases ("mobile-money", "bank") on lookup."""

    def __init__(self, adapters: Iterable[BaseProviderAdapter]) -> None:
        self._adapters: dict[PaymentProvider, BaseProviderAdapter] = {a.provider: a for a in adapters}

    def get(self, provider: PaymentProvider | str) -> BaseProviderAdapter:
        """
        Raises:
            UnknownProviderError: the name is not a provider or alias, or no adapter is registered
        """
        if isinstance(provider, PaymentProvider):
            key = provider
        else:
            try:
                key = resolve_provider(provider)
            except ValidationException:
                raise UnknownProviderError(provider)
        adapter = self._adapters.get(key)
        if adapter is None:
            raise UnknownProviderError(str(provider))
        return adapter

    @property
    def providers(self) -> list[PaymentProvider]:
        return list(self._adapters)


def build_default_registry() -> ProviderRegistry:
    return ProviderRegistry(create_provider(p) for p in PaymentProvider)


def get_provider_registry() -> ProviderRegistry:
    global _registry
    if _registry is None:
        with _lock:
            if _registry is None:
                _registry = build_default_registry()
                logger.info(
                    "ספקי תשלום אותחלו",
                    extra_data={"providers": [p.value for p in _registry.providers]},
                )
    return _registry


def reset_providers() -> None:
    """איפוס ספקים — לשימוש בבדיקות בלבד."""
    global _registry
    with _lock:
        _registry = None
