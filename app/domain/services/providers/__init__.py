"""Payment provider adapters"""
from app.domain.services.providers.base_provider import (
    BaseProviderAdapter,
    CallbackOutcome,
    CanonicalResult,
    ProviderHandle,
)
from app.domain.services.providers.provider_factory import (
    ProviderRegistry,
    create_provider,
    get_provider_registry,
    reset_providers,
)

__all__ = [
    "BaseProviderAdapter",
    "CallbackOutcome",
    "CanonicalResult",
    "ProviderHandle",
    "ProviderRegistry",
    "create_provider",
    "get_provider_registry",
    "reset_providers",
]
