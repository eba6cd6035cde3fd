"""Capability-checked provider registry.

Providers are registered by type with a zero-argument factory. Lookups for
an unregistered type fail with UnsupportedProviderError, both when a
connection is configured and again before a run starts, so an unsupported
vendor never reaches the sync engine.
"""

from __future__ import annotations

from collections.abc import Callable

import httpx
import structlog

from src.crmsync.config import Settings, get_settings
from src.crmsync.crm.errors import UnsupportedProviderError
from src.crmsync.crm.providers.base import CRMProvider
from src.crmsync.crm.providers.dynamics import DynamicsProvider
from src.crmsync.crm.providers.hubspot import HubSpotProvider
from src.crmsync.crm.schemas import Connection, ProviderType

logger = structlog.get_logger(__name__)

ProviderFactory = Callable[[], CRMProvider]


def _coerce(provider_type: ProviderType | str) -> ProviderType:
    if isinstance(provider_type, ProviderType):
        return provider_type
    try:
        return ProviderType(str(provider_type).lower())
    except ValueError:
        raise UnsupportedProviderError(str(provider_type)) from None


class ProviderRegistry:
    """Maps provider types to lazily built, cached provider instances."""

    def __init__(self) -> None:
        self._factories: dict[ProviderType, ProviderFactory] = {}
        self._instances: dict[ProviderType, CRMProvider] = {}

    def register(self, provider_type: ProviderType, factory: ProviderFactory) -> None:
        """Register (or replace) the factory for a provider type."""
        self._factories[provider_type] = factory
        self._instances.pop(provider_type, None)
        logger.debug("crm_provider.registered", provider=provider_type.value)

    def is_supported(self, provider_type: ProviderType | str) -> bool:
        try:
            return _coerce(provider_type) in self._factories
        except UnsupportedProviderError:
            return False

    def supported_providers(self) -> list[ProviderType]:
        return list(self._factories)

    def get_provider(self, provider_type: ProviderType | str) -> CRMProvider:
        """Return the provider instance for a type, building it on first use.

        Raises:
            UnsupportedProviderError: If no factory is registered for the type.
        """
        resolved = _coerce(provider_type)
        if resolved not in self._factories:
            raise UnsupportedProviderError(resolved.value)
        if resolved not in self._instances:
            self._instances[resolved] = self._factories[resolved]()
        return self._instances[resolved]

    def ensure_supported(self, connection: Connection) -> None:
        """Raise UnsupportedProviderError if the connection's provider is not registered."""
        if not self.is_supported(connection.provider):
            raise UnsupportedProviderError(connection.provider.value)


def default_registry(
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> ProviderRegistry:
    """Registry with the Dynamics 365 and HubSpot providers.

    Args:
        settings: App settings; defaults to get_settings().
        http_client: Shared client for every provider; each builds its own if omitted.
    """
    settings = settings or get_settings()
    timeout = settings.CRM_PROVIDER_TIMEOUT_SECONDS
    registry = ProviderRegistry()
    registry.register(
        ProviderType.DYNAMICS365,
        lambda: DynamicsProvider(
            client_id=settings.DYNAMICS_CLIENT_ID,
            client_secret=settings.DYNAMICS_CLIENT_SECRET,
            tenant_id=settings.DYNAMICS_TENANT_ID,
            http_client=http_client,
            timeout=timeout,
        ),
    )
    registry.register(
        ProviderType.HUBSPOT,
        lambda: HubSpotProvider(
            api_base=settings.HUBSPOT_API_BASE,
            client_secret=settings.HUBSPOT_CLIENT_SECRET,
            http_client=http_client,
            timeout=timeout,
        ),
    )
    return registry
