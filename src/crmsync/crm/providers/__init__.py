"""CRM providers -- one CRMProvider implementation per external vendor.

- CRMProvider: Abstract interface the sync engine talks to
- HttpCRMProvider: Shared httpx/tenacity request handling
- DynamicsProvider: Dynamics 365 Web API v9.2
- HubSpotProvider: HubSpot CRM v3
- ProviderRegistry / default_registry: Capability-checked lookup by ProviderType
"""

from src.crmsync.crm.providers.base import CRMProvider, HttpCRMProvider, signatures_match
from src.crmsync.crm.providers.dynamics import DynamicsProvider, entity_set_name
from src.crmsync.crm.providers.factory import ProviderRegistry, default_registry
from src.crmsync.crm.providers.hubspot import HubSpotProvider

__all__ = [
    "CRMProvider",
    "HttpCRMProvider",
    "DynamicsProvider",
    "HubSpotProvider",
    "ProviderRegistry",
    "default_registry",
    "entity_set_name",
    "signatures_match",
]
