"""
Provider Registry Decorator

One adapter class per aggregator, keyed by a stable provider id:
- register_provider() records the class at import time
- get_provider_class() resolves an id back to its class
- The vendor modules are imported at the bottom so the set is closed
"""
from typing import Dict, List, Optional, Type
import logging

from shipping_engine.modules.shipping.providers.base import BaseShippingProvider

logger = logging.getLogger(__name__)

# Registry of provider implementations
_PROVIDER_REGISTRY: Dict[str, Type[BaseShippingProvider]] = {}


def register_provider(provider_id: str):
    """
    Decorator to register a provider implementation.

    Usage:
        @register_provider("shiprocket")
        class ShiprocketProvider(BaseShippingProvider):
            ...
    """
    def decorator(cls: Type[BaseShippingProvider]):
        _PROVIDER_REGISTRY[provider_id] = cls
        logger.debug(f"Registered provider: {provider_id} -> {cls.__name__}")
        return cls
    return decorator


def get_provider_class(provider_id: str) -> Optional[Type[BaseShippingProvider]]:
    return _PROVIDER_REGISTRY.get(provider_id)


def registered_providers() -> List[str]:
    """Get list of all registered provider ids."""
    return list(_PROVIDER_REGISTRY.keys())


# Import providers to trigger registration
# These imports must be at the bottom to avoid circular imports
from shipping_engine.modules.shipping.providers.shiprocket import ShiprocketProvider  # noqa: E402, F401
from shipping_engine.modules.shipping.providers.shipway import ShipwayProvider  # noqa: E402, F401
from shipping_engine.modules.shipping.providers.shipyaari import ShipyaariProvider  # noqa: E402, F401
