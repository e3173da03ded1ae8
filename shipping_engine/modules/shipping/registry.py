"""
Provider Registry

Holds the live set of adapters as one immutable generation. Each call to
initialize_providers() builds a complete new generation and swaps it in
with a single assignment; callers already holding an adapter from the old
generation finish against it undisturbed. Closing an old adapter only
marks its HTTP client; the pool is released when its last request returns.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from shipping_engine.core.http_client import ResilientHTTPClient
from shipping_engine.modules.shipping.providers import get_provider_class, registered_providers
from shipping_engine.modules.shipping.providers.base import (
    BaseShippingProvider,
    QuoteStatus,
    RateQuote,
    ShippingRequest,
)
from shipping_engine.schemas.shipping_config import ProviderConfig

logger = logging.getLogger(__name__)

# Sample lane used by the admin "test connection" action
TEST_PICKUP_PINCODE = "110001"  # New Delhi
TEST_DELIVERY_PINCODE = "400001"  # Mumbai
TEST_WEIGHT_GRAMS = 500
TEST_INVOICE_VALUE = 1000


@dataclass(frozen=True)
class ProviderGeneration:
    """One complete, never-mutated set of adapters."""
    providers: Mapping[str, BaseShippingProvider] = field(default_factory=dict)
    default_provider_id: Optional[str] = None
    priority_order: tuple = ()


@dataclass
class ProviderTestResult:
    provider_id: str
    success: bool
    message: str
    rates_found: int = 0


class ProviderRegistry:
    """
    Maps provider id -> adapter for the current configuration.

    Unknown provider ids, disabled entries and adapters missing
    credentials are skipped with a warning, never raised.
    """

    def __init__(self, http_client_factory=None):
        """
        Args:
            http_client_factory: Optional callable(provider_id) -> ResilientHTTPClient,
                used by tests to inject a MockTransport into every adapter
        """
        self._generation = ProviderGeneration()
        self._http_client_factory = http_client_factory
        self._closing: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    def _build_provider(
        self, provider_id: str, config: Mapping[str, Any], display_name: Optional[str] = None
    ) -> Optional[BaseShippingProvider]:
        provider_cls = get_provider_class(provider_id)
        if not provider_cls:
            logger.warning(f"No implementation registered for provider: {provider_id}")
            return None
        http_client: Optional[ResilientHTTPClient] = None
        if self._http_client_factory:
            http_client = self._http_client_factory(provider_id)
        return provider_cls(config, http_client=http_client, display_name=display_name)

    def initialize_providers(
        self,
        configs: Iterable[ProviderConfig],
        default_provider_id: Optional[str] = None,
    ) -> ProviderGeneration:
        """
        Replace every adapter with a fresh set built from configs.

        Args:
            configs: Aggregator entries; only enabled ones are built
            default_provider_id: Preferred default, else first available

        Returns:
            The generation now in effect
        """
        ordered: List[tuple] = []
        providers: Dict[str, BaseShippingProvider] = {}

        for position, config in enumerate(configs):
            if not config.enabled:
                continue
            if config.id in providers:
                logger.warning(f"Duplicate configuration for provider {config.id}, keeping the first")
                continue
            provider = self._build_provider(config.id, config.credentials(), config.name or None)
            if provider is None:
                continue
            if not provider.is_configured():
                logger.warning(f"Provider {config.id} is enabled but missing credentials, skipping")
                self._schedule_close([provider])
                continue
            providers[config.id] = provider
            ordered.append((config.priority, position, config.id))

        priority_order = tuple(pid for _, _, pid in sorted(ordered))

        if default_provider_id and default_provider_id in providers:
            default_id = default_provider_id
        else:
            default_id = priority_order[0] if priority_order else None
            if default_provider_id:
                logger.warning(
                    f"Default provider {default_provider_id} unavailable, using {default_id}"
                )

        previous = self._generation
        self._generation = ProviderGeneration(
            providers=MappingProxyType(providers),
            default_provider_id=default_id,
            priority_order=priority_order,
        )
        logger.info(
            f"Initialized {len(providers)} shipping provider(s): "
            f"{', '.join(priority_order) or 'none'} (default: {default_id})"
        )

        self._schedule_close(previous.providers.values())
        return self._generation

    def _schedule_close(self, providers: Iterable[BaseShippingProvider]) -> None:
        """Close old adapters in the background; their running requests still complete."""
        providers = list(providers)
        if not providers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync startup path); the clients are garbage collected instead
            return
        for provider in providers:
            task = loop.create_task(provider.aclose())
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    @property
    def generation(self) -> ProviderGeneration:
        return self._generation

    def get(self, provider_id: str) -> Optional[BaseShippingProvider]:
        return self._generation.providers.get(provider_id)

    def get_default(self) -> Optional[BaseShippingProvider]:
        default_id = self._generation.default_provider_id
        return self._generation.providers.get(default_id) if default_id else None

    @property
    def default_provider_id(self) -> Optional[str]:
        return self._generation.default_provider_id

    def available_ids(self) -> List[str]:
        return list(self._generation.providers.keys())

    def providers_by_priority(self) -> List[str]:
        """Ids sorted by (priority, configuration order)."""
        return list(self._generation.priority_order)

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._generation.providers

    def __len__(self) -> int:
        return len(self._generation.providers)

    # -------------------------------------------------------------------------
    # Admin
    # -------------------------------------------------------------------------

    async def test_provider(self, provider_id: str, fields: Mapping[str, Any]) -> ProviderTestResult:
        """Build a throwaway adapter from raw fields and run a sample quote."""
        if provider_id not in registered_providers():
            return ProviderTestResult(provider_id, False, f"Unknown provider: {provider_id}")

        config = ProviderConfig(id=provider_id, enabled=True, config_fields=dict(fields))
        provider = self._build_provider(provider_id, config.credentials())
        try:
            if not provider.is_configured():
                return ProviderTestResult(provider_id, False, "Missing required credentials")

            quote: RateQuote = await provider.quote_rates(ShippingRequest(
                order_id="connection-test",
                pickup_pincode=TEST_PICKUP_PINCODE,
                delivery_pincode=TEST_DELIVERY_PINCODE,
                weight=TEST_WEIGHT_GRAMS,
                invoice_value=TEST_INVOICE_VALUE,
                customer_name="Test Customer",
                customer_city="Mumbai",
                customer_state="Maharashtra",
            ))
        finally:
            await provider.aclose()

        if quote.status == QuoteStatus.OK:
            return ProviderTestResult(
                provider_id, True,
                f"Connection successful. Found {len(quote.rates)} shipping options.",
                rates_found=len(quote.rates),
            )
        if quote.status == QuoteStatus.UNSERVICEABLE:
            # Credentials worked; the vendor just has nothing on the sample lane
            return ProviderTestResult(provider_id, True, "Connected, but no couriers for the test route")
        return ProviderTestResult(provider_id, False, quote.message or "Connection failed")

    async def aclose(self) -> None:
        """Close the current generation and wait for pending closes."""
        for provider in self._generation.providers.values():
            await provider.aclose()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        self._generation = ProviderGeneration()
