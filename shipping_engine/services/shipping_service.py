"""
Shipping Service

Facade the order/checkout side talks to. Routes every call to the right
adapter through the registry and keeps the two-phase creation record.

Usage:
    service = ShippingService()
    service.apply_config(config)
    selection = await service.quote(request, subtotal=cart.subtotal)
    response = await service.create_selected_shipment(request, selection)
"""
import logging
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from shipping_engine.core.utils import is_valid_pincode
from shipping_engine.modules.shipping.providers.base import (
    BaseShippingProvider,
    PickupLocation,
    ShipmentCancellationResponse,
    ShipmentResponse,
    ShipmentTrackingResponse,
    ShippingRate,
    ShippingRequest,
)
from shipping_engine.modules.shipping.registry import ProviderRegistry
from shipping_engine.schemas.shipping_config import ProviderConfig, ShippingConfig
from shipping_engine.services.rate_aggregator import AggregatedRates, RateAggregator
from shipping_engine.services.rate_selection import (
    DefaultShippingOption,
    ShippingSelection,
    select_shipping_option,
)
from shipping_engine.services.shipment_records import (
    CreationRecord,
    InMemoryShipmentRecordStore,
    ShipmentRecordStore,
)

logger = logging.getLogger(__name__)


class ShippingService:
    """
    Multi-aggregator shipping operations.

    Every operation except rate aggregation returns a structured result
    instead of raising, so callers can fall back per provider.
    """

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        record_store: Optional[ShipmentRecordStore] = None,
        config: Optional[ShippingConfig] = None,
        default_option: Optional[DefaultShippingOption] = None,
    ):
        self.registry = registry or ProviderRegistry()
        self.records: ShipmentRecordStore = record_store or InMemoryShipmentRecordStore()
        self.config = config or ShippingConfig.from_settings()
        self.aggregator = RateAggregator(self.registry, self.config.enable_pincode_validation)
        self.default_option = default_option or DefaultShippingOption.from_settings()

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def initialize_providers(
        self, configs: Sequence[ProviderConfig], default_provider_id: Optional[str] = None
    ) -> None:
        self.registry.initialize_providers(configs, default_provider_id)

    def apply_config(self, config: ShippingConfig) -> None:
        """Adopt a new configuration document and rebuild every adapter."""
        self.config = config
        self.aggregator.validate_pincodes = config.enable_pincode_validation
        self.default_option = replace(self.default_option, cost=config.default_shipping_cost)
        self.registry.initialize_providers(config.aggregators, config.default_aggregator)

    def get_available_providers(self) -> List[str]:
        return self.registry.available_ids()

    def get_default_provider(self) -> Optional[str]:
        return self.registry.default_provider_id

    def _provider(self, provider_id: str) -> Optional[BaseShippingProvider]:
        provider = self.registry.get(provider_id)
        if not provider:
            logger.warning(f"Provider {provider_id} not found or not enabled")
        return provider

    def _pincodes_ok(self, request: ShippingRequest) -> bool:
        if not self.config.enable_pincode_validation:
            return True
        return is_valid_pincode(request.pickup_pincode) and is_valid_pincode(request.delivery_pincode)

    def _with_insurance(self, request: ShippingRequest) -> ShippingRequest:
        if request.requires_insurance or not self.config.requires_insurance(request.invoice_value):
            return request
        return replace(request, requires_insurance=True, insurance_value=request.invoice_value)

    # -------------------------------------------------------------------------
    # Rates and selection
    # -------------------------------------------------------------------------

    async def get_all_rates(self, request: ShippingRequest) -> Dict[str, List[ShippingRate]]:
        return await self.aggregator.get_all_rates(request)

    async def get_all_rates_with_diagnostics(self, request: ShippingRequest) -> AggregatedRates:
        return await self.aggregator.get_all_rates_with_diagnostics(request)

    async def get_rates(self, provider_id: str, request: ShippingRequest) -> List[ShippingRate]:
        if not self._pincodes_ok(request):
            logger.warning(
                f"Invalid pincode in shipping request: "
                f"{request.pickup_pincode} -> {request.delivery_pincode}"
            )
            return []
        return await self.aggregator.get_rates(provider_id, request)

    def select(self, rates_by_provider: Dict[str, List[ShippingRate]], subtotal: float) -> ShippingSelection:
        """Apply the configured strategy; it is a global setting, not per request."""
        return select_shipping_option(
            rates_by_provider,
            self.config.selection_strategy,
            self.registry.providers_by_priority(),
            self.config.free_shipping_threshold,
            subtotal,
            self.default_option,
        )

    async def quote(self, request: ShippingRequest, subtotal: float) -> ShippingSelection:
        """Aggregate rates and pick one option for the cart."""
        rates = await self.get_all_rates(request)
        selection = self.select(rates, subtotal)
        logger.info(
            f"Quote for order {request.order_id}: {selection.provider_id or 'default'} "
            f"{selection.method_name} final_cost={selection.final_cost}"
        )
        return selection

    # -------------------------------------------------------------------------
    # International
    # -------------------------------------------------------------------------

    def supports_international_shipping(self, provider_id: Optional[str] = None) -> bool:
        if not self.config.enable_international_shipping:
            return False
        if provider_id:
            provider = self.registry.get(provider_id)
            return bool(provider and provider.supports_international_shipping())
        return any(
            p.supports_international_shipping()
            for p in self.registry.generation.providers.values()
        )

    async def get_international_rates(self, provider_id: str, request: ShippingRequest) -> List[ShippingRate]:
        if not self.config.enable_international_shipping:
            logger.warning("International shipping is disabled")
            return []
        provider = self._provider(provider_id)
        if not provider:
            return []
        return await provider.get_international_rates(request)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create_shipment(
        self, provider_id: str, request: ShippingRequest, service_id: str
    ) -> ShipmentResponse:
        provider = self._provider(provider_id)
        if not provider:
            return ShipmentResponse.failure(
                f"Provider {provider_id} not found or not enabled", "INVALID_PROVIDER"
            )
        if not self._pincodes_ok(request):
            return ShipmentResponse.failure(
                f"Invalid pincode in shipping request: "
                f"{request.pickup_pincode} -> {request.delivery_pincode}",
                "INVALID_PINCODE",
            )

        record = await self.records.start(request.order_id, provider_id, service_id)
        try:
            response = await provider.create_shipment(self._with_insurance(request), service_id)
        except Exception:
            logger.exception(f"{provider_id} create shipment crashed for order {request.order_id}")
            response = ShipmentResponse.failure(f"{provider_id} failed unexpectedly", "PROVIDER_ERROR")
        record = await self.records.finish(record.id, response)

        if response.partial:
            logger.error(
                f"Order {request.order_id} stranded at {provider_id}: vendor order "
                f"{response.vendor_order_id} exists without a shipment (record {record.id})"
            )
        elif response.success:
            logger.info(f"Created {provider_id} shipment {response.tracking_id} for order {request.order_id}")
        return response

    async def create_selected_shipment(
        self, request: ShippingRequest, selection: ShippingSelection
    ) -> ShipmentResponse:
        """Create with whatever quote() picked. A fallback selection cannot be booked."""
        if selection.is_fallback or not selection.provider_id or not selection.rate:
            return ShipmentResponse.failure(
                "Default shipping option has no provider to book with", "NO_PROVIDER_SELECTED"
            )
        return await self.create_shipment(selection.provider_id, request, selection.rate.service_id)

    async def track_shipment(self, provider_id: str, tracking_id: str) -> ShipmentTrackingResponse:
        provider = self._provider(provider_id)
        if not provider:
            return ShipmentTrackingResponse.failure(
                tracking_id, f"Provider {provider_id} not found or not enabled", "INVALID_PROVIDER"
            )
        try:
            return await provider.track_shipment(tracking_id)
        except Exception:
            logger.exception(f"{provider_id} tracking crashed for {tracking_id}")
            return ShipmentTrackingResponse.failure(tracking_id, f"{provider_id} failed unexpectedly", "PROVIDER_ERROR")

    async def cancel_shipment(self, provider_id: str, tracking_id: str) -> ShipmentCancellationResponse:
        provider = self._provider(provider_id)
        if not provider:
            return ShipmentCancellationResponse(
                success=False, tracking_id=tracking_id, message="Invalid provider", error="INVALID_PROVIDER"
            )
        try:
            return await provider.cancel_shipment(tracking_id)
        except Exception:
            logger.exception(f"{provider_id} cancellation crashed for {tracking_id}")
            return ShipmentCancellationResponse(
                success=False, tracking_id=tracking_id, message=f"{provider_id} failed unexpectedly", error="PROVIDER_ERROR"
            )

    async def create_return_shipment(
        self, provider_id: str, tracking_id: str, request: ShippingRequest
    ) -> ShipmentResponse:
        provider = self._provider(provider_id)
        if not provider:
            return ShipmentResponse.failure("Invalid provider", "INVALID_PROVIDER")

        return_request = replace(request, is_reverse_pickup=True)
        record = await self.records.start(request.order_id, provider_id, None, is_return=True)
        try:
            response = await provider.create_return_shipment(tracking_id, return_request)
        except Exception:
            logger.exception(f"{provider_id} return shipment crashed for {tracking_id}")
            response = ShipmentResponse.failure(f"{provider_id} failed unexpectedly", "PROVIDER_ERROR")
        await self.records.finish(record.id, response)
        return response

    # -------------------------------------------------------------------------
    # Pickup locations
    # -------------------------------------------------------------------------

    async def get_pickup_locations(self, provider_id: str) -> List[PickupLocation]:
        provider = self._provider(provider_id)
        if not provider:
            return []
        return await provider.get_pickup_locations()

    async def create_pickup_location(
        self, provider_id: str, location: PickupLocation
    ) -> Optional[PickupLocation]:
        provider = self._provider(provider_id)
        if not provider:
            return None
        return await provider.create_pickup_location(location)

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def list_stranded_shipments(self) -> List[CreationRecord]:
        """Creation attempts that may have left an order behind at the vendor."""
        return await self.records.list_stranded()

    async def aclose(self) -> None:
        await self.registry.aclose()
