"""
Tests for ShippingService: routing by provider id, quoting, two-phase
creation records, returns and insurance.
"""
import asyncio
from dataclasses import replace

import httpx
import pytest

from shipping_engine.core.http_client import ResilientHTTPClient, RetryConfig
from shipping_engine.models.shipment_record import CreationState
from shipping_engine.modules.shipping.providers.base import SelectionStrategy, ShipmentResponse
from shipping_engine.modules.shipping.registry import ProviderRegistry
from shipping_engine.schemas.shipping_config import ProviderConfig, ShippingConfig
from shipping_engine.services.rate_selection import DefaultShippingOption
from shipping_engine.services.shipping_service import ShippingService

from conftest import StubProvider, install, rate


@pytest.fixture
def service():
    config = ShippingConfig(
        selection_strategy="priority",
        free_shipping_threshold=500,
        default_shipping_cost=50,
    )
    return ShippingService(
        registry=ProviderRegistry(),
        config=config,
        default_option=DefaultShippingOption(),
    )


class TestQuoting:
    """Test rate aggregation plus selection through the service."""

    @pytest.mark.asyncio
    async def test_quote_uses_configured_strategy(self, service, sample_request):
        """Strategy comes from configuration; switching it changes every later quote."""
        install(
            service.registry,
            StubProvider("alpha", rates=[rate("Delhivery", 80, 5)]),
            StubProvider("beta", rates=[rate("Bluedart", 60, 3)]),
        )

        priority = await service.quote(sample_request, subtotal=200)
        service.config = service.config.model_copy(update={"selection_strategy": SelectionStrategy.CHEAPEST})
        cheapest = await service.quote(sample_request, subtotal=200)

        assert (priority.provider_id, priority.final_cost) == ("alpha", 80)
        assert (cheapest.provider_id, cheapest.final_cost) == ("beta", 60)

    @pytest.mark.asyncio
    async def test_quote_without_providers_is_default_option(self, service, sample_request):
        selection = await service.quote(sample_request, subtotal=200)

        assert selection.is_fallback
        assert selection.final_cost == 50

    @pytest.mark.asyncio
    async def test_apply_config_updates_default_cost_and_providers(self, service):
        """A new configuration document rebuilds adapters and the fallback price."""
        service.apply_config(ShippingConfig(
            default_shipping_cost=75,
            aggregators=[
                ProviderConfig(id="shipway", enabled=True, config_fields={"username": "m", "license_key": "k"}),
            ],
        ))

        assert service.get_available_providers() == ["shipway"]
        assert service.get_default_provider() == "shipway"
        assert service.default_option.cost == 75
        assert service.default_option.method_name == "Standard Shipping"
        await service.aclose()

    @pytest.mark.asyncio
    async def test_single_provider_rates_validate_pincodes(self, service, sample_request):
        install(service.registry, StubProvider("alpha", rates=[rate("Delhivery", 80, 5)]))

        assert await service.get_rates("alpha", replace(sample_request, pickup_pincode="1100")) == []
        assert len(await service.get_rates("alpha", sample_request)) == 1


class TestShipmentCreation:
    """Test creation routing and the PENDING -> final state record."""

    @pytest.mark.asyncio
    async def test_successful_creation_completes_record(self, service, sample_request):
        alpha = StubProvider("alpha")
        install(service.registry, alpha)

        response = await service.create_shipment("alpha", sample_request, "svc-1")

        assert response.success
        assert alpha.created[0][1] == "svc-1"
        [record] = await service.records.list_for_order("ORD-1001")
        assert record.state == CreationState.COMPLETED
        assert record.tracking_id == "ALPHA-AWB"
        assert await service.list_stranded_shipments() == []

    @pytest.mark.asyncio
    async def test_partial_creation_is_listed_as_stranded(self, service, sample_request):
        """Vendor kept the order but no shipment: reconciliation must see it."""
        install(service.registry, StubProvider("alpha", shipment=ShipmentResponse.failure(
            "Order created but shipment failed: courier not serviceable",
            "PARTIAL_SHIPMENT",
            vendor_order_id="555",
            shipment_id="777",
            partial=True,
        )))

        response = await service.create_shipment("alpha", sample_request, "svc-1")

        assert not response.success
        [stranded] = await service.list_stranded_shipments()
        assert stranded.state == CreationState.VENDOR_ORDER_CREATED
        assert stranded.vendor_order_id == "555"
        assert stranded.error_code == "PARTIAL_SHIPMENT"

    @pytest.mark.asyncio
    async def test_booking_without_awb_is_stranded(self, service, sample_request):
        install(service.registry, StubProvider("alpha", shipment=ShipmentResponse(
            success=True, shipment_id="SYO-9", error="MISSING_AWB",
        )))

        await service.create_shipment("alpha", sample_request, "svc-1")

        [stranded] = await service.list_stranded_shipments()
        assert stranded.vendor_shipment_id == "SYO-9"

    @pytest.mark.asyncio
    async def test_plain_failure_is_not_stranded(self, service, sample_request):
        install(service.registry, StubProvider(
            "alpha", shipment=ShipmentResponse.failure("Rejected", "PROVIDER_REJECTED"),
        ))

        await service.create_shipment("alpha", sample_request, "svc-1")

        [record] = await service.records.list_for_order("ORD-1001")
        assert record.state == CreationState.FAILED
        assert record.error_message == "Rejected"
        assert await service.list_stranded_shipments() == []

    @pytest.mark.asyncio
    async def test_adapter_crash_fails_the_record(self, service, sample_request):
        async def crash(*args):
            raise AttributeError("'NoneType' object has no attribute 'request'")

        install(service.registry, StubProvider("alpha", create_shipment=crash))

        response = await service.create_shipment("alpha", sample_request, "svc-1")

        assert not response.success
        assert response.error == "PROVIDER_ERROR"
        [record] = await service.records.list_for_order("ORD-1001")
        assert record.state == CreationState.FAILED
        assert await service.list_stranded_shipments() == []

    @pytest.mark.asyncio
    async def test_unknown_provider_creates_no_record(self, service, sample_request):
        response = await service.create_shipment("nobody", sample_request, "svc-1")

        assert response.error == "INVALID_PROVIDER"
        assert await service.records.list_for_order("ORD-1001") == []

    @pytest.mark.asyncio
    async def test_bad_pincode_is_rejected_before_vendor_call(self, service, sample_request):
        alpha = StubProvider("alpha")
        install(service.registry, alpha)

        response = await service.create_shipment(
            "alpha", replace(sample_request, delivery_pincode="4000"), "svc-1"
        )

        assert response.error == "INVALID_PINCODE"
        assert alpha.created == []

    @pytest.mark.asyncio
    async def test_create_selected_shipment_books_the_chosen_rate(self, service, sample_request):
        beta = StubProvider("beta", rates=[rate("Bluedart", 60, 3, service_id="BD-A")])
        install(service.registry, StubProvider("alpha"), beta)

        service.config = service.config.model_copy(update={"selection_strategy": SelectionStrategy.CHEAPEST})
        selection = await service.quote(sample_request, subtotal=200)
        response = await service.create_selected_shipment(sample_request, selection)

        assert response.success
        assert beta.created[0][1] == "BD-A"

    @pytest.mark.asyncio
    async def test_fallback_selection_cannot_be_booked(self, service, sample_request):
        selection = await service.quote(sample_request, subtotal=200)

        response = await service.create_selected_shipment(sample_request, selection)

        assert response.error == "NO_PROVIDER_SELECTED"

    @pytest.mark.asyncio
    async def test_insurance_applied_above_threshold(self, service, sample_request):
        alpha = StubProvider("alpha")
        install(service.registry, alpha)
        service.config = service.config.model_copy(update={"enable_insurance": True, "insurance_threshold": 800})

        await service.create_shipment("alpha", sample_request, "svc-1")
        await service.create_shipment("alpha", replace(sample_request, invoice_value=500), "svc-1")

        insured, uninsured = (request for request, _ in alpha.created)
        assert insured.requires_insurance
        assert insured.insurance_value == 1000
        assert not uninsured.requires_insurance


class TestTrackCancelReturn:
    """Test post-creation operations."""

    @pytest.mark.asyncio
    async def test_tracking_unknown_provider_is_a_failure_result(self, service):
        tracking = await service.track_shipment("nobody", "AWB1")

        assert not tracking.success
        assert tracking.error == "INVALID_PROVIDER"
        assert tracking.tracking_id == "AWB1"

    @pytest.mark.asyncio
    async def test_track_and_cancel_route_to_provider(self, service):
        install(service.registry, StubProvider("alpha"))

        tracking = await service.track_shipment("alpha", "AWB1")
        cancelled = await service.cancel_shipment("alpha", "AWB1")
        missing = await service.cancel_shipment("nobody", "AWB1")

        assert tracking.event_type.to_order_status() == "delivered"
        assert cancelled.success
        assert missing.error == "INVALID_PROVIDER"

    @pytest.mark.asyncio
    async def test_adapter_crash_is_a_failure_result(self, service, sample_request):
        async def crash(*args):
            raise RuntimeError("vendor client closed")

        install(service.registry, StubProvider(
            "alpha", track_shipment=crash, cancel_shipment=crash, create_return_shipment=crash,
        ))

        tracking = await service.track_shipment("alpha", "AWB1")
        cancelled = await service.cancel_shipment("alpha", "AWB1")
        returned = await service.create_return_shipment("alpha", "AWB1", sample_request)

        assert (tracking.success, tracking.error) == (False, "PROVIDER_ERROR")
        assert (cancelled.success, cancelled.error) == (False, "PROVIDER_ERROR")
        assert (returned.success, returned.error) == (False, "PROVIDER_ERROR")
        [record] = await service.records.list_for_order("ORD-1001")
        assert record.state == CreationState.FAILED

    @pytest.mark.asyncio
    async def test_return_works_on_a_copy(self, service, sample_request):
        """The caller's request is never flipped to a reverse pickup."""
        alpha = StubProvider("alpha", shipment=ShipmentResponse(success=True, tracking_id="RET-1"))
        install(service.registry, alpha)

        response = await service.create_return_shipment("alpha", "AWB1", sample_request)

        assert response.tracking_id == "RET-1"
        sent, original_awb = alpha.created[0]
        assert sent.is_reverse_pickup
        assert original_awb == "AWB1"
        assert not sample_request.is_reverse_pickup
        [record] = await service.records.list_for_order("ORD-1001")
        assert record.is_return


class TestInternational:
    """Test the international shipping switch."""

    @pytest.mark.asyncio
    async def test_international_is_gated_by_config(self, service, sample_request):
        alpha = StubProvider("alpha", rates=[rate("DHL", 2400, 6)])
        alpha.supports_international_shipping = lambda: True
        install(service.registry, alpha)
        request = replace(sample_request, is_international=True, destination_country="US")

        assert not service.supports_international_shipping()
        assert await service.get_international_rates("alpha", request) == []

        service.config = service.config.model_copy(update={"enable_international_shipping": True})

        assert service.supports_international_shipping("alpha")
        assert len(await service.get_international_rates("alpha", request)) == 1


class TestReconfiguration:
    """Test that rebuilding adapters does not break calls already under way."""

    @pytest.mark.asyncio
    async def test_reconfigure_during_retry_backoff_completes_the_call(self, vendor, sample_request):
        vendor.on("POST", "/api/orders/create", [
            httpx.Response(503),
            httpx.Response(200, json={"success": True, "tracking_number": "SW123", "shipment_id": 99}),
        ])
        clients = []

        def client_factory(provider_id):
            client = ResilientHTTPClient(
                name=provider_id,
                retry_config=RetryConfig(max_retries=1, base_delay=0.05, max_delay=0.05, jitter_max=0),
                timeout=5.0,
                transport=httpx.MockTransport(vendor),
            )
            clients.append(client)
            return client

        config = ShippingConfig(aggregators=[
            ProviderConfig(id="shipway", enabled=True, config_fields={"username": "m", "license_key": "k"}),
        ])
        service = ShippingService(
            registry=ProviderRegistry(http_client_factory=client_factory),
            config=config,
            default_option=DefaultShippingOption(),
        )
        service.apply_config(config)

        creating = asyncio.create_task(service.create_shipment("shipway", sample_request, "BD-A"))
        while not vendor.calls:
            await asyncio.sleep(0)
        # First attempt got a 503; the old adapter is now sleeping before its retry
        service.apply_config(config)
        response = await creating

        assert response.success
        assert response.tracking_id == "SW123"
        assert len(vendor.calls_to("/api/orders/create")) == 2
        [record] = await service.records.list_for_order("ORD-1001")
        assert record.state == CreationState.COMPLETED

        await service.aclose()
        old_client, new_client = clients
        assert old_client.in_flight == 0
        assert old_client._client is None
        assert new_client._client is None
