"""
Pytest configuration and fixtures for the shipping engine tests.
"""
import os
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Tuple, Union

import httpx
import pytest

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = ""
os.environ["SHIPPING_WEBHOOK_SECRET"] = ""
os.environ["SHIPROCKET_WEBHOOK_SECRET"] = ""
os.environ["SHIPWAY_WEBHOOK_SECRET"] = ""
os.environ["SHIPYAARI_WEBHOOK_SECRET"] = ""

from shipping_engine.core.http_client import ResilientHTTPClient, RetryConfig  # noqa: E402
from shipping_engine.modules.shipping.providers.base import (  # noqa: E402
    BaseShippingProvider,
    OrderItem,
    PaymentMethod,
    ShipmentCancellationResponse,
    ShipmentEventType,
    ShipmentResponse,
    ShipmentTrackingResponse,
    ShippingRate,
    ShippingRequest,
    WebhookEvent,
)
from shipping_engine.modules.shipping.registry import ProviderGeneration, ProviderRegistry  # noqa: E402

Reply = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


class FakeVendor:
    """
    Route table for httpx.MockTransport.

    Keys are (method, path); a value is a Response, a callable, or a list
    of either consumed in order (the last one repeats).
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Any] = {}
        self.calls: List[httpx.Request] = []

    def on(self, method: str, path: str, reply: Union[Reply, List[Reply]]) -> "FakeVendor":
        self.routes[(method.upper(), path)] = reply
        return self

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [c for c in self.calls if c.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        reply = self.routes.get((request.method, request.url.path))
        if reply is None:
            return httpx.Response(404, json={"message": f"no route for {request.url.path}"})
        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if not isinstance(reply, httpx.Response):
            return reply(request)
        # Fresh copy per call; a Response object cannot be sent twice
        return httpx.Response(reply.status_code, headers=reply.headers, content=reply.content)


def make_client(handler, name: str = "test", max_retries: int = 2) -> ResilientHTTPClient:
    """Retrying client with zero backoff over a MockTransport."""
    return ResilientHTTPClient(
        name=name,
        retry_config=RetryConfig(max_retries=max_retries, base_delay=0, max_delay=0, jitter_max=0),
        timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def vendor() -> FakeVendor:
    return FakeVendor()


@pytest.fixture
def client_for() -> Callable[..., ResilientHTTPClient]:
    return make_client


@pytest.fixture
def sample_request() -> ShippingRequest:
    """Delhi -> Mumbai, 500 g, prepaid."""
    return ShippingRequest(
        order_id="ORD-1001",
        pickup_pincode="110001",
        delivery_pincode="400001",
        weight=500,
        invoice_value=1000,
        payment_method=PaymentMethod.PREPAID,
        customer_name="Asha Rao",
        customer_phone="9876543210",
        customer_email="asha@example.com",
        customer_address="12 Marine Drive",
        customer_city="Mumbai",
        customer_state="Maharashtra",
        pickup_location_name="Primary",
        pickup_name="Warehouse",
        pickup_phone="9123456780",
        pickup_email="ops@example.com",
        pickup_address="1 Connaught Place",
        pickup_city="New Delhi",
        pickup_state="Delhi",
        items=(OrderItem(name="Cotton Kurta", sku="CK-1", units=1, selling_price=1000),),
    )


class StubProvider(BaseShippingProvider):
    """
    In-process adapter with canned answers.

    rates may be a list of ShippingRate or an exception instance to raise
    from the fetch; shipment is what create_shipment returns.
    """

    has_webhook = True
    status_map = {"DELIVERED": ShipmentEventType.DELIVERED, "NDR": ShipmentEventType.NDR}

    def __init__(self, provider_id: str, rates=(), shipment: ShipmentResponse = None, **kwargs):
        self._id = provider_id
        super().__init__({}, http_client=make_client(FakeVendor(), name=provider_id))
        self.rates = rates
        self.shipment = shipment or ShipmentResponse(success=True, tracking_id=f"{provider_id.upper()}-AWB")
        self.created: List[Tuple[ShippingRequest, str]] = []
        self.handled: List[WebhookEvent] = []
        self.closed = False
        for key, value in kwargs.items():
            setattr(self, key, value)

    @property
    def provider_id(self) -> str:
        return self._id

    @property
    def provider_name(self) -> str:
        return self._id.title()

    async def _fetch_rates(self, request):
        if isinstance(self.rates, BaseException):
            raise self.rates
        return list(self.rates)

    async def _fetch_international_rates(self, request):
        return await self._fetch_rates(request)

    async def create_shipment(self, request, service_id):
        self.created.append((request, service_id))
        return self.shipment

    async def create_return_shipment(self, original_tracking_id, request):
        self.created.append((request, original_tracking_id))
        return self.shipment

    async def track_shipment(self, tracking_id):
        return ShipmentTrackingResponse(success=True, tracking_id=tracking_id, current_status="DELIVERED",
                                        event_type=ShipmentEventType.DELIVERED)

    async def cancel_shipment(self, tracking_id):
        return ShipmentCancellationResponse(success=True, tracking_id=tracking_id, message="Cancelled")

    async def handle_webhook_event(self, event):
        self.handled.append(event)

    async def aclose(self):
        self.closed = True
        await super().aclose()


def rate(carrier: str, cost: float, days: int, service_id: str = None, **kwargs) -> ShippingRate:
    return ShippingRate(
        carrier_name=carrier,
        service_id=service_id or carrier.lower(),
        carrier_id=carrier.lower(),
        cost=cost,
        estimated_days=days,
        **kwargs,
    )


def install(registry: ProviderRegistry, *providers: StubProvider, default: str = None) -> None:
    """Swap a generation of stubs into a registry, in priority order."""
    by_id = {p.provider_id: p for p in providers}
    registry._generation = ProviderGeneration(
        providers=MappingProxyType(by_id),
        default_provider_id=default or (providers[0].provider_id if providers else None),
        priority_order=tuple(by_id),
    )
