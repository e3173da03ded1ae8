import httpx
import pytest

from shipping_engine.core.exceptions import WebhookVerificationError
from shipping_engine.core.idempotency import InMemoryIdempotencyStore
from shipping_engine.modules.shipping.providers.base import ShipmentEventType
from shipping_engine.modules.shipping.registry import ProviderRegistry
from shipping_engine.schemas.shipping_config import ProviderConfig
from shipping_engine.services.webhook_service import WebhookService

from conftest import StubProvider, install, make_client

NDR_PAYLOAD = {
    "status": "NDR",
    "awb": "SW123",
    "order_id": "ORD-1001",
    "ndr_reason": "Customer not available",
}


def no_secrets(provider_id):
    return ""


@pytest.fixture
def registry(vendor):
    registry = ProviderRegistry(http_client_factory=lambda pid: make_client(vendor, name=pid))
    registry.initialize_providers([
        ProviderConfig(id="shipway", enabled=True, config_fields={"username": "m", "license_key": "lk"}),
        ProviderConfig(id="shipyaari", enabled=True, config_fields={"user_id": "u", "api_key": "k"}),
    ])
    return registry


@pytest.mark.asyncio
async def test_duplicate_ndr_triggers_one_redelivery(registry, vendor):
    vendor.on("POST", "/api/ndr/resolve", httpx.Response(200, json={"success": True}))
    seen = []

    async def record(event):
        seen.append(event)

    service = WebhookService(registry, InMemoryIdempotencyStore(), on_event=record, secret_lookup=no_secrets)

    first = await service.handle("shipway", NDR_PAYLOAD)
    second = await service.handle("shipway", NDR_PAYLOAD)

    assert first.status == "processed"
    assert first.event_type == ShipmentEventType.NDR.value
    assert second.status == "duplicate"
    assert second.duplicate
    assert len(vendor.calls_to("/api/ndr/resolve")) == 1
    assert len(seen) == 1
    assert seen[0].tracking_id == "SW123"


@pytest.mark.asyncio
async def test_distinct_statuses_are_not_duplicates(registry, vendor):
    service = WebhookService(registry, secret_lookup=no_secrets)

    first = await service.handle("shipway", {"status": "IN_TRANSIT", "awb": "SW123"})
    second = await service.handle("shipway", {"status": "DELIVERED", "awb": "SW123"})

    assert first.status == second.status == "processed"


@pytest.mark.asyncio
async def test_provider_without_webhooks_is_ignored(registry, vendor):
    service = WebhookService(registry, secret_lookup=no_secrets)

    ack = await service.handle("shipyaari", {"status": "DELIVERED", "awb": "SY1"})

    assert ack.status == "ignored"
    assert ack.received


@pytest.mark.asyncio
async def test_unknown_provider_is_ignored(registry):
    service = WebhookService(registry, secret_lookup=no_secrets)

    ack = await service.handle("shiprocket", {"status": "DELIVERED"})

    assert ack.status == "ignored"
    assert ack.to_dict()["provider_id"] == "shiprocket"


@pytest.mark.asyncio
async def test_secret_is_checked_when_configured(registry):
    service = WebhookService(registry, secret_lookup=lambda pid: "s3cret")

    with pytest.raises(WebhookVerificationError):
        await service.handle("shipway", NDR_PAYLOAD, {"X-Webhook-Secret": "wrong"})
    with pytest.raises(WebhookVerificationError):
        await service.handle("shipway", NDR_PAYLOAD, {})

    ack = await service.handle("shipway", {"status": "DELIVERED", "awb": "SW1"}, {"X-Webhook-Secret": "s3cret"})
    assert ack.status == "processed"


@pytest.mark.asyncio
async def test_callback_failure_is_acknowledged_and_not_retried():
    registry = ProviderRegistry()
    stub = StubProvider("alpha")
    install(registry, stub)
    calls = []

    async def broken(event):
        calls.append(event)
        raise RuntimeError("order table locked")

    service = WebhookService(registry, on_event=broken, secret_lookup=no_secrets)

    first = await service.handle("alpha", {"status": "DELIVERED", "awb": "A1", "event_id": "evt-1"})
    second = await service.handle("alpha", {"status": "DELIVERED", "awb": "A1", "event_id": "evt-1"})

    assert first.status == "error"
    assert first.message == "Internal error"
    assert second.status == "duplicate"
    assert len(calls) == 1
    assert len(stub.handled) == 1


@pytest.mark.asyncio
async def test_event_id_is_part_of_the_key():
    registry = ProviderRegistry()
    stub = StubProvider("alpha")
    install(registry, stub)
    service = WebhookService(registry, secret_lookup=no_secrets)

    await service.handle("alpha", {"status": "NDR", "awb": "A1", "event_id": "attempt-1"})
    await service.handle("alpha", {"status": "NDR", "awb": "A1", "event_id": "attempt-2"})

    assert [e.event_id for e in stub.handled] == ["attempt-1", "attempt-2"]


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [None, ["DELIVERED"], "DELIVERED", 42])
async def test_non_object_payload_is_acknowledged_as_error(payload):
    registry = ProviderRegistry()
    stub = StubProvider("alpha")
    install(registry, stub)
    service = WebhookService(registry, secret_lookup=no_secrets)

    ack = await service.handle("alpha", payload)

    assert ack.received
    assert ack.status == "error"
    assert stub.handled == []
