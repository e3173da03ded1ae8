"""
Shiprocket adapter: token state machine, rates, two-step creation,
tracking, cancellation and webhook decoding.
"""
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from shipping_engine.models.shipment_record import CreationState
from shipping_engine.modules.shipping.providers.base import (
    PaymentMethod,
    PickupLocation,
    QuoteStatus,
    ShipmentEventType,
)
from shipping_engine.modules.shipping.providers.shiprocket import ShiprocketProvider
from shipping_engine.services.shipment_records import outcome_state

from conftest import make_client

API = "/v1/external"
CREDENTIALS = {"email": "ops@example.com", "password": "pw", "api_key": "key"}


def login_ok():
    return httpx.Response(200, json={"token": "tok-1"})


def serviceability(*couriers):
    return httpx.Response(200, json={"data": {"available_courier_companies": list(couriers)}})


def courier(company_id, name, rate, days):
    return {
        "courier_company_id": company_id,
        "courier_name": name,
        "courier_code": name.lower(),
        "rate": rate,
        "estimated_delivery_days": days,
    }


def make_provider(vendor, config=None):
    return ShiprocketProvider(config or CREDENTIALS, http_client=make_client(vendor))


# ==================== Configuration ====================


def test_is_configured_requires_all_credentials():
    assert ShiprocketProvider(CREDENTIALS).is_configured()
    assert not ShiprocketProvider({**CREDENTIALS, "api_key": ""}).is_configured()
    assert not ShiprocketProvider({"email": "a@b.c"}).is_configured()


@pytest.mark.asyncio
async def test_unconfigured_provider_makes_no_network_call(vendor, sample_request):
    provider = make_provider(vendor, {"email": "ops@example.com"})

    quote = await provider.quote_rates(sample_request)

    assert quote.status == QuoteStatus.NOT_CONFIGURED
    assert quote.rates == []
    assert vendor.calls == []


# ==================== Authentication ====================


@pytest.mark.asyncio
async def test_token_is_cached_across_calls(vendor, sample_request):
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("GET", f"{API}/courier/serviceability", serviceability(courier(1, "Delhivery", 80, 4)))
    provider = make_provider(vendor)

    await provider.get_rates(sample_request)
    await provider.get_rates(sample_request)

    assert len(vendor.calls_to(f"{API}/auth/login")) == 1
    rate_call = vendor.calls_to(f"{API}/courier/serviceability")[0]
    assert rate_call.headers["Authorization"] == "Bearer tok-1"


@pytest.mark.asyncio
async def test_expired_token_triggers_relogin(vendor, sample_request):
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("GET", f"{API}/courier/serviceability", serviceability(courier(1, "Delhivery", 80, 4)))
    provider = make_provider(vendor)

    await provider.get_rates(sample_request)
    provider._token_expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    await provider.get_rates(sample_request)

    assert len(vendor.calls_to(f"{API}/auth/login")) == 2


@pytest.mark.asyncio
async def test_login_failure_is_an_error_quote_not_unserviceable(vendor, sample_request):
    vendor.on("POST", f"{API}/auth/login", httpx.Response(401, json={"message": "Invalid credentials"}))
    provider = make_provider(vendor)

    quote = await provider.quote_rates(sample_request)

    assert quote.status == QuoteStatus.ERROR
    assert quote.rates == []
    assert "authentication failed" in quote.message
    assert vendor.calls_to(f"{API}/courier/serviceability") == []


# ==================== Rates ====================


@pytest.mark.asyncio
async def test_rates_are_normalized(vendor, sample_request):
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("GET", f"{API}/courier/serviceability", serviceability(
        courier(10, "Delhivery", 80.5, "4"),
        {"courier_company_id": 11, "courier_name": "Xpressbees", "rate": "95"},
    ))
    provider = make_provider(vendor)

    rates = await provider.get_rates(replace(sample_request, payment_method=PaymentMethod.COD))

    assert [(r.carrier_name, r.service_id, r.cost, r.estimated_days) for r in rates] == [
        ("Delhivery", "10", 80.5, 4),
        ("Xpressbees", "11", 95.0, 3),
    ]
    params = vendor.calls_to(f"{API}/courier/serviceability")[0].url.params
    assert params["weight"] == "0.50"
    assert params["cod"] == "1000"
    assert params["pickup_postcode"] == "110001"


@pytest.mark.asyncio
async def test_no_couriers_is_unserviceable(vendor, sample_request):
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("GET", f"{API}/courier/serviceability", serviceability())
    provider = make_provider(vendor)

    quote = await provider.quote_rates(sample_request)

    assert quote.status == QuoteStatus.UNSERVICEABLE


@pytest.mark.asyncio
@pytest.mark.parametrize("data", [[{"courier_name": "Delhivery"}], "no couriers"])
async def test_unexpected_data_shape_is_error_quote(vendor, sample_request, data):
    """A list or string where an object belongs is an ERROR quote, not a crash."""
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("GET", f"{API}/courier/serviceability", httpx.Response(200, json={"data": data}))
    provider = make_provider(vendor)

    quote = await provider.quote_rates(sample_request)

    assert quote.status == QuoteStatus.ERROR
    assert quote.rates == []
    assert quote.message.startswith("Malformed rate response")


@pytest.mark.asyncio
async def test_international_request_uses_separate_endpoint(vendor, sample_request):
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("GET", f"{API}/courier/international/serviceability", serviceability(
        {**courier(20, "DHL", 2400, 6), "currency": "INR", "insurance_amount": 120},
    ))
    provider = make_provider(vendor)
    request = replace(sample_request, is_international=True, destination_country="US", delivery_pincode="")

    rates = await provider.get_international_rates(request)

    assert len(rates) == 1
    assert rates[0].is_international
    assert rates[0].insurance_available
    assert rates[0].insurance_cost == 120
    assert vendor.calls_to(f"{API}/courier/serviceability") == []


# ==================== Creation ====================


@pytest.mark.asyncio
async def test_create_shipment_runs_both_steps(vendor, sample_request):
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("POST", f"{API}/orders/create/adhoc", httpx.Response(200, json={"order_id": 555, "shipment_id": 777}))
    vendor.on("POST", f"{API}/courier/generate/pickup", httpx.Response(200, json={
        "awb": "AWB123", "courier_name": "Delhivery", "label_url": "https://labels/1.pdf",
    }))
    provider = make_provider(vendor)

    response = await provider.create_shipment(sample_request, "10")

    assert response.success
    assert response.tracking_id == "AWB123"
    assert response.vendor_order_id == "555"
    assert response.shipment_id == "777"
    assert not response.partial
    pickup_body = vendor.calls_to(f"{API}/courier/generate/pickup")[0]
    assert b'"courier_id":10' in pickup_body.content.replace(b" ", b"")


@pytest.mark.asyncio
async def test_second_step_failure_reports_partial_shipment(vendor, sample_request):
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("POST", f"{API}/orders/create/adhoc", httpx.Response(200, json={"order_id": 555, "shipment_id": 777}))
    vendor.on("POST", f"{API}/courier/generate/pickup", httpx.Response(422, json={"message": "Courier not serviceable"}))
    provider = make_provider(vendor)

    response = await provider.create_shipment(sample_request, "10")

    assert not response.success
    assert response.partial
    assert response.error == "PARTIAL_SHIPMENT"
    assert response.vendor_order_id == "555"
    assert response.shipment_id == "777"
    assert "Courier not serviceable" in response.message


@pytest.mark.asyncio
async def test_shipment_without_awb_stays_reconcilable(vendor, sample_request):
    """The shipment id is never passed off as a tracking number."""
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("POST", f"{API}/orders/create/adhoc", httpx.Response(200, json={"order_id": 555, "shipment_id": 777}))
    vendor.on("POST", f"{API}/courier/generate/pickup", httpx.Response(200, json={"pickup_status": 0}))
    provider = make_provider(vendor)

    response = await provider.create_shipment(sample_request, "10")

    assert response.success
    assert response.tracking_id is None
    assert response.shipment_id == "777"
    assert response.error == "MISSING_AWB"
    assert outcome_state(response) == CreationState.VENDOR_ORDER_CREATED


@pytest.mark.asyncio
async def test_first_step_failure_is_plain_failure(vendor, sample_request):
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("POST", f"{API}/orders/create/adhoc", httpx.Response(400, json={"message": "Invalid pickup location"}))
    provider = make_provider(vendor)

    response = await provider.create_shipment(sample_request, "10")

    assert not response.success
    assert not response.partial
    assert response.error == "PROVIDER_REJECTED"
    assert vendor.calls_to(f"{API}/courier/generate/pickup") == []


# ==================== Tracking / Cancel ====================


def tracking_payload():
    return {
        "tracking_data": {
            "order_id": 555,
            "shipment_track": [{
                "current_status": "Out For Delivery",
                "current_location": "Mumbai Hub",
                "courier_name": "Delhivery",
                "etd": "2026-01-10 18:00:00",
            }],
            "shipment_track_activities": [
                {"status": "Out For Delivery", "date": "2026-01-10 08:00:00", "location": "Mumbai Hub", "activity": "Out"},
                {"status": "In Transit", "date": "2026-01-09 08:00:00", "location": "Delhi", "activity": "Left hub"},
            ],
        }
    }


@pytest.mark.asyncio
async def test_track_shipment_maps_status_and_history(vendor):
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("GET", f"{API}/courier/track/awb/AWB123", httpx.Response(200, json=tracking_payload()))
    provider = make_provider(vendor)

    tracking = await provider.track_shipment("AWB123")

    assert tracking.success
    assert tracking.event_type == ShipmentEventType.OUT_FOR_DELIVERY
    assert tracking.current_location == "Mumbai Hub"
    assert [e.location for e in tracking.history] == ["Mumbai Hub", "Delhi"]
    assert tracking.estimated_delivery_date.year == 2026


@pytest.mark.asyncio
async def test_tracking_twice_returns_equal_results(vendor):
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("GET", f"{API}/courier/track/awb/AWB123", httpx.Response(200, json=tracking_payload()))
    provider = make_provider(vendor)

    first = await provider.track_shipment("AWB123")
    second = await provider.track_shipment("AWB123")

    assert first == second


@pytest.mark.asyncio
async def test_malformed_tracking_payload_is_failure(vendor):
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("GET", f"{API}/courier/track/awb/AWB404", httpx.Response(200, json={"tracking_data": {"error": "x"}}))
    provider = make_provider(vendor)

    tracking = await provider.track_shipment("AWB404")

    assert not tracking.success
    assert tracking.error == "TRACKING_NOT_FOUND"


@pytest.mark.asyncio
async def test_cancel_resolves_order_id_first(vendor):
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("GET", f"{API}/courier/track/awb/AWB123", httpx.Response(200, json=tracking_payload()))
    vendor.on("POST", f"{API}/orders/cancel", httpx.Response(200, json={"message": "Cancelled"}))
    provider = make_provider(vendor)

    result = await provider.cancel_shipment("AWB123")

    assert result.success
    cancel_call = vendor.calls_to(f"{API}/orders/cancel")[0]
    assert b"555" in cancel_call.content


@pytest.mark.asyncio
async def test_cancel_without_order_id_fails_without_cancel_call(vendor):
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("GET", f"{API}/courier/track/awb/AWB9", httpx.Response(200, json={"tracking_data": {}}))
    provider = make_provider(vendor)

    result = await provider.cancel_shipment("AWB9")

    assert not result.success
    assert vendor.calls_to(f"{API}/orders/cancel") == []


# ==================== Webhooks ====================


def test_webhook_event_name_maps_when_status_missing():
    provider = ShiprocketProvider(CREDENTIALS)

    event = provider.parse_webhook_event({
        "event": "order.delivered",
        "data": {"awb_code": "AWB123", "order_id": "ORD-1001"},
    })

    assert event.event_type == ShipmentEventType.DELIVERED
    assert event.tracking_id == "AWB123"
    assert event.order_id == "ORD-1001"
    assert event.event_type.to_order_status() == "delivered"


@pytest.mark.parametrize("vendor_status,expected", [
    ("Out For Delivery", ShipmentEventType.OUT_FOR_DELIVERY),
    ("RTO Delivered", ShipmentEventType.RETURNED),
    ("RTO IN TRANSIT", ShipmentEventType.RTO_INITIATED),
    ("rto_initiated", ShipmentEventType.RTO_INITIATED),
    ("Shipment Out For Delivery", ShipmentEventType.UNKNOWN),
    ("Held at customs", ShipmentEventType.UNKNOWN),
])
def test_status_mapping_is_exact(vendor_status, expected):
    """A return to origin must never read as a delivery."""
    assert ShiprocketProvider(CREDENTIALS).map_status(vendor_status) == expected


# ==================== Returns / Pickup ====================


@pytest.mark.asyncio
async def test_return_survives_label_failure(vendor, sample_request):
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("GET", f"{API}/courier/track/awb/AWB123", httpx.Response(200, json=tracking_payload()))
    vendor.on("POST", f"{API}/orders/create/return", httpx.Response(200, json={
        "order_id": 901, "shipment_id": 902, "awb_code": "RAWB1",
    }))
    vendor.on("POST", f"{API}/courier/generate/label", httpx.Response(400, json={"message": "Label not ready"}))
    provider = make_provider(vendor)

    response = await provider.create_return_shipment("AWB123", replace(sample_request, return_reason="Damaged"))

    assert response.success
    assert response.tracking_id == "RAWB1"
    assert response.shipment_id == "902"
    assert response.label_url is None
    assert b"Damaged" in vendor.calls_to(f"{API}/orders/create/return")[0].content


@pytest.mark.asyncio
async def test_created_pickup_location_is_found_by_relisting(vendor):
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("POST", f"{API}/settings/company/addpickup", httpx.Response(200, json={"success": True}))
    vendor.on("GET", f"{API}/settings/company/pickup", httpx.Response(200, json={"data": {"shipping_address": [
        {"id": 1, "pickup_location": "Primary", "address": "1 CP", "city": "Delhi", "state": "Delhi",
         "pin_code": 110001, "primary": 1},
        {"id": 2, "pickup_location": "Mumbai WH", "address": "2 MG", "city": "Mumbai", "state": "MH",
         "pin_code": 400001, "primary": 0},
    ]}}))
    provider = make_provider(vendor)

    created = await provider.create_pickup_location(PickupLocation(
        name="Mumbai WH", address="2 MG", city="Mumbai", state="MH", pincode="400001",
    ))

    assert created.id == "2"
    assert not created.is_default


@pytest.mark.asyncio
async def test_rejected_pickup_location_returns_none(vendor):
    vendor.on("POST", f"{API}/auth/login", login_ok())
    vendor.on("POST", f"{API}/settings/company/addpickup", httpx.Response(200, json={
        "success": False, "message": "Address already exists",
    }))
    provider = make_provider(vendor)

    created = await provider.create_pickup_location(PickupLocation(
        name="Primary", address="1 CP", city="Delhi", state="Delhi", pincode="110001",
    ))

    assert created is None
    assert vendor.calls_to(f"{API}/settings/company/pickup") == []
