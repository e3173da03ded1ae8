"""
Shipping API Routes

Thin layer over ShippingService and WebhookService:
- Rate aggregation and quote selection
- Shipment creation, tracking, cancellation, returns
- Pickup location listing/creation per provider
- Public pincode serviceability check
- Stranded creation records for reconciliation
- Inbound vendor webhooks
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, Query, Request, status

from shipping_engine.api.deps import get_shipping_service, get_webhook_service, require_provider
from shipping_engine.core.exceptions import InvalidShippingRequestError
from shipping_engine.core.utils import is_valid_pincode
from shipping_engine.schemas.shipping import (
    CancellationSchema,
    CreationRecordSchema,
    CreateShipmentRequest,
    PickupLocationSchema,
    ProviderDiagnosticSchema,
    QuoteRequest,
    QuoteResponse,
    RateSchema,
    RatesResponse,
    ServiceabilityResponse,
    ShipmentResultSchema,
    ShippingRequestSchema,
    TrackingSchema,
)
from shipping_engine.services.shipping_service import ShippingService
from shipping_engine.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shipping", tags=["shipping"])


# ==================== Rates ====================


@router.post("/rates", response_model=RatesResponse)
async def get_rates(
    body: ShippingRequestSchema,
    service: ShippingService = Depends(get_shipping_service),
):
    """Rates from every live provider, with a per-provider diagnostic."""
    result = await service.get_all_rates_with_diagnostics(body.to_request())
    return RatesResponse(
        rates={
            pid: [RateSchema.from_rate(r) for r in rates]
            for pid, rates in result.rates.items()
        },
        diagnostics=[ProviderDiagnosticSchema(**d.to_dict()) for d in result.diagnostics.values()],
    )


@router.post("/quote", response_model=QuoteResponse)
async def quote(
    body: QuoteRequest,
    service: ShippingService = Depends(get_shipping_service),
):
    selection = await service.quote(body.request.to_request(), body.subtotal)
    return QuoteResponse(
        provider_id=selection.provider_id,
        rate=RateSchema.from_rate(selection.rate) if selection.rate else None,
        final_cost=selection.final_cost,
        is_fallback=selection.is_fallback,
        free_shipping_applied=selection.free_shipping_applied,
        strategy=selection.strategy,
        method_name=selection.method_name,
        carrier_name=selection.carrier_name,
        estimated_days=selection.estimated_days,
    )


@router.get("/serviceability", response_model=ServiceabilityResponse)
async def check_serviceability(
    pincode: str = Query(..., description="Delivery pincode"),
    weight: int = Query(500, description="Grams"),
    invoice_value: int = Query(1000, alias="invoiceValue"),
    service: ShippingService = Depends(get_shipping_service),
):
    pincode = pincode.strip()
    if not is_valid_pincode(pincode):
        raise InvalidShippingRequestError("Valid pincode is required")

    pickup = service.config.default_pickup_location
    summary = await service.aggregator.check_serviceability(
        pincode,
        weight=weight,
        invoice_value=invoice_value,
        pickup_pincode=pickup.pincode if pickup else None,
    )
    return ServiceabilityResponse(**summary.__dict__)


# ==================== Shipments ====================


@router.post("/shipments", response_model=ShipmentResultSchema, status_code=status.HTTP_201_CREATED)
async def create_shipment(
    body: CreateShipmentRequest,
    service: ShippingService = Depends(get_shipping_service),
):
    require_provider(service, body.provider_id)
    response = await service.create_shipment(body.provider_id, body.request.to_request(), body.service_id)
    return ShipmentResultSchema.from_response(response)


@router.get("/shipments/stranded", response_model=List[CreationRecordSchema])
async def list_stranded_shipments(service: ShippingService = Depends(get_shipping_service)):
    """Vendor-side orders with no finished shipment, for manual reconciliation."""
    records = await service.list_stranded_shipments()
    return [CreationRecordSchema.model_validate(record) for record in records]


@router.get("/shipments/{provider_id}/{tracking_id}", response_model=TrackingSchema)
async def track_shipment(
    provider_id: str,
    tracking_id: str,
    service: ShippingService = Depends(get_shipping_service),
):
    require_provider(service, provider_id)
    response = await service.track_shipment(provider_id, tracking_id)
    return TrackingSchema.from_response(response)


@router.post("/shipments/{provider_id}/{tracking_id}/cancel", response_model=CancellationSchema)
async def cancel_shipment(
    provider_id: str,
    tracking_id: str,
    service: ShippingService = Depends(get_shipping_service),
):
    require_provider(service, provider_id)
    response = await service.cancel_shipment(provider_id, tracking_id)
    return CancellationSchema.from_response(response)


@router.post("/shipments/{provider_id}/{tracking_id}/return", response_model=ShipmentResultSchema)
async def create_return_shipment(
    provider_id: str,
    tracking_id: str,
    body: ShippingRequestSchema,
    service: ShippingService = Depends(get_shipping_service),
):
    require_provider(service, provider_id)
    response = await service.create_return_shipment(provider_id, tracking_id, body.to_request())
    return ShipmentResultSchema.from_response(response)


# ==================== Pickup Locations ====================


@router.get("/providers/{provider_id}/pickup-locations", response_model=List[PickupLocationSchema])
async def list_pickup_locations(
    provider_id: str,
    service: ShippingService = Depends(get_shipping_service),
):
    require_provider(service, provider_id)
    locations = await service.get_pickup_locations(provider_id)
    return [PickupLocationSchema.from_location(loc) for loc in locations]


@router.post(
    "/providers/{provider_id}/pickup-locations",
    response_model=PickupLocationSchema,
    status_code=status.HTTP_201_CREATED,
)
async def create_pickup_location(
    provider_id: str,
    body: PickupLocationSchema,
    service: ShippingService = Depends(get_shipping_service),
):
    require_provider(service, provider_id)
    if not is_valid_pincode(body.pincode):
        raise InvalidShippingRequestError("Pickup pincode must be 6 digits")
    created = await service.create_pickup_location(provider_id, body.to_location())
    if created is None:
        raise InvalidShippingRequestError(
            f"{provider_id} did not accept the pickup location",
            code="PICKUP_LOCATION_REJECTED",
        )
    return PickupLocationSchema.from_location(created)


# ==================== Webhooks ====================


@router.post("/webhooks/{provider_id}")
async def receive_webhook(
    provider_id: str,
    request: Request,
    webhooks: WebhookService = Depends(get_webhook_service),
):
    """Always 200 for the vendor unless the shared secret is wrong (401)."""
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    ack = await webhooks.handle(provider_id, payload, dict(request.headers))
    return ack.to_dict()
