"""
Shipway Provider Implementation

Shipway uses static credentials (username + license key) sent in every
JSON body, so there is no token state. Responses carry a "success" flag
that has to be checked even on HTTP 200.

Non-delivery reports arriving by webhook trigger an automatic redelivery
request back to Shipway. That call is best effort: failures are logged
and never retried.
"""
import logging
from typing import Any, Dict, List, Mapping, Optional

from shipping_engine.core.exceptions import ProviderRejectedError, ShippingEngineError
from shipping_engine.core.utils import grams_to_kg, parse_vendor_date, to_float, to_int
from shipping_engine.modules.shipping.providers import register_provider
from shipping_engine.modules.shipping.providers.base import (
    BaseShippingProvider,
    InsuranceDetails,
    PickupLocation,
    ShipmentCancellationResponse,
    ShipmentEventType,
    ShipmentResponse,
    ShipmentTrackingResponse,
    ShippingRate,
    ShippingRequest,
    TrackingEvent,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

SHIPWAY_PRODUCTION_URL = "https://shipway.in/api"
SHIPWAY_STAGING_URL = "https://staging.shipway.in/api"
SHIPWAY_CANCEL_URL = "https://shipway.in/api/CancelShipment"

DEFAULT_ESTIMATED_DAYS = 3

SHIPWAY_STATUS_MAP = {
    "SHIPPED": ShipmentEventType.IN_TRANSIT,
    "PICKED": ShipmentEventType.PICKED_UP,
    "PICKED UP": ShipmentEventType.PICKED_UP,
    "IN TRANSIT": ShipmentEventType.IN_TRANSIT,
    "OUT FOR DELIVERY": ShipmentEventType.OUT_FOR_DELIVERY,
    "DELIVERED": ShipmentEventType.DELIVERED,
    "NDR": ShipmentEventType.NDR,
    "UNDELIVERED": ShipmentEventType.NDR,
    "RTO INITIATED": ShipmentEventType.RTO_INITIATED,
    "RTO IN TRANSIT": ShipmentEventType.RTO_INITIATED,
    "RTO DELIVERED": ShipmentEventType.RETURNED,
    "CANCEL": ShipmentEventType.CANCELLED,
    "CANCELLED": ShipmentEventType.CANCELLED,
}


@register_provider("shipway")
class ShipwayProvider(BaseShippingProvider):
    """Shipway aggregator. Domestic only."""

    required_fields = ("username", "license_key")
    status_map = SHIPWAY_STATUS_MAP
    has_webhook = True

    @property
    def provider_id(self) -> str:
        return "shipway"

    @property
    def provider_name(self) -> str:
        return "Shipway"

    @property
    def test_mode(self) -> bool:
        return self.config_flag("test_mode")

    @property
    def base_url(self) -> str:
        return SHIPWAY_STAGING_URL if self.test_mode else SHIPWAY_PRODUCTION_URL

    def _credentials(self) -> Dict[str, str]:
        return {
            "username": self.get_config_value("username"),
            "license_key": self.get_config_value("license_key"),
        }

    async def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST with credentials and enforce the body-level success flag."""
        data = await self._request_json("POST", url, json={**self._credentials(), **body})
        if not data.get("success"):
            raise ProviderRejectedError(
                f"Shipway: {data.get('message') or 'Unknown error'}",
                provider_id=self.provider_id,
            )
        return data

    @staticmethod
    def _dimensions(request: ShippingRequest) -> Dict[str, float]:
        package = request.package
        return {"length": package.length, "width": package.breadth, "height": package.height}

    # -------------------------------------------------------------------------
    # Rates
    # -------------------------------------------------------------------------

    async def _fetch_rates(self, request: ShippingRequest) -> List[ShippingRate]:
        data = await self._post(
            f"{self.base_url}/courier/serviceability",
            {
                "pickup_pincode": request.pickup_pincode,
                "delivery_pincode": request.delivery_pincode,
                "weight": grams_to_kg(request.weight),
                "invoice_value": request.invoice_value,
                "payment_type": "COD" if request.is_cod else "Prepaid",
                **self._dimensions(request),
            },
        )
        couriers = data.get("couriers")
        if not isinstance(couriers, list):
            return []

        rates = []
        for courier in couriers:
            service = courier.get("service_id") or courier.get("service")
            insurance_rate = to_float(courier.get("insurance_rate"))
            rates.append(ShippingRate(
                carrier_name=courier["name"],
                service_id=str(service),
                carrier_id=str(courier.get("courier_id") or service),
                cost=float(courier["rate"]),
                estimated_days=to_int(courier.get("estimated_days"), DEFAULT_ESTIMATED_DAYS),
                insurance_available=bool(courier.get("insurance_available")),
                insurance_cost=insurance_rate or None,
            ))
        return rates

    # -------------------------------------------------------------------------
    # Shipments
    # -------------------------------------------------------------------------

    async def create_shipment(self, request: ShippingRequest, service_id: str) -> ShipmentResponse:
        body = {
            "order_id": request.order_id,
            "service_id": service_id,
            "pickup_name": request.pickup_location_name or request.pickup_name,
            "pickup_address": request.pickup_address,
            "pickup_city": request.pickup_city,
            "pickup_state": request.pickup_state,
            "pickup_pincode": request.pickup_pincode,
            "pickup_phone": request.pickup_phone,
            "pickup_email": request.pickup_email,
            "customer_name": request.customer_name,
            "customer_address": request.customer_address,
            "customer_city": request.customer_city,
            "customer_state": request.customer_state,
            "customer_pincode": request.delivery_pincode,
            "customer_phone": request.customer_phone,
            "customer_email": request.customer_email,
            "payment_type": "COD" if request.is_cod else "Prepaid",
            "cod_amount": request.invoice_value if request.is_cod else 0,
            "invoice_value": request.invoice_value,
            "weight": grams_to_kg(request.weight),
            **self._dimensions(request),
            "product_description": ", ".join(item.name for item in request.items) or "Product",
            "items": [
                {
                    "name": item.name,
                    "sku": item.sku,
                    "units": item.units,
                    "price": item.selling_price,
                    "discount": item.discount,
                }
                for item in request.items
            ],
        }
        if request.requires_insurance and request.insurance_value:
            body["insurance"] = "Yes"
            body["insurance_value"] = request.insurance_value
        webhook_url = self.get_config_value("webhook_url")
        if webhook_url:
            body["webhook_url"] = webhook_url

        try:
            self._ensure_configured()
            data = await self._post(f"{self.base_url}/orders/create", body)
        except ShippingEngineError as e:
            logger.error(f"Shipway create shipment error: {e.message}")
            return ShipmentResponse.failure(e.message, e.code)

        tracking_id = data.get("tracking_number") or data.get("awb")
        insurance = None
        if request.requires_insurance:
            insurance = InsuranceDetails(insured=True, insured_value=request.insurance_value or 0.0)

        logger.info(f"Shipway shipment created for order {request.order_id}: {tracking_id}")
        return ShipmentResponse(
            success=True,
            message="Shipment created successfully",
            tracking_id=str(tracking_id) if tracking_id else None,
            shipment_id=str(data["shipment_id"]) if data.get("shipment_id") else None,
            label_url=data.get("label_url") or None,
            manifest_url=data.get("manifest_url") or None,
            invoice_url=data.get("invoice_url") or None,
            carrier_name=data.get("courier_name") or None,
            estimated_delivery_date=parse_vendor_date(data.get("expected_delivery_date")),
            insurance=insurance,
        )

    async def track_shipment(self, tracking_id: str) -> ShipmentTrackingResponse:
        try:
            self._ensure_configured()
            data = await self._post(f"{self.base_url}/tracking", {"awb": tracking_id})
        except ShippingEngineError as e:
            logger.error(f"Shipway track shipment error: {e.message}")
            return ShipmentTrackingResponse.failure(tracking_id, e.message, e.code)

        current = data.get("current_status")
        if isinstance(current, Mapping):
            status = str(current.get("status") or "")
            description = current.get("description") or None
        else:
            status = str(current or "")
            description = None

        history_raw = data.get("tracking_history")
        if not isinstance(history_raw, list):
            history_raw = []
        history = [
            TrackingEvent(
                status=str(item.get("status") or "Unknown"),
                timestamp=parse_vendor_date(item.get("date") or item.get("time")),
                location=item.get("location") or None,
                description=item.get("description") or item.get("remarks") or None,
            )
            for item in history_raw
            if isinstance(item, Mapping)
        ]
        current_location = history[0].location if history else None

        extra = {
            "status_description": description,
            "last_updated": data.get("last_update"),
            "delivered_date": data.get("delivered_date"),
            "carrier_url": data.get("tracking_url"),
        }
        for key in ("pickup_name", "pickup_address", "pickup_city", "pickup_state",
                    "pickup_pincode", "pickup_phone"):
            if data.get(key):
                extra[key] = data[key]

        return ShipmentTrackingResponse(
            success=True,
            tracking_id=tracking_id,
            current_status=status or "Unknown",
            event_type=self.map_status(status),
            current_location=current_location,
            estimated_delivery_date=parse_vendor_date(data.get("expected_delivery_date")),
            carrier_name=data.get("courier_name") or None,
            history=history,
            extra=extra,
            message="Tracking information retrieved successfully",
        )

    async def cancel_shipment(self, tracking_id: str) -> ShipmentCancellationResponse:
        """Cancellation lives on a separate legacy endpoint with its own auth shape."""
        url = f"{SHIPWAY_CANCEL_URL}/test" if self.test_mode else SHIPWAY_CANCEL_URL
        try:
            self._ensure_configured()
            data = await self._request_json(
                "POST",
                url,
                json={
                    "username": self.get_config_value("username"),
                    "password": self.get_config_value("license_key"),
                    "carrier": "shipway",
                    "awb": tracking_id,
                },
            )
        except ShippingEngineError as e:
            logger.error(f"Shipway cancellation error for {tracking_id}: {e.message}")
            return ShipmentCancellationResponse(
                success=False, tracking_id=tracking_id, message=e.message, error=e.code
            )

        if str(data.get("status") or "").lower() == "success":
            logger.info(f"Shipway shipment {tracking_id} cancelled")
            return ShipmentCancellationResponse(
                success=True,
                tracking_id=tracking_id,
                message=data.get("message") or "Shipment cancelled successfully",
            )

        logger.warning(f"Shipway cancellation processed but failed for {tracking_id}: {data}")
        return ShipmentCancellationResponse(
            success=False,
            tracking_id=tracking_id,
            message=data.get("message") or "Cancellation failed",
            error=str(data.get("error") or "CANCELLATION_FAILED"),
        )

    async def create_return_shipment(
        self, original_tracking_id: str, request: ShippingRequest
    ) -> ShipmentResponse:
        # The original pickup address becomes the return delivery address;
        # fill gaps from what tracking knows about the forward shipment.
        tracking = await self.track_shipment(original_tracking_id)
        known = tracking.extra if tracking.success else {}

        body = {
            "awb": original_tracking_id,
            "order_id": request.order_id or f"RET-{original_tracking_id}",
            "pickup_name": request.customer_name,
            "pickup_address": request.customer_address,
            "pickup_city": request.customer_city,
            "pickup_state": request.customer_state,
            "pickup_pincode": request.delivery_pincode,
            "pickup_phone": request.customer_phone,
            "delivery_name": request.pickup_location_name or request.pickup_name or known.get("pickup_name"),
            "delivery_address": request.pickup_address or known.get("pickup_address"),
            "delivery_city": request.pickup_city or known.get("pickup_city"),
            "delivery_state": request.pickup_state or known.get("pickup_state"),
            "delivery_pincode": request.pickup_pincode or known.get("pickup_pincode"),
            "delivery_phone": request.pickup_phone or known.get("pickup_phone"),
            "payment_type": "Prepaid",  # returns are always prepaid
            "invoice_value": request.invoice_value,
            "weight": grams_to_kg(request.weight),
            **self._dimensions(request),
            "return_reason": request.return_reason or "Customer initiated return",
        }
        webhook_url = self.get_config_value("webhook_url")
        if webhook_url:
            body["webhook_url"] = webhook_url

        try:
            self._ensure_configured()
            data = await self._post(f"{self.base_url}/returns/create", body)
        except ShippingEngineError as e:
            logger.error(f"Shipway create return shipment error: {e.message}")
            return ShipmentResponse.failure(e.message, e.code)

        tracking_id = data.get("tracking_number") or data.get("awb")
        return ShipmentResponse(
            success=True,
            message="Return shipment created successfully",
            tracking_id=str(tracking_id) if tracking_id else None,
            shipment_id=str(data["shipment_id"]) if data.get("shipment_id") else None,
            label_url=data.get("label_url") or None,
            manifest_url=data.get("manifest_url") or None,
            carrier_name=data.get("courier_name") or None,
        )

    # -------------------------------------------------------------------------
    # Pickup locations
    # -------------------------------------------------------------------------

    async def get_pickup_locations(self) -> List[PickupLocation]:
        try:
            self._ensure_configured()
            data = await self._post(f"{self.base_url}/pickup/locations", {})
        except ShippingEngineError as e:
            logger.error(f"Shipway get pickup locations error: {e.message}")
            return []

        locations = data.get("pickup_locations")
        if not isinstance(locations, list):
            return []

        return [
            PickupLocation(
                id=str(loc.get("id")),
                name=loc.get("name") or "",
                address=loc.get("address") or "",
                city=loc.get("city") or "",
                state=loc.get("state") or "",
                pincode=str(loc.get("pincode") or ""),
                phone=str(loc.get("phone") or ""),
                email=loc.get("email") or "",
                is_default=loc.get("is_default") in (True, 1),
            )
            for loc in locations
        ]

    async def create_pickup_location(self, location: PickupLocation) -> Optional[PickupLocation]:
        try:
            self._ensure_configured()
            data = await self._post(
                f"{self.base_url}/pickup/create",
                {
                    "name": location.name,
                    "address": location.address,
                    "city": location.city,
                    "state": location.state,
                    "pincode": location.pincode,
                    "phone": location.phone,
                    "email": location.email,
                    "is_default": 1 if location.is_default else 0,
                },
            )
        except ShippingEngineError as e:
            logger.error(f"Shipway create pickup location error: {e.message}")
            return None

        return PickupLocation(
            id=str(data.get("id")) if data.get("id") is not None else None,
            name=location.name,
            address=location.address,
            city=location.city,
            state=location.state,
            pincode=location.pincode,
            phone=location.phone,
            email=location.email,
            is_default=location.is_default,
        )

    # -------------------------------------------------------------------------
    # Webhooks and NDR
    # -------------------------------------------------------------------------

    def parse_webhook_event(self, payload) -> WebhookEvent:
        """Shipway posts a flat body: status, awb/tracking_number, order_id, ndr_*."""
        event = super().parse_webhook_event(payload)
        payload = payload or {}
        event.ndr_reason = payload.get("ndr_reason") or None
        event.comments = payload.get("ndr_comments") or None
        return event

    async def handle_webhook_event(self, event: WebhookEvent) -> None:
        if event.event_type == ShipmentEventType.NDR:
            logger.warning(
                f"Shipway NDR for order {event.order_id}: {event.ndr_reason or 'Unknown reason'}"
            )
            if event.tracking_id:
                await self.request_redelivery(event.tracking_id, event.ndr_reason, event.comments)
            return

        if event.event_type == ShipmentEventType.RTO_INITIATED:
            logger.warning(f"Shipway RTO initiated for order {event.order_id}")
            return

        logger.info(f"Shipway order {event.order_id} status updated: {event.vendor_status}")

    async def request_redelivery(
        self, tracking_id: str, reason: Optional[str], comments: Optional[str] = None
    ) -> bool:
        """
        Ask Shipway to reattempt delivery after an NDR.

        Returns True when Shipway accepted the request. Never raises.
        """
        try:
            await self._post(
                f"{self.base_url}/ndr/resolve",
                {
                    "awb": tracking_id,
                    "action": "redelivery",
                    "comments": comments or f"Auto-requesting redelivery after NDR: {reason or 'Unknown reason'}",
                },
            )
        except ShippingEngineError as e:
            logger.error(f"Error handling NDR for AWB {tracking_id}: {e.message}")
            return False

        logger.info(f"Successfully requested redelivery for AWB {tracking_id}")
        return True
