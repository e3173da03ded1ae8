"""
Shiprocket Provider Implementation

Shiprocket authenticates with email/password and hands back a bearer
token valid for 24 hours. The token is cached on the adapter instance and
refreshed lazily on the first call after it expires.

Shipment creation is two vendor calls (create order, then generate the
shipment with the chosen courier). If the second call fails the vendor
order still exists; the failure result says so via partial=True and
carries the vendor ids.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from shipping_engine.core.exceptions import (
    PartialShipmentError,
    ProviderAuthError,
    ProviderRejectedError,
    ProviderUnavailableError,
    ShippingEngineError,
)
from shipping_engine.core.utils import grams_to_kg, parse_vendor_date, to_float, to_int, utcnow
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

SHIPROCKET_BASE_URL = "https://apiv2.shiprocket.in/v1/external"

# Login tokens are valid for 24 hours
TOKEN_VALIDITY = timedelta(hours=24)

DEFAULT_DOMESTIC_DAYS = 3
DEFAULT_INTERNATIONAL_DAYS = 7

SHIPROCKET_STATUS_MAP = {
    # Webhook event names
    "ORDER.CREATED": ShipmentEventType.ORDER_CREATED,
    "ORDER.DISPATCHED": ShipmentEventType.IN_TRANSIT,
    "ORDER.DELIVERED": ShipmentEventType.DELIVERED,
    "ORDER.CANCELLED": ShipmentEventType.CANCELLED,
    # Shipment statuses
    "NEW": ShipmentEventType.ORDER_CREATED,
    "AWB ASSIGNED": ShipmentEventType.ORDER_CREATED,
    "PICKUP SCHEDULED": ShipmentEventType.PICKUP_SCHEDULED,
    "PICKUP GENERATED": ShipmentEventType.PICKUP_SCHEDULED,
    "PICKED UP": ShipmentEventType.PICKED_UP,
    "SHIPPED": ShipmentEventType.IN_TRANSIT,
    "IN TRANSIT": ShipmentEventType.IN_TRANSIT,
    "OUT FOR DELIVERY": ShipmentEventType.OUT_FOR_DELIVERY,
    "DELIVERED": ShipmentEventType.DELIVERED,
    "UNDELIVERED": ShipmentEventType.NDR,
    "RTO INITIATED": ShipmentEventType.RTO_INITIATED,
    "RTO IN TRANSIT": ShipmentEventType.RTO_INITIATED,
    "RTO DELIVERED": ShipmentEventType.RETURNED,
    "CANCELED": ShipmentEventType.CANCELLED,
    "CANCELLED": ShipmentEventType.CANCELLED,
    "LOST": ShipmentEventType.EXCEPTION,
    "DAMAGED": ShipmentEventType.EXCEPTION,
}


def _numeric_id(service_id: str) -> Any:
    """Shiprocket wants numeric ids where the value is numeric."""
    try:
        return int(service_id)
    except (TypeError, ValueError):
        return service_id


@register_provider("shiprocket")
class ShiprocketProvider(BaseShippingProvider):
    """Shiprocket aggregator. Supports international shipping."""

    required_fields = ("email", "password", "api_key")
    status_map = SHIPROCKET_STATUS_MAP
    has_webhook = True

    def __init__(self, config, http_client=None, display_name=None):
        super().__init__(config, http_client, display_name)
        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    @property
    def provider_id(self) -> str:
        return "shiprocket"

    @property
    def provider_name(self) -> str:
        return "Shiprocket"

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    def _token_valid(self) -> bool:
        return bool(
            self._access_token
            and self._token_expires_at
            and datetime.now(timezone.utc) < self._token_expires_at
        )

    async def _ensure_token(self) -> str:
        """
        Return a valid bearer token, logging in if the cached one expired.

        Two concurrent callers may both see an expired token and both log
        in; the later login simply overwrites the earlier token.
        """
        if self._token_valid():
            return self._access_token

        self._ensure_configured()
        response = await self._http.post(
            f"{SHIPROCKET_BASE_URL}/auth/login",
            json={
                "email": self.get_config_value("email"),
                "password": self.get_config_value("password"),
            },
        )
        if response.status_code >= 500:
            raise ProviderUnavailableError(
                f"Shiprocket login unavailable ({response.status_code})",
                provider_id=self.provider_id,
                status_code=response.status_code,
            )
        if response.status_code != 200:
            logger.error(f"Shiprocket login failed: {response.status_code}")
            raise ProviderAuthError(
                f"Shiprocket authentication failed ({response.status_code})",
                provider_id=self.provider_id,
                status_code=response.status_code,
            )

        try:
            token = response.json().get("token")
        except ValueError:
            token = None
        if not token:
            raise ProviderAuthError(
                "Shiprocket login returned no token",
                provider_id=self.provider_id,
            )

        self._access_token = token
        self._token_expires_at = datetime.now(timezone.utc) + TOKEN_VALIDITY
        logger.info("Shiprocket token obtained")
        return token

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self._ensure_token()
        return {"Authorization": f"Bearer {token}"}

    async def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        headers = await self._auth_headers()
        return await self._request_json(method, f"{SHIPROCKET_BASE_URL}{path}", headers=headers, **kwargs)

    # -------------------------------------------------------------------------
    # Rates
    # -------------------------------------------------------------------------

    async def _fetch_rates(self, request: ShippingRequest) -> List[ShippingRate]:
        params = {
            "pickup_postcode": request.pickup_pincode,
            "delivery_postcode": request.delivery_pincode,
            "weight": f"{grams_to_kg(request.weight):.2f}",
            "cod": str(request.invoice_value if request.is_cod else 0),
            "order_id": request.order_id,
        }
        data = await self._call("GET", "/courier/serviceability", params=params)
        couriers = (data.get("data") or {}).get("available_courier_companies") or []

        return [
            ShippingRate(
                carrier_name=courier["courier_name"],
                service_id=str(courier["courier_company_id"]),
                carrier_id=str(courier.get("courier_code") or courier["courier_company_id"]),
                cost=float(courier["rate"]),
                estimated_days=to_int(courier.get("estimated_delivery_days"), DEFAULT_DOMESTIC_DAYS),
            )
            for courier in couriers
        ]

    def supports_international_shipping(self) -> bool:
        return True

    async def _fetch_international_rates(self, request: ShippingRequest) -> List[ShippingRate]:
        params = {
            "pickup_postcode": request.pickup_pincode,
            "delivery_country": request.destination_country,
            "weight": f"{grams_to_kg(request.weight):.2f}",
            "cod": "0",  # no COD across borders
            "order_id": request.order_id,
        }
        if request.delivery_pincode:
            params["delivery_postcode"] = request.delivery_pincode

        data = await self._call("GET", "/courier/international/serviceability", params=params)
        couriers = (data.get("data") or {}).get("available_courier_companies") or []

        rates = []
        for courier in couriers:
            insurance = to_float(courier.get("insurance_amount"))
            rates.append(ShippingRate(
                carrier_name=courier["courier_name"],
                service_id=str(courier["courier_company_id"]),
                carrier_id=str(courier.get("courier_code") or courier["courier_company_id"]),
                cost=float(courier["rate"]),
                estimated_days=to_int(courier.get("estimated_delivery_days"), DEFAULT_INTERNATIONAL_DAYS),
                currency=courier.get("currency") or "INR",
                insurance_available=insurance > 0,
                insurance_cost=insurance or None,
                is_international=True,
            ))
        return rates

    # -------------------------------------------------------------------------
    # Shipments
    # -------------------------------------------------------------------------

    def _build_order_payload(self, request: ShippingRequest) -> Dict[str, Any]:
        package = request.package
        order_date = request.order_date or utcnow()
        payload = {
            "order_id": request.order_id,
            "order_date": order_date.strftime("%Y-%m-%d"),
            "pickup_location": request.pickup_location_name,
            "billing_customer_name": request.customer_name or "Customer",
            "billing_last_name": "",
            "billing_address": request.customer_address,
            "billing_address_2": request.customer_address2,
            "billing_city": request.customer_city,
            "billing_pincode": request.delivery_pincode,
            "billing_state": request.customer_state,
            "billing_country": request.customer_country or "India",
            "billing_email": request.customer_email,
            "billing_phone": request.customer_phone,
            "shipping_is_billing": not request.is_international,
            "order_items": [
                {
                    "name": item.name,
                    "sku": item.sku or item.name[:10],
                    "units": item.units,
                    "selling_price": item.selling_price,
                    "discount": item.discount,
                    "tax": item.tax,
                    "hsn": item.hsn,
                }
                for item in request.items
            ],
            "payment_method": "COD" if request.is_cod else "Prepaid",
            "sub_total": request.invoice_value,
            "length": package.length,
            "breadth": package.breadth,
            "height": package.height,
            "weight": grams_to_kg(request.weight),
        }

        if request.requires_insurance and request.insurance_value:
            payload["is_insurance"] = 1
            payload["insurance_value"] = request.insurance_value

        if request.is_international and request.destination_country and request.destination_country != "India":
            payload.update({
                "shipping_is_billing": False,
                "shipping_customer_name": request.customer_name or "Customer",
                "shipping_address": request.customer_address,
                "shipping_city": request.customer_city,
                "shipping_state": request.customer_state,
                "shipping_country": request.destination_country,
                "shipping_pincode": request.delivery_pincode,
                "shipping_email": request.customer_email,
                "shipping_phone": request.customer_phone,
                "customs_value": request.customs_value or request.invoice_value,
                "customs_description": request.customs_description or "Merchandise",
            })
        return payload

    async def create_shipment(self, request: ShippingRequest, service_id: str) -> ShipmentResponse:
        """Create order, then generate the shipment with the chosen courier."""
        try:
            self._ensure_configured()
            order = await self._call("POST", "/orders/create/adhoc", json=self._build_order_payload(request))
            vendor_order_id = order.get("order_id")
            if not vendor_order_id:
                return ShipmentResponse.failure(
                    "Order created but no order ID returned", "MISSING_ORDER_ID"
                )
            vendor_order_id = str(vendor_order_id)
            shipment_id = order.get("shipment_id")

            try:
                shipment = await self._call(
                    "POST",
                    "/courier/generate/pickup",
                    json={"shipment_id": shipment_id, "courier_id": _numeric_id(service_id)},
                )
            except ShippingEngineError as e:
                raise PartialShipmentError(
                    f"Order created but failed to generate shipment: {e.message}",
                    vendor_order_id=vendor_order_id,
                    vendor_shipment_id=str(shipment_id) if shipment_id else None,
                    provider_id=self.provider_id,
                ) from e

        except PartialShipmentError as e:
            logger.error(
                f"Shiprocket partial shipment for order {request.order_id}: "
                f"vendor order {e.vendor_order_id} has no shipment ({e.message})"
            )
            return ShipmentResponse.failure(
                e.message,
                e.code,
                partial=True,
                vendor_order_id=e.vendor_order_id,
                shipment_id=e.vendor_shipment_id,
            )
        except ShippingEngineError as e:
            logger.error(f"Shiprocket create shipment error: {e.message}")
            return ShipmentResponse.failure(e.message, e.code)

        shipment_id = shipment.get("shipment_id") or shipment_id
        tracking_id = shipment.get("awb") or shipment.get("awb_code") or shipment.get("tracking_number")
        tracking_id = str(tracking_id) if tracking_id else None
        insurance = None
        if request.requires_insurance and request.insurance_value:
            insurance = InsuranceDetails(insured=True, insured_value=request.insurance_value)

        if tracking_id:
            logger.info(f"Shiprocket shipment created for order {request.order_id}: {tracking_id}")
        else:
            # A shipment id is not an AWB; tracking by it would fail
            logger.warning(
                f"Shiprocket shipment {shipment_id} for order {request.order_id} has no AWB yet"
            )
        return ShipmentResponse(
            success=True,
            message="Shipment created successfully" if tracking_id
            else "Shipment created but no AWB was assigned",
            error=None if tracking_id else "MISSING_AWB",
            tracking_id=tracking_id,
            shipment_id=str(shipment_id) if shipment_id else None,
            vendor_order_id=vendor_order_id,
            label_url=shipment.get("label_url") or None,
            manifest_url=shipment.get("manifest_url") or None,
            carrier_name=shipment.get("courier_name") or None,
            estimated_delivery_date=parse_vendor_date(shipment.get("estimated_delivery_date")),
            insurance=insurance,
        )

    async def _tracking_data(self, tracking_id: str) -> Dict[str, Any]:
        data = await self._call("GET", f"/courier/track/awb/{tracking_id}")
        return data.get("tracking_data") or {}

    async def _lookup_order_id(self, tracking_id: str) -> str:
        """Cancellation and returns need Shiprocket's own order id for an AWB."""
        order_id = (await self._tracking_data(tracking_id)).get("order_id")
        if not order_id:
            raise ProviderRejectedError(
                f"Could not find order ID for tracking number {tracking_id}",
                provider_id=self.provider_id,
            )
        return str(order_id)

    async def track_shipment(self, tracking_id: str) -> ShipmentTrackingResponse:
        try:
            self._ensure_configured()
            tracking = await self._tracking_data(tracking_id)
        except ShippingEngineError as e:
            logger.error(f"Shiprocket tracking error: {e.message}")
            return ShipmentTrackingResponse.failure(tracking_id, e.message, e.code)

        tracks = tracking.get("shipment_track")
        if not isinstance(tracks, list) or not tracks or not isinstance(tracks[0], dict):
            logger.warning(f"Shiprocket tracking data missing or malformed for {tracking_id}")
            return ShipmentTrackingResponse.failure(
                tracking_id, "No tracking information available", "TRACKING_NOT_FOUND"
            )

        track = tracks[0]
        current_status = track.get("current_status") or "Unknown"
        details = tracking.get("shipment_track_activities") or tracking.get("tracking_details") or []
        history = [
            TrackingEvent(
                status=str(detail.get("status") or detail.get("sr-status-label") or "Unknown"),
                timestamp=parse_vendor_date(detail.get("date")),
                location=detail.get("location") or None,
                description=detail.get("activity") or detail.get("status") or None,
            )
            for detail in details
            if isinstance(detail, dict)
        ]

        return ShipmentTrackingResponse(
            success=True,
            tracking_id=tracking_id,
            current_status=current_status,
            event_type=self.map_status(current_status),
            current_location=track.get("current_location") or None,
            estimated_delivery_date=parse_vendor_date(track.get("etd") or tracking.get("etd")),
            carrier_name=track.get("courier_name") or None,
            history=history,
            extra={
                "pickup_date": track.get("pickup_date"),
                "origin_city": track.get("origin"),
                "destination_city": track.get("destination"),
                "carrier_url": track.get("track_url") or tracking.get("track_url"),
                "shipment_weight": track.get("weight"),
            },
            message="Tracking information retrieved successfully",
        )

    async def cancel_shipment(self, tracking_id: str) -> ShipmentCancellationResponse:
        try:
            self._ensure_configured()
            order_id = await self._lookup_order_id(tracking_id)
            await self._call("POST", "/orders/cancel", json={"ids": [_numeric_id(order_id)]})
        except ShippingEngineError as e:
            logger.error(f"Shiprocket cancel shipment error: {e.message}")
            return ShipmentCancellationResponse(
                success=False, tracking_id=tracking_id, message=e.message, error=e.code
            )

        logger.info(f"Shiprocket order {order_id} cancelled (awb {tracking_id})")
        return ShipmentCancellationResponse(
            success=True, tracking_id=tracking_id, message="Shipment cancelled successfully"
        )

    async def create_return_shipment(
        self, original_tracking_id: str, request: ShippingRequest
    ) -> ShipmentResponse:
        try:
            self._ensure_configured()
            order_id = await self._lookup_order_id(original_tracking_id)
            returned = await self._call(
                "POST",
                "/orders/create/return",
                json={
                    "order_id": order_id,
                    "order_date": utcnow().strftime("%Y-%m-%d"),
                    "channel_id": "",
                    "return_reason": request.return_reason or "Customer initiated return",
                    "sub_total": request.invoice_value,
                },
            )
        except ShippingEngineError as e:
            logger.error(f"Shiprocket create return shipment error: {e.message}")
            return ShipmentResponse.failure(e.message, e.code)

        return_shipment_id = returned.get("shipment_id")
        label_url = None
        if return_shipment_id:
            try:
                label = await self._call(
                    "POST", "/courier/generate/label", json={"shipment_id": [return_shipment_id]}
                )
                label_url = label.get("label_url") or None
            except ShippingEngineError as e:
                # Label can be generated later from the dashboard
                logger.warning(f"Shiprocket return label generation failed: {e.message}")

        return ShipmentResponse(
            success=True,
            message="Return shipment created successfully",
            tracking_id=returned.get("awb") or returned.get("awb_code") or None,
            shipment_id=str(return_shipment_id) if return_shipment_id else None,
            vendor_order_id=str(returned.get("order_id") or "") or None,
            label_url=label_url,
        )

    # -------------------------------------------------------------------------
    # Pickup locations
    # -------------------------------------------------------------------------

    async def get_pickup_locations(self) -> List[PickupLocation]:
        try:
            self._ensure_configured()
            data = await self._call("GET", "/settings/company/pickup")
        except ShippingEngineError as e:
            logger.error(f"Shiprocket get pickup locations error: {e.message}")
            return []

        addresses = (data.get("data") or {}).get("shipping_address")
        if not isinstance(addresses, list):
            return []

        return [
            PickupLocation(
                id=str(loc.get("id")),
                name=loc.get("pickup_location") or loc.get("address") or "",
                address=loc.get("address") or "",
                city=loc.get("city") or "",
                state=loc.get("state") or "",
                pincode=str(loc.get("pin_code") or ""),
                phone=str(loc.get("phone") or ""),
                email=loc.get("email") or "",
                is_default=loc.get("primary") == 1,
            )
            for loc in addresses
        ]

    async def create_pickup_location(self, location: PickupLocation) -> Optional[PickupLocation]:
        try:
            self._ensure_configured()
            data = await self._call(
                "POST",
                "/settings/company/addpickup",
                json={
                    "pickup_location": location.name,
                    "name": location.name,
                    "email": location.email,
                    "phone": location.phone,
                    "address": location.address,
                    "address_2": "",
                    "city": location.city,
                    "state": location.state,
                    "country": "India",
                    "pin_code": location.pincode,
                },
            )
        except ShippingEngineError as e:
            logger.error(f"Shiprocket create pickup location error: {e.message}")
            return None

        if not data.get("success"):
            logger.error(f"Shiprocket create pickup location rejected: {data.get('message')}")
            return None

        # The add call does not echo the new id; find it by name and pincode
        for created in await self.get_pickup_locations():
            if created.name == location.name and created.pincode == location.pincode:
                return created

        logger.error(f"Shiprocket pickup location {location.name} not found after creation")
        return None

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def parse_webhook_event(self, payload) -> WebhookEvent:
        """Envelope is {"event": "order.delivered", "data": {...}}."""
        event = super().parse_webhook_event(payload)
        event_name = str((payload or {}).get("event") or "")
        if event.event_type == ShipmentEventType.UNKNOWN and event_name:
            event.event_type = self.map_status(event_name)
        return event

    async def handle_webhook_event(self, event: WebhookEvent) -> None:
        event_name = event.raw.get("event") or event.vendor_status
        logger.info(
            f"Shiprocket webhook {event_name}: order={event.order_id} "
            f"awb={event.tracking_id} -> {event.event_type.value}"
        )
