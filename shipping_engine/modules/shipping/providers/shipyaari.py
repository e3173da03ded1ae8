"""
Shipyaari Provider Implementation

Static api_key/user_id credentials in every body. Test mode switches to
a separate REST host; production still runs the legacy PHP web service.
Shipyaari has no pickup-location, return or webhook extensions, so those
fall back to the base behaviour.
"""
import logging
from typing import Any, Dict, List, Mapping

from shipping_engine.core.exceptions import (
    InvalidShippingRequestError,
    ProviderRejectedError,
    ShippingEngineError,
)
from shipping_engine.core.utils import grams_to_kg, parse_vendor_date, to_float, to_int
from shipping_engine.modules.shipping.providers import register_provider
from shipping_engine.modules.shipping.providers.base import (
    BaseShippingProvider,
    ShipmentCancellationResponse,
    ShipmentEventType,
    ShipmentResponse,
    ShipmentTrackingResponse,
    ShippingRate,
    ShippingRequest,
    TrackingEvent,
)

logger = logging.getLogger(__name__)

SHIPYAARI_TEST_URL = "https://api.shipyaari.com/v1/test"
SHIPYAARI_API_URL = "https://api.shipyaari.com/v1"
SHIPYAARI_LEGACY_URL = "https://ship.shipyaari.com/logistic/webservice"

DEFAULT_ESTIMATED_DAYS = 3

SHIPYAARI_STATUS_MAP = {
    "BOOKED": ShipmentEventType.ORDER_CREATED,
    "MANIFESTED": ShipmentEventType.ORDER_CREATED,
    "PICKUP SCHEDULED": ShipmentEventType.PICKUP_SCHEDULED,
    "PICKED": ShipmentEventType.PICKED_UP,
    "PICKED UP": ShipmentEventType.PICKED_UP,
    "IN TRANSIT": ShipmentEventType.IN_TRANSIT,
    "OUT FOR DELIVERY": ShipmentEventType.OUT_FOR_DELIVERY,
    "DELIVERED": ShipmentEventType.DELIVERED,
    "UNDELIVERED": ShipmentEventType.NDR,
    "NDR": ShipmentEventType.NDR,
    "RTO": ShipmentEventType.RTO_INITIATED,
    "RTO IN TRANSIT": ShipmentEventType.RTO_INITIATED,
    "RTO DELIVERED": ShipmentEventType.RETURNED,
    "CANCEL": ShipmentEventType.CANCELLED,
    "CANCELLED": ShipmentEventType.CANCELLED,
}

# Fields Shipyaari refuses to book without
REQUIRED_SHIPMENT_FIELDS = (
    "order_id",
    "customer_name",
    "customer_address",
    "customer_city",
    "customer_state",
    "delivery_pincode",
    "customer_phone",
    "pickup_address",
    "pickup_pincode",
)


@register_provider("shipyaari")
class ShipyaariProvider(BaseShippingProvider):
    """Shipyaari aggregator. International only when enable_international is set."""

    required_fields = ("user_id", "api_key")
    status_map = SHIPYAARI_STATUS_MAP

    @property
    def provider_id(self) -> str:
        return "shipyaari"

    @property
    def provider_name(self) -> str:
        return "Shipyaari"

    @property
    def test_mode(self) -> bool:
        return self.config_flag("test_mode")

    def supports_international_shipping(self) -> bool:
        return self.config_flag("enable_international")

    def _url(self, test_path: str, legacy_script: str) -> str:
        if self.test_mode:
            return f"{SHIPYAARI_TEST_URL}/{test_path}"
        return f"{SHIPYAARI_LEGACY_URL}/{legacy_script}"

    def _api_url(self, path: str) -> str:
        base = SHIPYAARI_TEST_URL if self.test_mode else SHIPYAARI_API_URL
        return f"{base}/{path}"

    def _credentials(self) -> Dict[str, str]:
        return {
            "api_key": self.get_config_value("api_key"),
            "user_id": self.get_config_value("user_id"),
        }

    @staticmethod
    def _package_fields(request: ShippingRequest) -> Dict[str, str]:
        package = request.package
        return {
            "weight": f"{grams_to_kg(request.weight):.2f}",
            "length": str(package.length),
            "width": str(package.breadth),
            "height": str(package.height),
        }

    # -------------------------------------------------------------------------
    # Rates
    # -------------------------------------------------------------------------

    async def _fetch_rates(self, request: ShippingRequest) -> List[ShippingRate]:
        if not (request.pickup_pincode and request.delivery_pincode
                and request.weight and request.invoice_value):
            raise InvalidShippingRequestError(
                "Shipyaari needs pickup/delivery pincode, weight and invoice value"
            )

        data = await self._request_json(
            "POST",
            self._url("search_availability", "SearchAvailability_new.php"),
            json={
                **self._credentials(),
                "pickup_pincode": request.pickup_pincode,
                "delivery_pincode": request.delivery_pincode,
                "order_type": "COD" if request.is_cod else "PPD",
                "cod_amount": request.invoice_value if request.is_cod else 0,
                "invoice_value": request.invoice_value,
                "product_type": "parcel",
                **self._package_fields(request),
            },
        )
        couriers = (data.get("data") or {}).get("available_courier_companies")
        if not data.get("success") or not isinstance(couriers, list):
            return []

        rates = []
        for service in couriers:
            courier_id = str(service["courier_id"])
            rates.append(ShippingRate(
                carrier_name=service.get("courier_name") or "Unknown",
                service_id=str(service.get("service_id") or courier_id),
                carrier_id=courier_id,
                cost=to_float(service.get("total_amount") or service.get("freight_charge")),
                estimated_days=to_int(
                    service.get("etd") or service.get("estimated_delivery_time"),
                    DEFAULT_ESTIMATED_DAYS,
                ),
            ))
        return rates

    # -------------------------------------------------------------------------
    # Shipments
    # -------------------------------------------------------------------------

    async def create_shipment(self, request: ShippingRequest, service_id: str) -> ShipmentResponse:
        missing = [f for f in REQUIRED_SHIPMENT_FIELDS if not getattr(request, f)]
        if missing:
            logger.error(f"Shipyaari create shipment missing required parameters: {missing}")
            return ShipmentResponse.failure(
                "Missing required parameters for shipment creation", "MISSING_PARAMETERS"
            )

        body: Dict[str, Any] = {
            **self._credentials(),
            "service_type": service_id,
            "order_number": request.order_id,
            "customer_name": request.customer_name,
            "customer_address": request.customer_address,
            "customer_city": request.customer_city,
            "customer_state": request.customer_state,
            "customer_pincode": request.delivery_pincode,
            "customer_phone": request.customer_phone,
            "customer_email": request.customer_email,
            "pickup_address": request.pickup_address,
            "pickup_city": request.pickup_city,
            "pickup_state": request.pickup_state,
            "pickup_pincode": request.pickup_pincode,
            "pickup_phone": request.pickup_phone,
            "pickup_email": request.pickup_email,
            "pickup_company": request.pickup_location_name,
            "payment_mode": "COD" if request.is_cod else "PPD",
            "cod_amount": request.invoice_value if request.is_cod else 0,
            "invoice_value": request.invoice_value,
            "package_count": 1,
            **self._package_fields(request),
            "product_description": ", ".join(item.name for item in request.items) or "Package",
            "product_type": "parcel",
            "product_category": "ecommerce",
        }
        if request.items:
            body["order_items"] = [
                {"name": item.name, "qty": item.units, "price": item.selling_price, "sku": item.sku}
                for item in request.items
            ]
        if request.requires_insurance and request.insurance_value:
            body["is_insurance"] = "yes"
            body["insurance_value"] = request.insurance_value

        try:
            self._ensure_configured()
            data = await self._request_json(
                "POST", self._url("create_order", "CreateOrder.php"), json=body
            )
        except ShippingEngineError as e:
            logger.error(f"Shipyaari create shipment error: {e.message}")
            return ShipmentResponse.failure(e.message, e.code)

        if not data.get("success"):
            logger.error(f"Shipyaari create order failed: {data.get('message')}")
            return ShipmentResponse.failure(
                data.get("message") or "Failed to create shipment",
                str(data.get("error") or "SHIPYAARI_ERROR"),
            )

        shipment_id = str(data.get("shipment_id") or data.get("order_id") or request.order_id)
        awb = data.get("awb_number") or data.get("awb") or data.get("tracking_number")
        if not awb:
            # Booked, but nothing to track with yet; the caller must reconcile
            logger.error(f"Shipyaari order {shipment_id} created without an AWB number")
            return ShipmentResponse(
                success=True,
                message="Shipment created but tracking number not found in response",
                shipment_id=shipment_id,
                error="MISSING_AWB",
            )
        awb = str(awb)

        # ETA and courier only come back from tracking
        tracking = await self.track_shipment(awb)
        if not tracking.success:
            logger.warning(f"Shipyaari order created but tracking info unavailable for {awb}")

        logger.info(f"Shipyaari shipment created for order {request.order_id}: {awb}")
        return ShipmentResponse(
            success=True,
            message="Shipment created successfully",
            tracking_id=awb,
            shipment_id=shipment_id,
            label_url=data.get("label_url") or data.get("label") or None,
            manifest_url=data.get("manifest_url") or None,
            carrier_name=data.get("courier_name") or (tracking.carrier_name if tracking.success else None),
            estimated_delivery_date=tracking.estimated_delivery_date if tracking.success else None,
        )

    async def track_shipment(self, tracking_id: str) -> ShipmentTrackingResponse:
        if not tracking_id:
            return ShipmentTrackingResponse.failure(tracking_id, "Tracking ID is required", "INVALID_REQUEST")

        try:
            self._ensure_configured()
            data = await self._request_json(
                "POST",
                self._url("track_order", "TrackOrder.php"),
                json={**self._credentials(), "awb_number": tracking_id, "awb": tracking_id},
            )
        except ShippingEngineError as e:
            logger.error(f"Shipyaari track shipment error for {tracking_id}: {e.message}")
            return ShipmentTrackingResponse.failure(tracking_id, e.message, e.code)

        if not data.get("success"):
            logger.warning(f"Shipyaari tracking returned error for {tracking_id}: {data.get('message')}")
            return ShipmentTrackingResponse.failure(
                tracking_id,
                data.get("message") or "No tracking information available",
                str(data.get("error") or "TRACKING_NOT_FOUND"),
            )

        current = data.get("current_status")
        if isinstance(current, Mapping):
            status = str(current.get("status") or data.get("status") or "Unknown")
        else:
            status = str(current or data.get("status") or "Unknown")

        scans = data.get("scan_details")
        if not isinstance(scans, list):
            scans = []
        history = [
            TrackingEvent(
                status=str(scan.get("status") or scan.get("scan_status") or "Unknown"),
                timestamp=parse_vendor_date(scan.get("date")),
                location=scan.get("location") or None,
                description=scan.get("description") or scan.get("scan_description") or scan.get("status") or None,
            )
            for scan in scans
            if isinstance(scan, Mapping)
        ]

        return ShipmentTrackingResponse(
            success=True,
            tracking_id=tracking_id,
            current_status=status,
            event_type=self.map_status(status),
            current_location=history[0].location if history else None,
            estimated_delivery_date=parse_vendor_date(data.get("estimated_delivery_date")),
            carrier_name=data.get("courier_name") or None,
            history=history,
            extra={
                "origin_city": data.get("origin_city"),
                "destination_city": data.get("destination_city"),
                "carrier_url": data.get("tracking_url"),
                "shipment_weight": data.get("weight"),
            },
            message="Tracking information retrieved successfully",
        )

    async def cancel_shipment(self, tracking_id: str) -> ShipmentCancellationResponse:
        """Verify the AWB exists with Shipyaari before asking to cancel it."""
        try:
            self._ensure_configured()
            verify = await self._request_json(
                "POST",
                self._api_url("track_order"),
                json={**self._credentials(), "awb": tracking_id},
            )
            if not verify.get("success") or not verify.get("data"):
                raise ProviderRejectedError(
                    f"Tracking ID not found or invalid: {verify.get('message') or tracking_id}",
                    provider_id=self.provider_id,
                )

            data = await self._request_json(
                "POST",
                self._api_url("cancel_shipment"),
                json={**self._credentials(), "awb": tracking_id, "reason": "Cancelled by merchant"},
            )
        except ShippingEngineError as e:
            logger.error(f"Shipyaari cancellation error for {tracking_id}: {e.message}")
            return ShipmentCancellationResponse(
                success=False, tracking_id=tracking_id, message=e.message, error=e.code
            )

        if data.get("success") or data.get("status") == "success":
            logger.info(f"Shipyaari shipment {tracking_id} cancelled")
            return ShipmentCancellationResponse(
                success=True,
                tracking_id=tracking_id,
                message=data.get("message") or "Shipment cancelled successfully",
            )

        logger.warning(f"Shipyaari cancellation processed but failed for {tracking_id}")
        return ShipmentCancellationResponse(
            success=False,
            tracking_id=tracking_id,
            message=data.get("message") or "Cancellation failed",
            error=str(data.get("error") or "CANCELLATION_FAILED"),
        )
