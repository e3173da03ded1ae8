"""
Base Shipping Provider Interface

Every aggregator adapter implements this interface. The shared engine
only ever sees the provider-agnostic types below; vendor field names,
units and status vocabularies stay inside each adapter.

Each adapter provides its own:
  - Rate quoting (domestic, and international where supported)
  - Shipment creation, tracking, cancellation, returns
  - Pickup location listing/creation
  - Webhook payload decoding and status mapping
"""
import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from shipping_engine.core.exceptions import (
    InvalidShippingRequestError,
    ProviderNotConfiguredError,
    ProviderRejectedError,
    ProviderUnavailableError,
    ShippingEngineError,
)
from shipping_engine.core.http_client import ResilientHTTPClient
from shipping_engine.core.utils import normalize_status, parse_vendor_date

logger = logging.getLogger(__name__)


# =============================================================================
# Shared Enums
# =============================================================================

class PaymentMethod(str, enum.Enum):
    COD = "cod"
    PREPAID = "prepaid"


class SelectionStrategy(str, enum.Enum):
    """Global rate selection policy"""
    PRIORITY = "priority"
    CHEAPEST = "cheapest"
    FASTEST = "fastest"


class ShipmentEventType(str, enum.Enum):
    """Shared event taxonomy every vendor status is mapped onto"""
    ORDER_CREATED = "order_created"
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    NDR = "ndr"  # Delivery attempt failed
    RTO_INITIATED = "rto_initiated"  # Returning to origin
    RETURNED = "returned"
    CANCELLED = "cancelled"
    EXCEPTION = "exception"
    UNKNOWN = "unknown"

    def to_order_status(self) -> Optional[str]:
        """Coarse order status the order-management side understands."""
        if self is ShipmentEventType.DELIVERED:
            return "delivered"
        if self in (
            ShipmentEventType.PICKED_UP,
            ShipmentEventType.IN_TRANSIT,
            ShipmentEventType.OUT_FOR_DELIVERY,
        ):
            return "shipped"
        if self is ShipmentEventType.CANCELLED:
            return "cancelled"
        return None


class QuoteStatus(str, enum.Enum):
    """Why a rate quote came back the way it did"""
    OK = "ok"
    UNSERVICEABLE = "unserviceable"  # Vendor answered, no courier covers the lane
    NOT_CONFIGURED = "not_configured"
    INVALID_REQUEST = "invalid_request"
    ERROR = "error"  # Auth, network or vendor failure


# =============================================================================
# Provider-Agnostic Data Classes
# =============================================================================

@dataclass(frozen=True)
class OrderItem:
    name: str
    sku: str
    units: int = 1
    selling_price: float = 0.0
    tax: float = 0.0
    discount: float = 0.0
    hsn: str = ""


@dataclass(frozen=True)
class PackageDimensions:
    """Package dimensions in centimetres."""
    length: float = 10.0
    breadth: float = 10.0
    height: float = 10.0


@dataclass(frozen=True)
class ShippingRequest:
    """
    One quote or creation attempt.

    Weight is in grams; adapters convert to whatever unit their vendor
    expects. Built fresh per call and never mutated: use
    dataclasses.replace() to derive a variant.
    """
    order_id: str
    pickup_pincode: str
    delivery_pincode: str
    weight: float  # grams
    invoice_value: float
    payment_method: PaymentMethod = PaymentMethod.PREPAID

    # Customer (delivery side)
    customer_name: str = ""
    customer_phone: str = ""
    customer_email: str = ""
    customer_address: str = ""
    customer_address2: str = ""
    customer_city: str = ""
    customer_state: str = ""
    customer_country: str = "India"

    # Pickup (origin side)
    pickup_location_name: str = ""
    pickup_name: str = ""
    pickup_phone: str = ""
    pickup_email: str = ""
    pickup_address: str = ""
    pickup_city: str = ""
    pickup_state: str = ""

    dimensions: Optional[PackageDimensions] = None
    items: Tuple[OrderItem, ...] = ()
    order_date: Optional[datetime] = None

    # International
    is_international: bool = False
    destination_country: Optional[str] = None
    customs_value: Optional[float] = None
    customs_description: Optional[str] = None

    # Insurance
    requires_insurance: bool = False
    insurance_value: Optional[float] = None

    is_reverse_pickup: bool = False
    return_reason: Optional[str] = None

    @property
    def is_cod(self) -> bool:
        return self.payment_method == PaymentMethod.COD

    @property
    def package(self) -> PackageDimensions:
        return self.dimensions or PackageDimensions()


@dataclass(frozen=True)
class ShippingRate:
    """
    A rate offered by one provider.

    service_id/carrier_id are opaque vendor identifiers; pass service_id
    back to the same provider's create_shipment.
    """
    carrier_name: str
    service_id: str
    carrier_id: str
    cost: float
    estimated_days: int
    is_available: bool = True
    currency: str = "INR"
    insurance_available: bool = False
    insurance_cost: Optional[float] = None
    is_international: bool = False


@dataclass
class RateQuote:
    """Rates plus the reason they look the way they do."""
    rates: List[ShippingRate]
    status: QuoteStatus
    message: Optional[str] = None

    @classmethod
    def from_rates(cls, rates: List[ShippingRate]) -> "RateQuote":
        if rates:
            return cls(rates=rates, status=QuoteStatus.OK)
        return cls(rates=[], status=QuoteStatus.UNSERVICEABLE, message="No serviceable couriers")

    @classmethod
    def empty(cls, status: QuoteStatus, message: str) -> "RateQuote":
        return cls(rates=[], status=status, message=message)


@dataclass
class InsuranceDetails:
    insured: bool
    insured_value: float = 0.0
    premium: Optional[float] = None


@dataclass
class ShipmentResponse:
    """Result of a creation call (forward or return)."""
    success: bool
    message: str = ""
    tracking_id: Optional[str] = None
    shipment_id: Optional[str] = None
    vendor_order_id: Optional[str] = None
    label_url: Optional[str] = None
    manifest_url: Optional[str] = None
    invoice_url: Optional[str] = None
    carrier_name: Optional[str] = None
    estimated_delivery_date: Optional[datetime] = None
    insurance: Optional[InsuranceDetails] = None
    error: Optional[str] = None
    # True when the vendor kept an order but shipment generation failed
    partial: bool = False

    @classmethod
    def failure(cls, message: str, error: str, **kwargs) -> "ShipmentResponse":
        return cls(success=False, message=message, error=error, **kwargs)


@dataclass(frozen=True)
class TrackingEvent:
    status: str
    timestamp: Optional[datetime] = None
    location: Optional[str] = None
    description: Optional[str] = None


@dataclass
class ShipmentTrackingResponse:
    success: bool
    tracking_id: str
    current_status: str = ""
    event_type: ShipmentEventType = ShipmentEventType.UNKNOWN
    current_location: Optional[str] = None
    estimated_delivery_date: Optional[datetime] = None
    carrier_name: Optional[str] = None
    history: List[TrackingEvent] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, tracking_id: str, message: str, error: str) -> "ShipmentTrackingResponse":
        return cls(success=False, tracking_id=tracking_id, message=message, error=error)


@dataclass
class ShipmentCancellationResponse:
    success: bool
    tracking_id: str
    message: str = ""
    error: Optional[str] = None


@dataclass
class PickupLocation:
    """A registered origin address."""
    name: str
    address: str
    city: str
    state: str
    pincode: str
    phone: str = ""
    email: str = ""
    id: Optional[str] = None
    is_default: bool = False


@dataclass
class WebhookEvent:
    """A vendor webhook payload decoded into the shared taxonomy."""
    provider_id: str
    event_type: ShipmentEventType
    vendor_status: str
    tracking_id: Optional[str] = None
    order_id: Optional[str] = None
    event_id: Optional[str] = None
    occurred_at: Optional[datetime] = None
    ndr_reason: Optional[str] = None
    comments: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        return ":".join([
            self.provider_id,
            self.event_id or "-",
            self.tracking_id or "-",
            self.vendor_status.lower() or "-",
        ])


# =============================================================================
# Base Provider Interface
# =============================================================================

class BaseShippingProvider(ABC):
    """
    Abstract base class for all aggregator adapters.

    Adapters are value-like after construction: configuration is copied in
    and never changed. The only mutable state is whatever auth-token cache
    a concrete adapter keeps for itself.
    """

    # Credential fields that must be non-empty for is_configured()
    required_fields: Tuple[str, ...] = ()

    # Vendor status (upper-cased, "_" and "-" read as spaces) -> shared event type
    status_map: Mapping[str, ShipmentEventType] = {}

    # Whether the vendor pushes status webhooks at all
    has_webhook: bool = False

    def __init__(
        self,
        config: Mapping[str, Any],
        http_client: Optional[ResilientHTTPClient] = None,
        display_name: Optional[str] = None,
    ):
        """
        Args:
            config: Flat credential/settings map for this vendor
            http_client: Shared client override (tests inject MockTransport here)
            display_name: Name shown to users, defaults to provider_name
        """
        self._config: Dict[str, Any] = dict(config)
        self._http = http_client or ResilientHTTPClient(name=self.provider_id)
        self._display_name = display_name

    @property
    @abstractmethod
    def provider_id(self) -> str:
        """Stable registry key."""
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Human-readable vendor name."""
        pass

    @property
    def name(self) -> str:
        return self._display_name or self.provider_name

    def get_config_value(self, key: str, default: Any = None) -> Any:
        value = self._config.get(key)
        return default if value in (None, "") else value

    def config_flag(self, key: str) -> bool:
        return str(self._config.get(key, "")).strip().lower() in ("true", "1", "yes")

    def is_configured(self) -> bool:
        """True iff every required credential field is non-empty."""
        return all(str(self._config.get(f) or "").strip() for f in self.required_fields)

    def _ensure_configured(self) -> None:
        if not self.is_configured():
            missing = [f for f in self.required_fields if not str(self._config.get(f) or "").strip()]
            raise ProviderNotConfiguredError(
                f"{self.provider_name} is missing credentials: {', '.join(missing)}",
                provider_id=self.provider_id,
            )

    # -------------------------------------------------------------------------
    # Rates
    # -------------------------------------------------------------------------

    async def get_rates(self, request: ShippingRequest) -> List[ShippingRate]:
        """Rates only; any failure yields an empty list. See quote_rates()."""
        quote = await self.quote_rates(request)
        return quote.rates

    async def quote_rates(self, request: ShippingRequest) -> RateQuote:
        """
        Quote rates and say why the list is empty when it is.

        Never raises for vendor-side trouble: auth failures, exhausted
        retries and rejections come back as an ERROR quote with a message.
        """
        if not self.is_configured():
            return RateQuote.empty(QuoteStatus.NOT_CONFIGURED, f"{self.provider_name} is not configured")

        international = request.is_international and bool(request.destination_country)
        try:
            if international:
                if not self.supports_international_shipping():
                    return RateQuote.empty(
                        QuoteStatus.UNSERVICEABLE,
                        f"{self.provider_name} does not ship internationally",
                    )
                rates = await self._fetch_international_rates(request)
            else:
                rates = await self._fetch_rates(request)
        except InvalidShippingRequestError as e:
            logger.warning(f"{self.provider_name} rate request invalid: {e.message}")
            return RateQuote.empty(QuoteStatus.INVALID_REQUEST, e.message)
        except ShippingEngineError as e:
            logger.error(f"{self.provider_name} get rates error: {e.message}")
            return RateQuote.empty(QuoteStatus.ERROR, e.message)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.error(f"{self.provider_name} returned a malformed rate payload: {e!r}")
            return RateQuote.empty(QuoteStatus.ERROR, f"Malformed rate response: {e}")

        quote = RateQuote.from_rates(rates)
        if quote.status == QuoteStatus.UNSERVICEABLE:
            logger.warning(
                f"{self.provider_name}: no couriers for "
                f"{request.pickup_pincode} -> {request.delivery_pincode}"
            )
        return quote

    @abstractmethod
    async def _fetch_rates(self, request: ShippingRequest) -> List[ShippingRate]:
        """Call the vendor's domestic serviceability endpoint. May raise."""
        pass

    async def _fetch_international_rates(self, request: ShippingRequest) -> List[ShippingRate]:
        return []

    def supports_international_shipping(self) -> bool:
        return False

    async def get_international_rates(self, request: ShippingRequest) -> List[ShippingRate]:
        """International quote through the vendor's separate endpoint."""
        if not self.supports_international_shipping():
            return []
        quote = await self.quote_rates(replace(request, is_international=True))
        return quote.rates

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @abstractmethod
    async def create_shipment(self, request: ShippingRequest, service_id: str) -> ShipmentResponse:
        """
        Create a shipment with the courier named by service_id.

        Args:
            request: Shipment details
            service_id: ShippingRate.service_id from this provider's quote

        Returns:
            ShipmentResponse; never raises for vendor-side failures
        """
        pass

    @abstractmethod
    async def track_shipment(self, tracking_id: str) -> ShipmentTrackingResponse:
        pass

    @abstractmethod
    async def cancel_shipment(self, tracking_id: str) -> ShipmentCancellationResponse:
        pass

    async def create_return_shipment(
        self, original_tracking_id: str, request: ShippingRequest
    ) -> ShipmentResponse:
        return ShipmentResponse.failure(
            f"Return shipments not supported by {self.provider_name}",
            "NOT_IMPLEMENTED",
        )

    async def get_pickup_locations(self) -> List[PickupLocation]:
        return []

    async def create_pickup_location(self, location: PickupLocation) -> Optional[PickupLocation]:
        return None

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def parse_webhook_event(self, payload: Mapping[str, Any]) -> WebhookEvent:
        """
        Decode a vendor webhook body.

        The default handles the common envelope shapes: the event body is
        under "data" or "payload" or is the payload itself, and the AWB is
        one of awb_code / awb / tracking_number.
        """
        payload = payload or {}
        data = payload.get("data") or payload.get("payload") or payload
        if not isinstance(data, Mapping):
            data = payload
        vendor_status = str(
            data.get("status") or data.get("current_status")
            or payload.get("event") or payload.get("type") or payload.get("status") or ""
        )
        tracking_id = (
            data.get("awb_code") or data.get("awb") or data.get("tracking_number")
            or payload.get("awb") or payload.get("tracking_number")
        )
        order_id = data.get("order_id") or payload.get("order_id")
        event_id = payload.get("event_id") or payload.get("id") or data.get("event_id")
        return WebhookEvent(
            provider_id=self.provider_id,
            event_type=self.map_status(vendor_status),
            vendor_status=vendor_status,
            tracking_id=str(tracking_id) if tracking_id else None,
            order_id=str(order_id) if order_id else None,
            event_id=str(event_id) if event_id else None,
            occurred_at=parse_vendor_date(data.get("timestamp") or payload.get("timestamp")),
            raw=dict(payload),
        )

    async def handle_webhook_event(self, event: WebhookEvent) -> None:
        """Vendor-side reaction to a decoded event. Default: nothing."""
        logger.info(
            f"{self.provider_name} webhook {event.event_type.value} "
            f"(awb={event.tracking_id}, order={event.order_id})"
        )

    async def process_webhook_event(self, payload: Mapping[str, Any]) -> WebhookEvent:
        """Decode and react in one step, with no duplicate suppression."""
        event = self.parse_webhook_event(payload)
        await self.handle_webhook_event(event)
        return event

    def map_status(self, vendor_status: str) -> ShipmentEventType:
        """Map vendor status text to the shared taxonomy by exact match."""
        status_key = normalize_status(vendor_status)
        if not status_key:
            return ShipmentEventType.UNKNOWN

        for key, event_type in self.status_map.items():
            if normalize_status(key) == status_key:
                return event_type

        logger.warning(f"Unknown {self.provider_name} status: {vendor_status}")
        return ShipmentEventType.UNKNOWN

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        """
        Send through the retrying client and decode the JSON body.

        Raises:
            ProviderUnavailableError: Unreachable, or 5xx after retries
            ProviderRejectedError: 4xx, or a body that is not JSON
        """
        response = await self._http.request(method, url, **kwargs)
        if response.status_code >= 500 or response.status_code in (408, 429):
            raise ProviderUnavailableError(
                f"{self.provider_name} returned {response.status_code}",
                provider_id=self.provider_id,
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError:
            body = None
        if response.status_code >= 400:
            message = _error_message(body) or response.reason_phrase or "Request rejected"
            raise ProviderRejectedError(
                f"{self.provider_name}: {message}",
                provider_id=self.provider_id,
                status_code=response.status_code,
            )
        if not isinstance(body, dict):
            raise ProviderRejectedError(
                f"{self.provider_name} returned a non-JSON response",
                provider_id=self.provider_id,
                status_code=response.status_code,
            )
        return body

    async def aclose(self) -> None:
        await self._http.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.provider_id} configured={self.is_configured()}>"


def _error_message(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        for key in ("message", "error", "msg", "errors"):
            value = body.get(key)
            if value:
                return str(value)
    return None

