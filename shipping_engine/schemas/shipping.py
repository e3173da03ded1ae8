"""
Shipping API Schemas

Pydantic models for the shipping routes. Each request model converts to
the engine's frozen dataclasses; each response model is built from them.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shipping_engine.models.shipment_record import CreationState
from shipping_engine.modules.shipping.providers.base import (
    OrderItem,
    PackageDimensions,
    PaymentMethod,
    PickupLocation,
    SelectionStrategy,
    ShipmentCancellationResponse,
    ShipmentResponse,
    ShipmentTrackingResponse,
    ShippingRate,
    ShippingRequest,
)


# ==================== Request Schemas ====================


class OrderItemSchema(BaseModel):
    name: str = Field(..., min_length=1)
    sku: str = ""
    units: int = Field(1, ge=1)
    selling_price: float = Field(0, ge=0)
    tax: float = 0
    discount: float = 0
    hsn: str = ""


class DimensionsSchema(BaseModel):
    """Centimetres."""
    length: float = Field(10, gt=0)
    breadth: float = Field(10, gt=0)
    height: float = Field(10, gt=0)


class ShippingRequestSchema(BaseModel):
    """Quote or creation request. Weight in grams."""
    order_id: str = Field(..., min_length=1, max_length=100)
    pickup_pincode: str
    delivery_pincode: str
    weight: float = Field(..., gt=0)
    invoice_value: float = Field(..., ge=0)
    payment_method: PaymentMethod = PaymentMethod.PREPAID

    customer_name: str = ""
    customer_phone: str = ""
    customer_email: str = ""
    customer_address: str = ""
    customer_address2: str = ""
    customer_city: str = ""
    customer_state: str = ""
    customer_country: str = "India"

    pickup_location_name: str = ""
    pickup_name: str = ""
    pickup_phone: str = ""
    pickup_email: str = ""
    pickup_address: str = ""
    pickup_city: str = ""
    pickup_state: str = ""

    dimensions: Optional[DimensionsSchema] = None
    items: List[OrderItemSchema] = []
    order_date: Optional[datetime] = None

    is_international: bool = False
    destination_country: Optional[str] = None
    customs_value: Optional[float] = None
    customs_description: Optional[str] = None

    requires_insurance: bool = False
    insurance_value: Optional[float] = None
    return_reason: Optional[str] = None

    @field_validator("pickup_pincode", "delivery_pincode")
    @classmethod
    def strip_pincode(cls, v):
        return v.strip()

    def to_request(self) -> ShippingRequest:
        data = self.model_dump(exclude={"dimensions", "items"})
        return ShippingRequest(
            **data,
            dimensions=PackageDimensions(**self.dimensions.model_dump()) if self.dimensions else None,
            items=tuple(OrderItem(**item.model_dump()) for item in self.items),
        )


class QuoteRequest(BaseModel):
    request: ShippingRequestSchema
    subtotal: float = Field(..., ge=0)


class CreateShipmentRequest(BaseModel):
    provider_id: str
    service_id: str
    request: ShippingRequestSchema


class PickupLocationSchema(BaseModel):
    id: Optional[str] = None
    name: str
    address: str
    city: str
    state: str
    pincode: str
    phone: str = ""
    email: str = ""
    is_default: bool = False

    @classmethod
    def from_location(cls, location: PickupLocation) -> "PickupLocationSchema":
        return cls(**location.__dict__)

    def to_location(self) -> PickupLocation:
        return PickupLocation(**self.model_dump())


# ==================== Response Schemas ====================


class RateSchema(BaseModel):
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

    @classmethod
    def from_rate(cls, rate: ShippingRate) -> "RateSchema":
        return cls(**rate.__dict__)


class ProviderDiagnosticSchema(BaseModel):
    provider_id: str
    status: str
    rate_count: int = 0
    message: Optional[str] = None


class RatesResponse(BaseModel):
    rates: Dict[str, List[RateSchema]]
    diagnostics: List[ProviderDiagnosticSchema] = []


class QuoteResponse(BaseModel):
    provider_id: Optional[str] = None
    rate: Optional[RateSchema] = None
    final_cost: float
    is_fallback: bool
    free_shipping_applied: bool
    strategy: SelectionStrategy
    method_name: str
    carrier_name: str
    estimated_days: Optional[int] = None


class ShipmentResultSchema(BaseModel):
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
    error: Optional[str] = None
    partial: bool = False

    @classmethod
    def from_response(cls, response: ShipmentResponse) -> "ShipmentResultSchema":
        data = dict(response.__dict__)
        data.pop("insurance", None)
        return cls(**data)


class TrackingEventSchema(BaseModel):
    status: str
    timestamp: Optional[datetime] = None
    location: Optional[str] = None
    description: Optional[str] = None


class TrackingSchema(BaseModel):
    success: bool
    tracking_id: str
    current_status: str = ""
    event_type: str
    order_status: Optional[str] = None
    current_location: Optional[str] = None
    estimated_delivery_date: Optional[datetime] = None
    carrier_name: Optional[str] = None
    history: List[TrackingEventSchema] = []
    extra: Dict[str, Any] = {}
    message: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_response(cls, response: ShipmentTrackingResponse) -> "TrackingSchema":
        return cls(
            success=response.success,
            tracking_id=response.tracking_id,
            current_status=response.current_status,
            event_type=response.event_type.value,
            order_status=response.event_type.to_order_status(),
            current_location=response.current_location,
            estimated_delivery_date=response.estimated_delivery_date,
            carrier_name=response.carrier_name,
            history=[TrackingEventSchema(**event.__dict__) for event in response.history],
            extra=response.extra,
            message=response.message,
            error=response.error,
        )


class CancellationSchema(BaseModel):
    success: bool
    tracking_id: str
    message: str = ""
    error: Optional[str] = None

    @classmethod
    def from_response(cls, response: ShipmentCancellationResponse) -> "CancellationSchema":
        return cls(**response.__dict__)


class ServiceabilityResponse(BaseModel):
    serviceable: bool
    pickup_pincode: str
    delivery_pincode: str
    providers: List[Dict[str, Any]] = []
    eta_min_days: Optional[int] = None
    eta_max_days: Optional[int] = None


class CreationRecordSchema(BaseModel):
    """A shipment creation attempt, as kept for reconciliation."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: str
    provider_id: str
    state: CreationState
    service_id: Optional[str] = None
    is_return: bool = False
    vendor_order_id: Optional[str] = None
    vendor_shipment_id: Optional[str] = None
    tracking_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
