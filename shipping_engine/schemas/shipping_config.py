"""
Shipping configuration document

The shape the admin side stores and hands to ShippingService whenever it
changes. Credential fields arrive either as the admin form's
{key: {"value": ...}} map or as a plain {key: value} map.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from shipping_engine.core.config import settings
from shipping_engine.core.utils import is_valid_pincode
from shipping_engine.modules.shipping.providers.base import PickupLocation, SelectionStrategy


class ProviderConfig(BaseModel):
    """One aggregator entry. Lower priority number wins."""
    id: str = Field(..., min_length=1)
    name: str = ""
    description: str = ""
    enabled: bool = False
    priority: int = 0
    config_fields: Dict[str, Any] = Field(default_factory=dict)
    webhook_url: Optional[str] = None

    @field_validator("id")
    @classmethod
    def normalize_id(cls, v):
        return v.strip().lower()

    def credentials(self) -> Dict[str, str]:
        """Flatten config_fields into the plain map adapters consume."""
        flat: Dict[str, str] = {}
        for key, field in self.config_fields.items():
            value = field.get("value") if isinstance(field, dict) else field
            if value is None:
                continue
            if isinstance(value, bool):
                value = "true" if value else "false"
            flat[key] = str(value)
        if self.webhook_url:
            flat["webhook_url"] = self.webhook_url
        return flat


class PickupLocationConfig(BaseModel):
    id: str = ""
    name: str
    address: str
    city: str
    state: str
    pincode: str
    phone: str = ""
    email: str = ""
    is_default: bool = False

    @field_validator("pincode")
    @classmethod
    def validate_pincode(cls, v):
        v = v.strip()
        if not is_valid_pincode(v):
            raise ValueError("Pincode must be 6 digits")
        return v

    def to_location(self) -> PickupLocation:
        return PickupLocation(
            id=self.id or None,
            name=self.name,
            address=self.address,
            city=self.city,
            state=self.state,
            pincode=self.pincode,
            phone=self.phone,
            email=self.email,
            is_default=self.is_default,
        )


class ShippingConfig(BaseModel):
    aggregators: List[ProviderConfig] = Field(default_factory=list)
    default_aggregator: str = ""
    selection_strategy: SelectionStrategy = SelectionStrategy.PRIORITY
    enable_pincode_validation: bool = True
    default_shipping_cost: float = Field(50.0, ge=0)
    free_shipping_threshold: float = Field(500.0, ge=0)
    enable_international_shipping: bool = False
    pickup_locations: List[PickupLocationConfig] = Field(default_factory=list)
    enable_webhooks: bool = False
    enable_insurance: bool = False
    insurance_threshold: float = Field(10000.0, ge=0)

    @field_validator("selection_strategy", mode="before")
    @classmethod
    def normalize_strategy(cls, v):
        # Unknown strategies degrade to priority rather than rejecting the document
        if isinstance(v, str):
            v = v.strip().lower()
            if v not in {s.value for s in SelectionStrategy}:
                return SelectionStrategy.PRIORITY
        return v

    @classmethod
    def from_settings(cls, **overrides: Any) -> "ShippingConfig":
        """Defaults taken from the environment; aggregators come from overrides."""
        values: Dict[str, Any] = {
            "selection_strategy": settings.SELECTION_STRATEGY,
            "enable_pincode_validation": settings.PINCODE_VALIDATION_ENABLED,
            "default_shipping_cost": settings.DEFAULT_SHIPPING_COST,
            "free_shipping_threshold": settings.FREE_SHIPPING_THRESHOLD,
        }
        values.update(overrides)
        return cls(**values)

    @property
    def enabled_aggregators(self) -> List[ProviderConfig]:
        return [a for a in self.aggregators if a.enabled]

    @property
    def default_pickup_location(self) -> Optional[PickupLocationConfig]:
        for location in self.pickup_locations:
            if location.is_default:
                return location
        return self.pickup_locations[0] if self.pickup_locations else None

    def requires_insurance(self, invoice_value: float) -> bool:
        return self.enable_insurance and invoice_value >= self.insurance_threshold
