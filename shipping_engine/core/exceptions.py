"""
Shipping Engine Exception Hierarchy

Structured exceptions carrying a code, message, and details so that
adapters can turn them into structured failure results at their public
boundary, and the API layer can turn them into JSON errors.

Exception Hierarchy:
    ShippingEngineError
    ├── ProviderError
    │   ├── ProviderNotConfiguredError   (missing/invalid credentials)
    │   ├── ProviderUnavailableError     (network failure, retries exhausted)
    │   ├── ProviderRejectedError        (4xx or error body from vendor)
    │   ├── ProviderAuthError            (login rejected)
    │   └── PartialShipmentError         (multi-step create stopped halfway)
    ├── ProviderNotFoundError
    ├── InvalidShippingRequestError
    └── WebhookVerificationError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class ShippingEngineError(Exception):
    """
    Base exception for all engine errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "SHIPPING_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# PROVIDER ERRORS
# =============================================================================

class ProviderError(ShippingEngineError):
    """Base exception for vendor integration errors."""
    default_code = "PROVIDER_ERROR"
    default_severity = "P1"

    def __init__(
        self,
        message: str,
        provider_id: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "provider_id": provider_id,
            "status_code": status_code,
        })
        self.provider_id = provider_id
        self.status_code = status_code
        super().__init__(message, details=details, **kwargs)


class ProviderNotConfiguredError(ProviderError):
    """Required credential fields are missing."""
    default_code = "NOT_CONFIGURED"
    default_severity = "P2"


class ProviderUnavailableError(ProviderError):
    """Vendor could not be reached after all retries."""
    default_code = "PROVIDER_UNAVAILABLE"
    default_severity = "P1"


class ProviderRejectedError(ProviderError):
    """Vendor answered with a definitive rejection (4xx or error body)."""
    default_code = "PROVIDER_REJECTED"
    default_severity = "P2"


class ProviderAuthError(ProviderError):
    """Vendor login failed."""
    default_code = "AUTH_FAILED"
    default_severity = "P0"


class PartialShipmentError(ProviderError):
    """
    A multi-step vendor create succeeded on an early step and failed later.

    The vendor-side order exists; its identifiers are kept in details so a
    reconciliation pass can find and resume or cancel it.
    """
    default_code = "PARTIAL_SHIPMENT"
    default_severity = "P1"

    def __init__(
        self,
        message: str,
        vendor_order_id: Optional[str] = None,
        vendor_shipment_id: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "vendor_order_id": vendor_order_id,
            "vendor_shipment_id": vendor_shipment_id,
        })
        self.vendor_order_id = vendor_order_id
        self.vendor_shipment_id = vendor_shipment_id
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# ENGINE ERRORS
# =============================================================================

class ProviderNotFoundError(ShippingEngineError):
    """No live adapter for the requested provider id."""
    default_code = "INVALID_PROVIDER"
    default_severity = "P3"


class InvalidShippingRequestError(ShippingEngineError):
    """Request failed validation before any vendor call."""
    default_code = "INVALID_REQUEST"
    default_severity = "P3"


class WebhookVerificationError(ShippingEngineError):
    """Inbound webhook did not carry the expected shared secret."""
    default_code = "WEBHOOK_UNAUTHORIZED"
    default_severity = "P2"
