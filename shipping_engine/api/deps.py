"""
API dependencies

The service objects live on app.state; create_app() puts them there.
"""
from fastapi import Request

from shipping_engine.core.exceptions import ProviderNotFoundError
from shipping_engine.services.shipping_service import ShippingService
from shipping_engine.services.webhook_service import WebhookService


def get_shipping_service(request: Request) -> ShippingService:
    return request.app.state.shipping_service


def get_webhook_service(request: Request) -> WebhookService:
    return request.app.state.webhook_service


def require_provider(service: ShippingService, provider_id: str) -> None:
    """Raise a 404-mapped error unless provider_id is live."""
    if provider_id not in service.registry:
        raise ProviderNotFoundError(
            f"Provider {provider_id} not found or not enabled",
            details={"provider_id": provider_id},
        )
