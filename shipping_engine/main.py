"""
Shipping Engine
FastAPI application entry point

Wires one ShippingService and one WebhookService onto app.state for the
process lifetime. Providers start empty; the configuration side calls
ShippingService.apply_config() whenever the shipping document changes.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from shipping_engine import __version__
from shipping_engine.api.errors import register_exception_handlers
from shipping_engine.api.routes import shipping
from shipping_engine.core.config import settings
from shipping_engine.core.database import AsyncSessionLocal, init_db
from shipping_engine.core.idempotency import get_idempotency_store
from shipping_engine.core.redis_client import close_redis
from shipping_engine.schemas.shipping_config import ShippingConfig
from shipping_engine.services.shipment_records import SQLAlchemyShipmentRecordStore
from shipping_engine.services.shipping_service import ShippingService
from shipping_engine.services.webhook_service import WebhookService

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    shipping_service: Optional[ShippingService] = None,
    webhook_service: Optional[WebhookService] = None,
    config: Optional[ShippingConfig] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        shipping_service: Prebuilt service (tests); otherwise one backed by the database
        webhook_service: Prebuilt webhook service; otherwise one on the idempotency store
        config: Initial shipping configuration document
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service = shipping_service
        if service is None:
            await init_db()
            service = ShippingService(record_store=SQLAlchemyShipmentRecordStore(AsyncSessionLocal))
        if config is not None:
            service.apply_config(config)

        webhooks = webhook_service
        if webhooks is None:
            webhooks = WebhookService(service.registry, await get_idempotency_store())

        app.state.shipping_service = service
        app.state.webhook_service = webhooks
        logger.info(f"Shipping engine {__version__} started ({settings.ENVIRONMENT})")

        yield

        await service.aclose()
        await close_redis()
        logger.info("Shipping provider HTTP clients closed")

    app = FastAPI(
        lifespan=lifespan,
        title=settings.APP_NAME,
        version=__version__,
    )
    register_exception_handlers(app)
    app.include_router(shipping.router, prefix="/api")

    @app.get("/health")
    async def health():
        service = getattr(app.state, "shipping_service", None)
        return {
            "status": "healthy",
            "providers": service.get_available_providers() if service else [],
        }

    return app


app = create_app()
