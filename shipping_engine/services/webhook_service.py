"""
Webhook Service

Inbound vendor webhooks, one route per provider. The flow is:

    verify secret -> resolve adapter -> decode -> claim idempotency key
    -> adapter reaction (e.g. NDR redelivery) -> order-state callback

The key is claimed before any side effect, so a redelivered vendor event
is acknowledged without repeating anything. Internal failures are logged
and still acknowledged; vendors resend on the next state change.
"""
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from shipping_engine.core.config import settings
from shipping_engine.core.exceptions import ShippingEngineError, WebhookVerificationError
from shipping_engine.core.idempotency import InMemoryIdempotencyStore
from shipping_engine.modules.shipping.providers.base import WebhookEvent
from shipping_engine.modules.shipping.registry import ProviderRegistry

logger = logging.getLogger(__name__)

WEBHOOK_SECRET_HEADER = "x-webhook-secret"

EventCallback = Callable[[WebhookEvent], Awaitable[None]]


@dataclass
class WebhookAck:
    """What the inbound route sends back. Always a 200 to the vendor."""
    received: bool = True
    status: str = "processed"  # processed | duplicate | ignored | error
    provider_id: str = ""
    event_type: Optional[str] = None
    tracking_id: Optional[str] = None
    duplicate: bool = False
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "received": self.received,
            "status": self.status,
            "provider_id": self.provider_id,
            "event_type": self.event_type,
            "tracking_id": self.tracking_id,
            "duplicate": self.duplicate,
            "message": self.message,
        }


class WebhookService:
    def __init__(
        self,
        registry: ProviderRegistry,
        idempotency_store=None,
        on_event: Optional[EventCallback] = None,
        secret_lookup: Optional[Callable[[str], str]] = None,
    ):
        """
        Args:
            registry: Live provider registry
            idempotency_store: Anything with an async claim(key) -> bool
            on_event: Order-state collaborator, called once per new event
            secret_lookup: provider_id -> expected secret ("" disables the check)
        """
        self.registry = registry
        self.idempotency_store = idempotency_store or InMemoryIdempotencyStore()
        self.on_event = on_event
        self.secret_lookup = secret_lookup or settings.webhook_secret_for

    def verify(self, provider_id: str, headers: Mapping[str, str]) -> None:
        """
        Raises:
            WebhookVerificationError: Secret configured and header missing or wrong
        """
        expected = self.secret_lookup(provider_id)
        if not expected:
            return
        supplied = ""
        for key, value in (headers or {}).items():
            if key.lower() == WEBHOOK_SECRET_HEADER:
                supplied = value or ""
                break
        if not hmac.compare_digest(supplied.encode(), expected.encode()):
            logger.warning(f"Rejected {provider_id} webhook with bad or missing secret")
            raise WebhookVerificationError(f"Invalid webhook secret for {provider_id}")

    async def handle(
        self,
        provider_id: str,
        payload: Any,
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookAck:
        """payload is the decoded JSON body, or None when the body was not JSON."""
        self.verify(provider_id, headers or {})

        provider = self.registry.get(provider_id)
        if not provider:
            logger.warning(f"Webhook for unavailable provider {provider_id} ignored")
            return WebhookAck(status="ignored", provider_id=provider_id, message="Provider not enabled")
        if not provider.has_webhook:
            logger.warning(f"{provider.name} does not send webhooks; payload ignored")
            return WebhookAck(status="ignored", provider_id=provider_id, message="Provider has no webhooks")

        if not isinstance(payload, Mapping):
            logger.error(f"{provider_id} webhook body is not a JSON object; acknowledged")
            return WebhookAck(status="error", provider_id=provider_id, message="Malformed payload")

        try:
            event = provider.parse_webhook_event(payload)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.error(f"Malformed {provider_id} webhook payload: {e!r}")
            return WebhookAck(status="error", provider_id=provider_id, message="Malformed payload")

        ack = WebhookAck(
            provider_id=provider_id,
            event_type=event.event_type.value,
            tracking_id=event.tracking_id,
        )

        key = event.idempotency_key
        if not await self.idempotency_store.claim(key):
            logger.info(f"Duplicate {provider_id} webhook {event.idempotency_key} acknowledged")
            ack.status = "duplicate"
            ack.duplicate = True
            return ack

        try:
            await provider.handle_webhook_event(event)
            if self.on_event:
                await self.on_event(event)
        except ShippingEngineError as e:
            logger.error(f"Error processing {provider_id} webhook {event.idempotency_key}: {e.message}")
            ack.status = "error"
            ack.message = e.message
        except Exception as e:
            logger.exception(f"Unexpected error processing {provider_id} webhook: {e}")
            ack.status = "error"
            ack.message = "Internal error"
        return ack
