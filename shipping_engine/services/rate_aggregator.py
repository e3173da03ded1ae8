"""
Rate Aggregator

Fans a rate request out to every live provider concurrently and collects
the answers. A provider that errors or has nothing for the lane is left
out of the rate map but keeps its diagnostic, so "unserviceable" and
"failing" stay distinguishable.

Usage:
    aggregator = RateAggregator(registry)
    result = await aggregator.get_all_rates_with_diagnostics(request)
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from shipping_engine.core.utils import is_valid_pincode
from shipping_engine.modules.shipping.providers.base import (
    PaymentMethod,
    QuoteStatus,
    RateQuote,
    ShippingRate,
    ShippingRequest,
)
from shipping_engine.modules.shipping.registry import ProviderRegistry

logger = logging.getLogger(__name__)

DEFAULT_PICKUP_PINCODE = "110001"


@dataclass
class ProviderDiagnostic:
    provider_id: str
    status: QuoteStatus
    rate_count: int = 0
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "status": self.status.value,
            "rate_count": self.rate_count,
            "message": self.message,
        }


@dataclass
class AggregatedRates:
    """Rates keyed by provider id, plus one diagnostic per provider asked."""
    rates: Dict[str, List[ShippingRate]] = field(default_factory=dict)
    diagnostics: Dict[str, ProviderDiagnostic] = field(default_factory=dict)

    @property
    def failing_providers(self) -> List[str]:
        return [
            pid for pid, diag in self.diagnostics.items()
            if diag.status in (QuoteStatus.ERROR, QuoteStatus.NOT_CONFIGURED)
        ]


@dataclass
class ServiceabilitySummary:
    serviceable: bool
    pickup_pincode: str
    delivery_pincode: str
    providers: List[Dict[str, Any]] = field(default_factory=list)
    eta_min_days: Optional[int] = None
    eta_max_days: Optional[int] = None


class RateAggregator:
    """Concurrent rate collection across the registry's current generation."""

    def __init__(self, registry: ProviderRegistry, validate_pincodes: bool = True):
        self.registry = registry
        self.validate_pincodes = validate_pincodes

    async def get_all_rates(self, request: ShippingRequest) -> Dict[str, List[ShippingRate]]:
        """Provider id -> non-empty rate list. Unordered."""
        result = await self.get_all_rates_with_diagnostics(request)
        return result.rates

    async def get_all_rates_with_diagnostics(self, request: ShippingRequest) -> AggregatedRates:
        result = AggregatedRates()

        if self.validate_pincodes and not (
            is_valid_pincode(request.pickup_pincode) and is_valid_pincode(request.delivery_pincode)
        ):
            logger.warning(
                f"Invalid pincode in rate request: "
                f"{request.pickup_pincode!r} -> {request.delivery_pincode!r}"
            )
            return result

        # Snapshot once so a concurrent re-initialization cannot mix generations
        providers = dict(self.registry.generation.providers)
        if not providers:
            logger.warning("No shipping providers enabled for rate lookup")
            return result

        provider_ids = list(providers.keys())
        outcomes = await asyncio.gather(
            *(providers[pid].quote_rates(request) for pid in provider_ids),
            return_exceptions=True,
        )

        for provider_id, outcome in zip(provider_ids, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error(f"Error getting rates from {provider_id}: {outcome!r}")
                quote = RateQuote.empty(QuoteStatus.ERROR, str(outcome))
            else:
                quote = outcome

            result.diagnostics[provider_id] = ProviderDiagnostic(
                provider_id=provider_id,
                status=quote.status,
                rate_count=len(quote.rates),
                message=quote.message,
            )
            if quote.rates:
                result.rates[provider_id] = list(quote.rates)

        logger.info(
            f"Aggregated rates from {len(result.rates)}/{len(provider_ids)} provider(s) "
            f"for {request.pickup_pincode} -> {request.delivery_pincode}"
        )
        return result

    async def get_rates(self, provider_id: str, request: ShippingRequest) -> List[ShippingRate]:
        """Single-provider pass-through. Unknown provider yields []."""
        provider = self.registry.get(provider_id)
        if not provider:
            logger.warning(f"Rate request for unavailable provider: {provider_id}")
            return []
        return await provider.get_rates(request)

    async def check_serviceability(
        self,
        delivery_pincode: str,
        weight: float = 500,
        invoice_value: float = 1000,
        pickup_pincode: Optional[str] = None,
    ) -> ServiceabilitySummary:
        """Summarize which providers cover a pincode, with the overall ETA range."""
        pickup = pickup_pincode or DEFAULT_PICKUP_PINCODE
        request = ShippingRequest(
            order_id=f"svc-{delivery_pincode}",
            pickup_pincode=pickup,
            delivery_pincode=delivery_pincode,
            weight=max(100, weight),
            invoice_value=max(1, invoice_value),
            payment_method=PaymentMethod.PREPAID,
            customer_name="Pincode Check",
        )
        result = await self.get_all_rates_with_diagnostics(request)

        providers = []
        etas: List[int] = []
        for provider_id, diag in result.diagnostics.items():
            rates = result.rates.get(provider_id, [])
            providers.append({
                "provider_id": provider_id,
                "available": bool(rates),
                "services": len(rates),
            })
            etas.extend(r.estimated_days for r in rates if r.estimated_days is not None)

        return ServiceabilitySummary(
            serviceable=bool(result.rates),
            pickup_pincode=pickup,
            delivery_pincode=delivery_pincode,
            providers=providers,
            eta_min_days=min(etas) if etas else None,
            eta_max_days=max(etas) if etas else None,
        )
