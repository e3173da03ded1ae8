"""
Shipping option selection

Pure function over an aggregated rate map. No I/O, no provider calls.

Strategies:
- cheapest: global minimum cost
- fastest: global minimum estimated days
- priority: cheapest rate of the first provider (by priority) that has
  any rate; global cheapest if none of them do

Ties always go to the first pair in flatten order, which is the priority
order followed by any remaining providers in map order.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from shipping_engine.core.config import settings
from shipping_engine.modules.shipping.providers.base import SelectionStrategy, ShippingRate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DefaultShippingOption:
    """Static option offered when no provider returns anything."""
    method_name: str = "Standard Shipping"
    cost: float = 50.0
    carrier_name: str = "India Post"
    estimated_days: int = 7

    @classmethod
    def from_settings(cls) -> "DefaultShippingOption":
        return cls(
            method_name=settings.DEFAULT_SHIPPING_METHOD,
            cost=settings.DEFAULT_SHIPPING_COST,
            carrier_name=settings.DEFAULT_SHIPPING_CARRIER,
            estimated_days=settings.DEFAULT_SHIPPING_DAYS,
        )


@dataclass(frozen=True)
class ShippingSelection:
    """
    Outcome of selection.

    For a fallback, provider_id and rate are None and the descriptor
    fields come from the DefaultShippingOption.
    """
    provider_id: Optional[str]
    rate: Optional[ShippingRate]
    final_cost: float
    is_fallback: bool
    free_shipping_applied: bool
    strategy: SelectionStrategy
    method_name: str = ""
    carrier_name: str = ""
    estimated_days: Optional[int] = None

    @property
    def service_id(self) -> Optional[str]:
        return self.rate.service_id if self.rate else None


def _flatten(
    rates_by_provider: Dict[str, List[ShippingRate]],
    providers_by_priority: Sequence[str],
) -> List[Tuple[str, ShippingRate]]:
    order = [pid for pid in providers_by_priority if pid in rates_by_provider]
    order += [pid for pid in rates_by_provider if pid not in order]
    return [
        (pid, rate)
        for pid in order
        for rate in rates_by_provider.get(pid) or []
        if rate.is_available
    ]


def _first_min(pairs: Iterable[Tuple[str, ShippingRate]], key) -> Tuple[str, ShippingRate]:
    # min() keeps the first of equal elements
    return min(pairs, key=lambda pair: key(pair[1]))


def _by_cost(rate: ShippingRate) -> float:
    return rate.cost


def _by_days(rate: ShippingRate) -> int:
    return rate.estimated_days


def select_shipping_option(
    rates_by_provider: Dict[str, List[ShippingRate]],
    strategy: SelectionStrategy,
    providers_by_priority: Sequence[str],
    free_shipping_threshold: float,
    subtotal: float,
    default_option: Optional[DefaultShippingOption] = None,
) -> ShippingSelection:
    """
    Choose one (provider, rate) pair and the cost to present.

    Args:
        rates_by_provider: Aggregated rates, provider id -> rates
        strategy: Selection policy
        providers_by_priority: Enabled provider ids, highest priority first
        free_shipping_threshold: Subtotal at or above which shipping is free
        subtotal: Cart subtotal
        default_option: Static fallback; built from settings when omitted

    Returns:
        ShippingSelection, never None
    """
    strategy = SelectionStrategy(strategy)
    free = subtotal >= free_shipping_threshold
    pairs = _flatten(rates_by_provider, providers_by_priority)

    if not pairs:
        fallback = default_option or DefaultShippingOption.from_settings()
        logger.info(f"No provider rates available, using default option {fallback.method_name}")
        return ShippingSelection(
            provider_id=None,
            rate=None,
            final_cost=0.0 if free else fallback.cost,
            is_fallback=True,
            free_shipping_applied=free,
            strategy=strategy,
            method_name=fallback.method_name,
            carrier_name=fallback.carrier_name,
            estimated_days=fallback.estimated_days,
        )

    if strategy == SelectionStrategy.FASTEST:
        provider_id, rate = _first_min(pairs, _by_days)
    elif strategy == SelectionStrategy.CHEAPEST:
        provider_id, rate = _first_min(pairs, _by_cost)
    else:
        chosen = None
        for pid in providers_by_priority:
            own = [pair for pair in pairs if pair[0] == pid]
            if own:
                chosen = _first_min(own, _by_cost)
                break
        if chosen is None:
            logger.warning("No prioritized provider has rates, falling back to global cheapest")
            chosen = _first_min(pairs, _by_cost)
        provider_id, rate = chosen

    return ShippingSelection(
        provider_id=provider_id,
        rate=rate,
        final_cost=0.0 if free else rate.cost,
        is_fallback=False,
        free_shipping_applied=free,
        strategy=strategy,
        method_name=rate.carrier_name,
        carrier_name=rate.carrier_name,
        estimated_days=rate.estimated_days,
    )
