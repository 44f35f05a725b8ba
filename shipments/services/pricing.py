"""
Pricing Engine for PAP Dispatch

Calculates shipment prices from distance, weight and fragility.

Formula:
    base     = minimum price (covers the first MIN_DISTANCE km)
    variable = round2((distance - MIN_DISTANCE) * PRICE_PER_KM)   if distance > MIN_DISTANCE
    total    = base + variable
    total    = round2(total * (1 + HEAVY_SURCHARGE))              if weight > HEAVY_THRESHOLD
    total    = round2(total * (1 + FRAGILE_SURCHARGE))            if fragile
    total    = max(minimum, total)
"""

import logging
import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Mapping, Optional

from django.conf import settings

from .directions import RoutingService, routing_service
from .geofence import Coordinate

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')


def round2(amount: Decimal) -> Decimal:
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass
class PriceBreakdown:
    base_price: Decimal
    variable_price: Decimal
    total: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            'basePrice': str(self.base_price),
            'variablePrice': str(self.variable_price),
            'total': str(self.total),
        }


class PricingEngine:
    """
    Linear distance pricing with compounding weight/fragility multipliers.

    Constants come from settings; pass overrides to price with other rules.
    """

    def __init__(
        self,
        min_price=None,
        min_distance_km=None,
        price_per_km=None,
        heavy_threshold_kg=None,
        heavy_surcharge=None,
        fragile_surcharge=None,
        currency: Optional[str] = None,
    ):
        def _setting(value, name):
            return Decimal(str(value if value is not None else getattr(settings, name)))

        self.min_price = _setting(min_price, 'PRICING_MIN_PRICE')
        self.min_distance_km = _setting(min_distance_km, 'PRICING_MIN_DISTANCE_KM')
        self.price_per_km = _setting(price_per_km, 'PRICING_PRICE_PER_KM')
        self.heavy_threshold_kg = _setting(heavy_threshold_kg, 'PRICING_HEAVY_THRESHOLD_KG')
        self.heavy_multiplier = 1 + _setting(heavy_surcharge, 'PRICING_HEAVY_SURCHARGE')
        self.fragile_multiplier = 1 + _setting(fragile_surcharge, 'PRICING_FRAGILE_SURCHARGE')
        self.currency = currency or settings.PRICING_CURRENCY

    def minimum(self) -> PriceBreakdown:
        return PriceBreakdown(
            base_price=self.min_price,
            variable_price=Decimal('0.00'),
            total=self.min_price,
        )

    @staticmethod
    def _weight(weight_kg) -> Decimal:
        try:
            weight = Decimal(str(weight_kg or 0))
        except InvalidOperation:
            return Decimal('0')
        return weight if weight.is_finite() else Decimal('0')

    def estimate(self, distance_km, weight_kg=0, fragile: bool = False) -> PriceBreakdown:
        """
        Price a shipment. Never raises: a negative or non-finite distance
        is priced at the minimum, an unusable weight counts as 0 kg.
        """
        try:
            distance = float(distance_km)
        except (TypeError, ValueError):
            return self.minimum()
        if not math.isfinite(distance) or distance < 0:
            return self.minimum()

        distance = Decimal(str(distance))
        base_price = self.min_price
        variable_price = Decimal('0.00')

        if distance > self.min_distance_km:
            variable_price = round2((distance - self.min_distance_km) * self.price_per_km)

        total = base_price + variable_price

        if self._weight(weight_kg) > self.heavy_threshold_kg:
            total = round2(total * self.heavy_multiplier)
        if fragile:
            total = round2(total * self.fragile_multiplier)

        total = max(self.min_price, total)

        return PriceBreakdown(
            base_price=base_price,
            variable_price=variable_price,
            total=total,
        )


def estimate_price(distance_km, weight_kg=0, fragile: bool = False) -> PriceBreakdown:
    """Price with the configured rules."""
    return pricing_engine.estimate(distance_km, weight_kg, fragile)


def build_quote(
    pickup: Mapping[str, Any],
    dropoff: Mapping[str, Any],
    package: Mapping[str, Any],
    engine: Optional[PricingEngine] = None,
    router: Optional[RoutingService] = None,
) -> Dict[str, Any]:
    """
    Build the frozen quote stored on a new shipment.

    Distance and duration come from the routing service (straight-line
    fallback when it is unavailable).
    """
    engine = engine or pricing_engine
    router = router or routing_service

    route = router.route(Coordinate.from_mapping(pickup), Coordinate.from_mapping(dropoff))
    breakdown = engine.estimate(
        route.distance_km,
        weight_kg=package.get('pesoKg', 0),
        fragile=bool(package.get('fragil', False)),
    )

    quote = {
        'preco': str(breakdown.total),
        'basePrice': str(breakdown.base_price),
        'variablePrice': str(breakdown.variable_price),
        'distKm': round(route.distance_km, 2),
        'tempoMin': round(route.duration_min),
        'moeda': engine.currency,
        'source': route.source,
    }

    logger.info(
        f"[PRICING] Quote {quote['preco']} {quote['moeda']} | "
        f"{quote['distKm']}km / {quote['tempoMin']}min ({route.source})"
    )
    return quote


# Singleton instance
pricing_engine = PricingEngine()
