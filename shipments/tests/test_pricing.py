"""
Pricing Engine Tests
====================

1. Linear distance formula and minimum price
2. Weight/fragility multipliers (compounding order)
3. Invalid distances
4. Quote construction from a route
"""

from decimal import Decimal
from unittest.mock import MagicMock

from django.test import SimpleTestCase, override_settings

from shipments.services.directions import RouteResult, RouteSource
from shipments.services.geofence import Coordinate
from shipments.services.pricing import PricingEngine, build_quote, estimate_price

from .helpers import DROPOFF, PICKUP


class TestEstimatePrice(SimpleTestCase):

    def test_minimum_distance_costs_minimum(self):
        breakdown = estimate_price(0.5, 0, False)
        self.assertEqual(breakdown.total, Decimal('5.00'))
        self.assertEqual(breakdown.base_price, Decimal('5.00'))
        self.assertEqual(breakdown.variable_price, Decimal('0.00'))

    def test_zero_distance_costs_minimum(self):
        self.assertEqual(estimate_price(0).total, Decimal('5.00'))

    def test_linear_variable_price(self):
        """(2.5 - 0.5) * 3.50 = 7.00"""
        breakdown = estimate_price(2.5)
        self.assertEqual(breakdown.variable_price, Decimal('7.00'))
        self.assertEqual(breakdown.total, Decimal('12.00'))

    def test_heavy_package_surcharge(self):
        self.assertEqual(estimate_price(2.5, 6).total, Decimal('14.40'))

    def test_weight_at_threshold_has_no_surcharge(self):
        self.assertEqual(estimate_price(2.5, 5).total, Decimal('12.00'))

    def test_fragile_surcharge(self):
        self.assertEqual(estimate_price(2.5, 0, True).total, Decimal('13.80'))

    def test_heavy_and_fragile_compound(self):
        """12.00 * 1.2 = 14.40, then * 1.15 = 16.56"""
        breakdown = estimate_price(2.5, 6, True)
        self.assertEqual(breakdown.variable_price, Decimal('7.00'))
        self.assertEqual(breakdown.total, Decimal('16.56'))

    def test_variable_price_rounds_half_up(self):
        """(0.53 - 0.5) * 3.50 = 0.105 -> 0.11"""
        self.assertEqual(estimate_price(0.53).variable_price, Decimal('0.11'))

    def test_invalid_distances_return_minimum(self):
        for distance in (-1, float('nan'), float('inf'), 'abc', None):
            with self.subTest(distance=distance):
                breakdown = estimate_price(distance, 10, True)
                self.assertEqual(breakdown.total, Decimal('5.00'))
                self.assertEqual(breakdown.variable_price, Decimal('0.00'))

    def test_unusable_weight_counts_as_zero(self):
        for weight in ('pesado', float('nan'), float('inf'), None):
            with self.subTest(weight=weight):
                self.assertEqual(estimate_price(2.5, weight, False).total, Decimal('12.00'))

    def test_to_dict_uses_document_keys(self):
        self.assertEqual(
            estimate_price(2.5).to_dict(),
            {'basePrice': '5.00', 'variablePrice': '7.00', 'total': '12.00'},
        )


class TestPricingEngineConfiguration(SimpleTestCase):

    def test_explicit_overrides(self):
        engine = PricingEngine(min_price='8.00', price_per_km='2.00')
        self.assertEqual(engine.estimate(0.2).total, Decimal('8.00'))
        self.assertEqual(engine.estimate(3.5).total, Decimal('14.00'))

    @override_settings(PRICING_MIN_PRICE='7.50', PRICING_CURRENCY='USD')
    def test_reads_settings(self):
        engine = PricingEngine()
        self.assertEqual(engine.min_price, Decimal('7.50'))
        self.assertEqual(engine.currency, 'USD')


class TestBuildQuote(SimpleTestCase):

    def _router(self, route):
        router = MagicMock()
        router.route.return_value = route
        return router

    def test_quote_from_osrm_route(self):
        router = self._router(RouteResult(
            coordinates=[Coordinate(-23.55, -46.63)],
            distance_km=2.5,
            duration_min=11.6,
            source=RouteSource.OSRM,
        ))

        quote = build_quote(PICKUP, DROPOFF, {'pesoKg': 6, 'fragil': True}, router=router)

        self.assertEqual(quote['preco'], '16.56')
        self.assertEqual(quote['basePrice'], '5.00')
        self.assertEqual(quote['variablePrice'], '7.00')
        self.assertEqual(quote['distKm'], 2.5)
        self.assertEqual(quote['tempoMin'], 12)
        self.assertEqual(quote['moeda'], 'BRL')
        self.assertEqual(quote['source'], 'osrm')

        origin, destination = router.route.call_args[0]
        self.assertEqual(origin, Coordinate(PICKUP['lat'], PICKUP['lng']))
        self.assertEqual(destination, Coordinate(DROPOFF['lat'], DROPOFF['lng']))

    def test_quote_records_fallback_source(self):
        router = self._router(RouteResult(distance_km=1.0, duration_min=15, source=RouteSource.FALLBACK))
        quote = build_quote(PICKUP, DROPOFF, {}, router=router)
        self.assertEqual(quote['source'], 'fallback')
        self.assertEqual(quote['preco'], '6.75')
