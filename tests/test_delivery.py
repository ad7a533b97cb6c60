"""
Delivery fee policy.
"""

import pytest

from freshcart.delivery import CartComposition, DeliveryQuoteEngine, classify_cart
from freshcart.models import (
    DeliveryZone,
    FeeReason,
    LocationSource,
    ProductCategory,
    ResolvedLocation,
)

ANCHOR = CartComposition.HAS_ANCHOR
VEG_ONLY = CartComposition.VEGETABLES_ONLY
OTHER = CartComposition.OTHER


class TestClassifyCart:

    def test_anchor_wins_over_vegetables(self):
        assert classify_cart([ProductCategory.VEGETABLES, ProductCategory.CHICKEN]) == ANCHOR

    def test_vegetables_only(self):
        assert classify_cart([ProductCategory.VEGETABLES]) == VEG_ONLY

    def test_empty_cart_is_other(self):
        assert classify_cart([]) == OTHER


class TestFeeRules:

    @pytest.mark.parametrize("distance,composition,fee,reason,zone", [
        (3, ANCHOR, 0, FeeReason.FREE_ANCHOR, DeliveryZone.TOWN),
        (3, VEG_ONLY, 250, FeeReason.VEG_ONLY_FLAT, DeliveryZone.TOWN),
        (3, OTHER, 0, FeeReason.DISTANCE_BASED, DeliveryZone.TOWN),
        (5, ANCHOR, 0, FeeReason.FREE_ANCHOR, DeliveryZone.TOWN),
        (10, ANCHOR, 100, FeeReason.DISTANCE_BASED, DeliveryZone.NEARBY),
        (12, ANCHOR, 100, FeeReason.DISTANCE_BASED, DeliveryZone.NEARBY),
        (12, VEG_ONLY, 100, FeeReason.DISTANCE_BASED, DeliveryZone.NEARBY),
        (15, VEG_ONLY, 100, FeeReason.DISTANCE_BASED, DeliveryZone.NEARBY),
        (30, ANCHOR, 300, FeeReason.DISTANCE_BASED, DeliveryZone.FAR),
        (42, VEG_ONLY, 420, FeeReason.DISTANCE_BASED, DeliveryZone.FAR),
    ])
    def test_fee_table(self, quote_engine, distance, composition, fee, reason, zone):
        quote = quote_engine.quote(distance, composition)
        assert quote.fee == fee
        assert quote.fee_reason == reason
        assert quote.zone == zone

    def test_far_zone_carries_minimum_order(self, quote_engine):
        assert quote_engine.quote(30, ANCHOR).minimum_order_required == 3000
        assert quote_engine.quote(10, ANCHOR).minimum_order_required is None

    def test_far_fee_rounds_half_up(self, quote_engine):
        assert quote_engine.quote(15.05, OTHER).fee == 151

    def test_minimum_order_is_configurable(self):
        engine = DeliveryQuoteEngine(far_zone_minimum_order=5000)
        assert engine.quote(30, ANCHOR).minimum_order_required == 5000

    def test_distance_fee_is_monotonic(self, quote_engine):
        fees = [quote_engine.distance_fee(d / 2) for d in range(0, 200)]
        assert fees == sorted(fees)

    def test_negative_distance_rejected(self, quote_engine):
        with pytest.raises(ValueError):
            quote_engine.quote(-1, ANCHOR)

    def test_invalid_radii_rejected(self):
        with pytest.raises(ValueError):
            DeliveryQuoteEngine(town_radius_km=20, nearby_radius_km=15)

    def test_source_does_not_change_fee(self, quote_engine):
        """Gazetteer, GPS and geocoded distances quote identically."""
        quotes = [
            quote_engine.quote_for_cart(
                ResolvedLocation(name="Somewhere", distance_km=9, source=source), []
            )
            for source in LocationSource
        ]
        assert {(q.fee, q.zone, q.fee_reason) for q in quotes} == {
            (100, DeliveryZone.NEARBY, FeeReason.DISTANCE_BASED)
        }
