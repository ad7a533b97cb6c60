"""
Delivery fee quoting.

The fee is a pure function of road distance and cart composition, so a
distance from the gazetteer, a GPS pin, a stated distance or the geocoder
all quote the same way.

Policy, in precedence order:
    1. town zone + cart contains fish or chicken  -> free
    2. town zone + vegetables-only cart           -> flat veg-only fee
    3. otherwise                                   -> distance-based fee
       (town: 0, nearby: flat rate, far: per-km rate)
"""

import logging
import math
from enum import Enum
from typing import Iterable, Optional

from freshcart.config import (
    FAR_RATE_PER_KM,
    FAR_ZONE_MINIMUM_ORDER,
    NEARBY_FLAT_FEE,
    NEARBY_RADIUS_KM,
    TOWN_DISTANCE_FEE,
    TOWN_RADIUS_KM,
    VEG_ONLY_FLAT_FEE,
)
from freshcart.models import (
    ANCHOR_CATEGORIES,
    CartLine,
    DeliveryQuote,
    DeliveryZone,
    FeeReason,
    LocationSource,
    ProductCategory,
    ResolvedLocation,
)

logger = logging.getLogger(__name__)


class CartComposition(str, Enum):
    HAS_ANCHOR = "has_anchor"
    VEGETABLES_ONLY = "vegetables_only"
    OTHER = "other"


def classify_cart(categories: Iterable[ProductCategory]) -> CartComposition:
    """Classify a cart by the categories of its lines."""
    categories = set(categories)
    if categories & ANCHOR_CATEGORIES:
        return CartComposition.HAS_ANCHOR
    if categories and categories == {ProductCategory.VEGETABLES}:
        return CartComposition.VEGETABLES_ONLY
    return CartComposition.OTHER


def classify_cart_lines(cart: Iterable[CartLine]) -> CartComposition:
    return classify_cart(line.category for line in cart)


class DeliveryQuoteEngine:
    """Computes delivery quotes from a distance and a cart composition."""

    def __init__(
        self,
        town_radius_km: float = TOWN_RADIUS_KM,
        nearby_radius_km: float = NEARBY_RADIUS_KM,
        nearby_flat_fee: float = NEARBY_FLAT_FEE,
        far_rate_per_km: float = FAR_RATE_PER_KM,
        veg_only_flat_fee: float = VEG_ONLY_FLAT_FEE,
        far_zone_minimum_order: float = FAR_ZONE_MINIMUM_ORDER
    ):
        if not 0 < town_radius_km <= nearby_radius_km:
            raise ValueError("Zone radii must satisfy 0 < town <= nearby")
        self.town_radius_km = town_radius_km
        self.nearby_radius_km = nearby_radius_km
        self.nearby_flat_fee = nearby_flat_fee
        self.far_rate_per_km = far_rate_per_km
        self.veg_only_flat_fee = veg_only_flat_fee
        self.far_zone_minimum_order = far_zone_minimum_order

    def zone_for(self, distance_km: float) -> DeliveryZone:
        if distance_km <= self.town_radius_km:
            return DeliveryZone.TOWN
        if distance_km <= self.nearby_radius_km:
            return DeliveryZone.NEARBY
        return DeliveryZone.FAR

    def distance_fee(self, distance_km: float) -> float:
        """Monotonic non-decreasing fee by distance alone."""
        zone = self.zone_for(distance_km)
        if zone == DeliveryZone.TOWN:
            return TOWN_DISTANCE_FEE
        if zone == DeliveryZone.NEARBY:
            return self.nearby_flat_fee
        return float(math.floor(distance_km * self.far_rate_per_km + 0.5))

    def quote(
        self,
        distance_km: float,
        composition: CartComposition,
        location_name: str = "Customer location",
        source: Optional[LocationSource] = None
    ) -> DeliveryQuote:
        """
        Quote delivery for a road distance and cart composition.

        Args:
            distance_km: Road-adjusted distance from town centre
            composition: Result of classify_cart
            location_name: Label echoed back in the quote
            source: How the distance was obtained, informational only

        Returns:
            DeliveryQuote; far-zone quotes carry the minimum order figure
            for the caller to negotiate, it is not enforced here
        """
        if distance_km < 0:
            raise ValueError("distance_km must be non-negative")

        zone = self.zone_for(distance_km)
        if zone == DeliveryZone.TOWN and composition == CartComposition.HAS_ANCHOR:
            fee, reason = 0.0, FeeReason.FREE_ANCHOR
        elif zone == DeliveryZone.TOWN and composition == CartComposition.VEGETABLES_ONLY:
            fee, reason = float(self.veg_only_flat_fee), FeeReason.VEG_ONLY_FLAT
        else:
            fee, reason = float(self.distance_fee(distance_km)), FeeReason.DISTANCE_BASED

        quote = DeliveryQuote(
            location_name=location_name,
            distance_km=distance_km,
            fee=fee,
            zone=zone,
            fee_reason=reason,
            minimum_order_required=(
                float(self.far_zone_minimum_order) if zone == DeliveryZone.FAR else None
            ),
            source=source,
        )
        logger.info(
            "Quote for %r: %.1fkm zone=%s fee=%.0f reason=%s",
            location_name, distance_km, zone.value, fee, reason.value,
        )
        return quote

    def quote_for_cart(self, location: ResolvedLocation, cart: Iterable[CartLine]) -> DeliveryQuote:
        """Quote a resolved location against the lines of a cart."""
        return self.quote(
            location.distance_km,
            classify_cart_lines(cart),
            location_name=location.name,
            source=location.source,
        )
