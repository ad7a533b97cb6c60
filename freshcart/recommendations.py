"""
Product recommendations from a co-purchase graph.

Every completed order strengthens the edges between each pair of its
distinct products, in both directions. Suggestions for a cart are the
strongest edges leaving its products. The graph only grows.
"""

import logging
from collections import OrderedDict
from itertools import combinations
from typing import Dict, Iterable, List, Sequence, Tuple

from freshcart.catalog import format_price
from freshcart.config import (
    DEFAULT_EDGE_STRENGTH,
    EDGE_INCREMENT,
    MAX_RECOMMENDATIONS,
    MIN_RECOMMENDATION_STRENGTH,
)
from freshcart.database import DatabaseManager
from freshcart.models import AvailabilityStatus, Product

logger = logging.getLogger(__name__)


def order_pairs(product_ids: Iterable[str]) -> List[Tuple[str, str]]:
    """
    Directed edges touched by an order: both directions of every unordered
    pair of distinct products. Fewer than two distinct products yields none.
    """
    distinct = list(OrderedDict.fromkeys(product_ids))
    pairs = []
    for first, second in combinations(distinct, 2):
        pairs.append((first, second))
        pairs.append((second, first))
    return pairs


class RecommendationGraph:
    """Weighted, symmetric co-occurrence graph over catalog products."""

    def __init__(
        self,
        database: DatabaseManager,
        max_results: int = MAX_RECOMMENDATIONS,
        min_strength: float = MIN_RECOMMENDATION_STRENGTH,
        default_strength: float = DEFAULT_EDGE_STRENGTH,
        increment: float = EDGE_INCREMENT
    ):
        self.database = database
        self.max_results = max_results
        self.min_strength = min_strength
        self.default_strength = default_strength
        self.increment = increment

    def recommend(self, cart_product_ids: Sequence[str]) -> List[Product]:
        """
        Suggest products to go with the cart.

        Args:
            cart_product_ids: Products currently in the cart

        Returns:
            At most max_results active, in-stock products not already in the
            cart, strongest first (ties broken by product id)
        """
        in_cart = set(cart_product_ids)
        if not in_cart:
            return []

        best: Dict[str, float] = {}
        for edge in self.database.get_edges_from(in_cart):
            if edge.recommended_id in in_cart or edge.strength < self.min_strength:
                continue
            if edge.strength > best.get(edge.recommended_id, -1.0):
                best[edge.recommended_id] = edge.strength

        ranked = sorted(best.items(), key=lambda item: (-item[1], item[0]))
        candidates = self.database.get_products_by_ids([pid for pid, _ in ranked])

        suggestions = []
        for product in candidates:
            if not product.is_active or product.availability != AvailabilityStatus.IN_STOCK:
                continue
            suggestions.append(product)
            if len(suggestions) >= self.max_results:
                break
        return suggestions

    def update_from_order(self, ordered_product_ids: Iterable[str]) -> int:
        """
        Strengthen the graph with one completed order.

        Returns:
            Number of directed edges created or incremented
        """
        pairs = order_pairs(ordered_product_ids)
        if not pairs:
            return 0
        written = self.database.increment_edges(pairs, self.increment, self.default_strength)
        logger.info("Updated %d recommendation edges", written)
        return written

    def popular_products(self, limit: int = 5) -> List[Product]:
        """Products most often bought alongside others."""
        ids = self.database.get_popular_product_ids(limit)
        return [p for p in self.database.get_products_by_ids(ids) if p.is_active]

    def format_recommendations(self, products: Sequence[Product]) -> str:
        """Render suggestions for the assistant context."""
        if not products:
            return ""
        lines = ["Suggest these products when they fit the conversation:", ""]
        for product in products:
            lines.append(f"- {product.display_name}: {format_price(product.base_price)} {product.unit}")
            if product.description:
                lines.append(f"  {product.description}")
            lines.append(f"  Product ID: {product.product_id}")
        return "\n".join(lines)
