"""
Read-only access to the product catalog and its text rendering for the
language-understanding step.
"""

import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence

from freshcart.config import CURRENCY, MAX_PRODUCT_IMAGES
from freshcart.database import DatabaseManager
from freshcart.models import AvailabilityStatus, Product, ProductImage

logger = logging.getLogger(__name__)


AVAILABILITY_LABELS = {
    AvailabilityStatus.IN_STOCK: "In Stock",
    AvailabilityStatus.AVAILABLE_ON_REQUEST: "Available on Request (confirm with customer)",
    AvailabilityStatus.OUT_OF_STOCK: "Out of Stock",
}


def format_price(amount: float) -> str:
    """Format an amount as e.g. 'KES 1,200' or 'KES 62.5'."""
    if float(amount).is_integer():
        return f"{CURRENCY} {int(amount):,}"
    return f"{CURRENCY} {amount:,.2f}".rstrip("0")


class ProductCatalog:
    """Catalog reads backed by the product table."""

    def __init__(self, database: DatabaseManager):
        self.database = database

    def active_products(self) -> List[Product]:
        return self.database.get_active_products()

    def get_product(self, product_id: str) -> Optional[Product]:
        """Return the product if it exists and is active."""
        product = self.database.get_product(product_id)
        if product is None or not product.is_active:
            return None
        return product

    def format_product_catalog(self, products: Optional[Sequence[Product]] = None) -> str:
        """
        Render products grouped by category for the assistant context.

        Args:
            products: Products to render; defaults to every active product

        Returns:
            Multi-line catalog text
        """
        if products is None:
            products = self.active_products()
        if not products:
            return "No products available at the moment."

        grouped: Dict[str, List[Product]] = OrderedDict()
        for product in products:
            grouped.setdefault(product.category.value, []).append(product)

        sections = []
        for category, members in grouped.items():
            lines = [f"## {category.upper()}", ""]
            for product in members:
                lines.append(f"### {product.display_name}")
                lines.append(f"- Price: {format_price(product.base_price)} {product.unit}")
                if product.description:
                    lines.append(f"- Description: {product.description}")
                lines.append(f"- Availability: {AVAILABILITY_LABELS[product.availability]}")
                if product.availability_notes:
                    lines.append(f"- Note: {product.availability_notes}")
                lines.append(f"- Product ID: {product.product_id}")
                lines.append("")
            sections.append("\n".join(lines))
        return "\n".join(sections).rstrip() + "\n"

    def select_product_images(
        self,
        product_ids: Sequence[str],
        limit: int = MAX_PRODUCT_IMAGES
    ) -> List[ProductImage]:
        """
        Pick image references for a show-products action.

        Unknown, inactive or image-less products are skipped; duplicates are
        collapsed and at most `limit` references are returned.
        """
        unique_ids = list(OrderedDict.fromkeys(product_ids))
        images = []
        for product in self.database.get_products_by_ids(unique_ids):
            if not product.is_active or not product.image_url:
                continue
            images.append(ProductImage(
                product_id=product.product_id,
                name=product.display_name,
                image_url=product.image_url,
            ))
            if len(images) >= limit:
                break
        skipped = len(unique_ids) - len(images)
        if skipped > 0 and len(images) < limit:
            logger.debug("Skipped %d product(s) without a usable image", skipped)
        return images
