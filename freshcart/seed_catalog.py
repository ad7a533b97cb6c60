"""
Catalog Initialization Module.

Loads products and starter recommendation edges from a JSON file into the
SQLite database.
"""

import json
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import ValidationError

from freshcart.catalog import ProductCatalog, format_price
from freshcart.config import DATABASE_PATH, PRODUCTS_PATH, configure_logging
from freshcart.database import DatabaseManager
from freshcart.models import Product, RecommendationEdge

logger = logging.getLogger(__name__)


def load_products_from_file(
    file_path: Optional[str] = None
) -> Tuple[List[Product], List[RecommendationEdge]]:
    """
    Load products and recommendation edges from JSON file.

    Args:
        file_path: Path to products JSON file

    Returns:
        (validated products, validated edges); invalid entries are skipped
    """
    path = Path(file_path or PRODUCTS_PATH)

    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    products = []
    for item in data.get('products', []):
        try:
            products.append(Product(**item))
        except ValidationError as e:
            logger.warning("Skipping invalid product %s: %s", item.get('product_id', 'unknown'), e)

    edges = []
    for item in data.get('recommendations', []):
        try:
            edges.append(RecommendationEdge(**item))
        except ValidationError as e:
            logger.warning("Skipping invalid recommendation %r: %s", item, e)

    return products, edges


def initialize_catalog(
    products_path: Optional[str] = None,
    database: Optional[DatabaseManager] = None,
    force_reinitialize: bool = False
) -> DatabaseManager:
    """
    Initialize the catalog with products from file.

    Args:
        products_path: Path to products JSON file
        database: Target database; the configured default if omitted
        force_reinitialize: If True, clear the catalog and edges first

    Returns:
        The database that was seeded
    """
    database = database or DatabaseManager()

    current_count = database.get_product_count()
    if current_count > 0 and not force_reinitialize:
        logger.info(
            "Catalog already contains %d products. Use force_reinitialize=True to rebuild.",
            current_count,
        )
        return database

    if force_reinitialize:
        logger.info("Clearing existing catalog...")
        database.clear_catalog()

    products, edges = load_products_from_file(products_path)
    for product in products:
        database.upsert_product(product)
    known = {product.product_id for product in products}
    seeded_edges = 0
    for edge in edges:
        if edge.product_id in known and edge.recommended_id in known:
            database.upsert_edge(edge)
            seeded_edges += 1

    logger.info("Loaded %d products and %d recommendation edges", len(products), seeded_edges)
    return database


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Initialize product catalog")
    parser.add_argument(
        "--products",
        type=str,
        default=PRODUCTS_PATH,
        help="Path to products JSON file"
    )
    parser.add_argument(
        "--database",
        type=str,
        default=DATABASE_PATH,
        help="Path to SQLite database"
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Clear and reload the catalog"
    )
    parser.add_argument(
        "--show-catalog",
        action="store_true",
        help="Print the catalog after loading"
    )

    args = parser.parse_args()
    configure_logging()

    print("=" * 50)
    print("Initializing Product Catalog")
    print("=" * 50)

    db = initialize_catalog(
        products_path=args.products,
        database=DatabaseManager(args.database),
        force_reinitialize=args.force
    )

    print(f"\nCatalog contains {db.get_product_count()} products")

    if args.show_catalog:
        catalog = ProductCatalog(db)
        for product in catalog.active_products():
            print(f"  {product.product_id}: {product.display_name} - "
                  f"{format_price(product.base_price)} {product.unit}")
