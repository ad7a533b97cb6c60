"""
Shared fixtures for the FreshCart test suite.
"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add package root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from freshcart.catalog import ProductCatalog
from freshcart.database import DatabaseManager
from freshcart.delivery import DeliveryQuoteEngine
from freshcart.models import AvailabilityStatus, Product, ProductCategory


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def make_product(product_id, name, category, price, **kwargs):
    return Product(
        product_id=product_id,
        name=name,
        category=category,
        base_price=price,
        **kwargs
    )


SAMPLE_PRODUCTS = [
    make_product("FISH-001", "Tilapia", ProductCategory.FISH, 600, unit="per kg",
                 image_url="https://example.com/tilapia.jpg", display_order=1),
    make_product("FISH-002", "Nile Perch", ProductCategory.FISH, 900, unit="per kg",
                 image_url="https://example.com/perch.jpg", display_order=2),
    make_product("CHKN-001", "Broiler Chicken", ProductCategory.CHICKEN, 700,
                 stock_quantity=5, image_url="https://example.com/broiler.jpg", display_order=10),
    make_product("VEG-001", "Sukuma Wiki", ProductCategory.VEGETABLES, 60, unit="per bunch",
                 image_url="https://example.com/sukuma.jpg", display_order=30),
    make_product("VEG-002", "Cabbage", ProductCategory.VEGETABLES, 100, display_order=31),
    make_product("VEG-003", "Tomatoes", ProductCategory.VEGETABLES, 120, unit="per kg",
                 availability=AvailabilityStatus.OUT_OF_STOCK, display_order=32),
    make_product("VEG-004", "Osuga", ProductCategory.VEGETABLES, 60, is_active=False,
                 image_url="https://example.com/osuga.jpg", display_order=33),
]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_database(tmp_path):
    """Create a temporary test database."""
    db_path = tmp_path / "test_freshcart.db"
    return DatabaseManager(str(db_path))


@pytest.fixture
def seeded_database(test_database):
    """Temporary database loaded with the sample catalog."""
    for product in SAMPLE_PRODUCTS:
        test_database.upsert_product(product)
    return test_database


@pytest.fixture
def catalog(seeded_database):
    return ProductCatalog(seeded_database)


@pytest.fixture
def quote_engine():
    return DeliveryQuoteEngine()
