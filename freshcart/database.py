"""
Database module for catalog, session, order and recommendation persistence.

Provides SQL database schema, connection management, and CRUD operations
using SQLite with parameterized queries. Every public method opens its own
connection; a method body is one transaction.
"""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple
from contextlib import contextmanager

from freshcart.config import DATABASE_PATH
from freshcart.models import (
    AvailabilityStatus,
    DeliveryZone,
    FeeReason,
    Order,
    OrderItem,
    OrderStatus,
    Product,
    RecommendationEdge,
    Session,
)


class DatabaseManager:
    """
    Manages SQLite database connections and operations for the commerce core.

    Uses parameterized queries to prevent SQL injection and context managers
    for proper resource handling.
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize database manager with optional custom path.

        Args:
            db_path: Path to SQLite database file. Uses default if not provided.
        """
        self.db_path = Path(db_path or DATABASE_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_schema()

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self):
        """Create database tables if they don't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS products (
                    product_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    name_swahili TEXT,
                    category TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    base_price REAL NOT NULL CHECK(base_price > 0),
                    unit TEXT NOT NULL,
                    availability TEXT NOT NULL DEFAULT 'in_stock',
                    availability_notes TEXT,
                    stock_quantity REAL CHECK(stock_quantity IS NULL OR stock_quantity >= 0),
                    is_active INTEGER NOT NULL DEFAULT 1,
                    display_order INTEGER NOT NULL DEFAULT 0,
                    image_url TEXT
                )
            """)

            # One row per customer; state is the JSON-encoded Session
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    customer_id TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    order_id TEXT PRIMARY KEY,
                    order_number TEXT NOT NULL UNIQUE,
                    customer_id TEXT NOT NULL,
                    delivery_location TEXT NOT NULL,
                    delivery_notes TEXT,
                    delivery_distance_km REAL,
                    delivery_fee REAL NOT NULL DEFAULT 0,
                    delivery_zone TEXT,
                    delivery_fee_reason TEXT,
                    items_total REAL NOT NULL,
                    total_amount REAL NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    delivery_date TEXT,
                    confirmed_at TEXT,
                    notified_at TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS order_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    order_id TEXT NOT NULL,
                    product_id TEXT NOT NULL,
                    product_name TEXT NOT NULL,
                    quantity REAL NOT NULL CHECK(quantity > 0),
                    unit_price REAL NOT NULL CHECK(unit_price > 0),
                    unit TEXT NOT NULL,
                    subtotal REAL NOT NULL,
                    notes TEXT,
                    FOREIGN KEY (order_id) REFERENCES orders(order_id)
                        ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS recommendation_edges (
                    product_id TEXT NOT NULL,
                    recommended_id TEXT NOT NULL,
                    strength REAL NOT NULL CHECK(strength >= 0),
                    PRIMARY KEY (product_id, recommended_id),
                    CHECK(product_id <> recommended_id)
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_orders_customer
                ON orders(customer_id)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_order_items_order_id
                ON order_items(order_id)
            """)

            # Databases created before orders carried a delivery date
            columns = {row['name'] for row in cursor.execute("PRAGMA table_info(orders)")}
            if 'delivery_date' not in columns:
                cursor.execute("ALTER TABLE orders ADD COLUMN delivery_date TEXT")

    # =========================================================================
    # Products
    # =========================================================================

    def upsert_product(self, product: Product) -> str:
        """
        Insert a product or replace the stored copy.

        Args:
            product: Validated Product to save

        Returns:
            The product_id
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO products (
                    product_id, name, name_swahili, category, description,
                    base_price, unit, availability, availability_notes,
                    stock_quantity, is_active, display_order, image_url
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(product_id) DO UPDATE SET
                    name = excluded.name,
                    name_swahili = excluded.name_swahili,
                    category = excluded.category,
                    description = excluded.description,
                    base_price = excluded.base_price,
                    unit = excluded.unit,
                    availability = excluded.availability,
                    availability_notes = excluded.availability_notes,
                    stock_quantity = excluded.stock_quantity,
                    is_active = excluded.is_active,
                    display_order = excluded.display_order,
                    image_url = excluded.image_url
            """, (
                product.product_id,
                product.name,
                product.name_swahili,
                product.category.value,
                product.description,
                product.base_price,
                product.unit,
                product.availability.value,
                product.availability_notes,
                product.stock_quantity,
                int(product.is_active),
                product.display_order,
                product.image_url,
            ))
        return product.product_id

    def get_product(self, product_id: str) -> Optional[Product]:
        """Retrieve a product by ID, active or not."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM products WHERE product_id = ?", (product_id,)
            ).fetchone()
        return self._row_to_product(row) if row else None

    def get_active_products(self) -> List[Product]:
        """Retrieve all active products in display order."""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM products WHERE is_active = 1
                ORDER BY display_order, name
            """).fetchall()
        return [self._row_to_product(row) for row in rows]

    def get_products_by_ids(self, product_ids: Sequence[str]) -> List[Product]:
        """Retrieve the given products, in the order requested."""
        if not product_ids:
            return []
        placeholders = ", ".join("?" for _ in product_ids)
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM products WHERE product_id IN ({placeholders})",
                tuple(product_ids),
            ).fetchall()
        by_id = {row['product_id']: self._row_to_product(row) for row in rows}
        return [by_id[pid] for pid in product_ids if pid in by_id]

    def decrement_stock(self, product_id: str, quantity: float) -> Optional[Product]:
        """
        Reduce a product's stock counter, flooring at zero.

        Products without a counter have unlimited stock and are left alone.
        A counter that reaches zero flips the product to out of stock.

        Returns:
            The updated product, or None if it does not exist
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM products WHERE product_id = ?", (product_id,)
            ).fetchone()
            if row is None:
                return None
            if row['stock_quantity'] is None:
                return self._row_to_product(row)

            remaining = max(0.0, row['stock_quantity'] - quantity)
            availability = row['availability']
            if remaining == 0:
                availability = AvailabilityStatus.OUT_OF_STOCK.value

            conn.execute("""
                UPDATE products SET stock_quantity = ?, availability = ?
                WHERE product_id = ?
            """, (remaining, availability, product_id))
            row = conn.execute(
                "SELECT * FROM products WHERE product_id = ?", (product_id,)
            ).fetchone()
        return self._row_to_product(row)

    def get_product_count(self) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM products").fetchone()[0]

    def clear_catalog(self):
        """Remove all products and recommendation edges."""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM recommendation_edges")
            conn.execute("DELETE FROM products")

    # =========================================================================
    # Sessions
    # =========================================================================

    def get_session(self, customer_id: str) -> Optional[Tuple[Session, datetime]]:
        """
        Load the stored session for a customer.

        Returns:
            (session, expires_at) if a record exists, None otherwise
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT state, expires_at FROM sessions WHERE customer_id = ?",
                (customer_id,),
            ).fetchone()
        if row is None:
            return None
        session = Session.model_validate_json(row['state'])
        return session, datetime.fromisoformat(row['expires_at'])

    def save_session(self, session: Session, expires_at: datetime) -> None:
        """Create or replace the session record for its customer."""
        now = datetime.now(timezone.utc).isoformat()
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO sessions (customer_id, state, expires_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(customer_id) DO UPDATE SET
                    state = excluded.state,
                    expires_at = excluded.expires_at,
                    updated_at = excluded.updated_at
            """, (
                session.customer_id,
                session.model_dump_json(),
                expires_at.isoformat(),
                now,
            ))

    def delete_session(self, customer_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM sessions WHERE customer_id = ?", (customer_id,)
            )
            return cursor.rowcount > 0

    # =========================================================================
    # Orders
    # =========================================================================

    def create_order(self, order: Order) -> str:
        """
        Persist a new order and its items in one transaction.

        Args:
            order: Validated Order object to save

        Returns:
            The order_id of the created order

        Raises:
            sqlite3.IntegrityError: If order_id or order_number already exists
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                INSERT INTO orders (
                    order_id, order_number, customer_id, delivery_location,
                    delivery_notes, delivery_distance_km, delivery_fee,
                    delivery_zone, delivery_fee_reason, items_total,
                    total_amount, status, created_at, updated_at,
                    delivery_date, confirmed_at, notified_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                order.order_id,
                order.order_number,
                order.customer_id,
                order.delivery_location,
                order.delivery_notes,
                order.delivery_distance_km,
                order.delivery_fee,
                order.delivery_zone.value if order.delivery_zone else None,
                order.delivery_fee_reason.value if order.delivery_fee_reason else None,
                order.items_total,
                order.total_amount,
                order.status.value,
                order.created_at.isoformat(),
                order.updated_at.isoformat(),
                order.delivery_date.isoformat() if order.delivery_date else None,
                order.confirmed_at.isoformat() if order.confirmed_at else None,
                order.notified_at.isoformat() if order.notified_at else None,
            ))

            for item in order.items:
                cursor.execute("""
                    INSERT INTO order_items (
                        order_id, product_id, product_name, quantity,
                        unit_price, unit, subtotal, notes
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    order.order_id,
                    item.product_id,
                    item.product_name,
                    item.quantity,
                    item.unit_price,
                    item.unit,
                    item.subtotal,
                    item.notes,
                ))

        return order.order_id

    def order_number_exists(self, order_number: str) -> bool:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM orders WHERE order_number = ?", (order_number,)
            ).fetchone()
        return row is not None

    def count_orders_with_prefix(self, prefix: str) -> int:
        """Count orders whose number starts with the given prefix."""
        with self._get_connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM orders WHERE order_number LIKE ?",
                (prefix + "%",),
            ).fetchone()[0]

    def get_order_by_id(self, order_id: str) -> Optional[Order]:
        """
        Retrieve an order by its ID.

        Args:
            order_id: Unique order identifier

        Returns:
            Order object if found, None otherwise
        """
        return self._fetch_one_order("SELECT * FROM orders WHERE order_id = ?", (order_id,))

    def get_order_by_number(self, order_number: str) -> Optional[Order]:
        return self._fetch_one_order(
            "SELECT * FROM orders WHERE order_number = ?", (order_number,)
        )

    def get_orders_for_customer(self, customer_id: str) -> List[Order]:
        """Retrieve a customer's orders, newest first."""
        return self._fetch_orders("""
            SELECT * FROM orders WHERE customer_id = ?
            ORDER BY created_at DESC
        """, (customer_id,))

    def get_all_orders(self, limit: int = 100) -> List[Order]:
        """
        Retrieve all orders with optional limit.

        Args:
            limit: Maximum number of orders to return

        Returns:
            List of Order objects
        """
        return self._fetch_orders(
            "SELECT * FROM orders ORDER BY created_at DESC LIMIT ?", (limit,)
        )

    def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        at: Optional[datetime] = None
    ) -> bool:
        """
        Update the status of an existing order.

        Confirmation and notification statuses also stamp their timestamp.

        Returns:
            True if order was updated, False if not found
        """
        at = at or datetime.now(timezone.utc)
        stamp_column = {
            OrderStatus.CONFIRMED: "confirmed_at",
            OrderStatus.NOTIFICATION_SENT: "notified_at",
        }.get(status)

        with self._get_connection() as conn:
            if stamp_column:
                cursor = conn.execute(f"""
                    UPDATE orders SET status = ?, updated_at = ?, {stamp_column} = ?
                    WHERE order_id = ?
                """, (status.value, at.isoformat(), at.isoformat(), order_id))
            else:
                cursor = conn.execute("""
                    UPDATE orders SET status = ?, updated_at = ?
                    WHERE order_id = ?
                """, (status.value, at.isoformat(), order_id))
            return cursor.rowcount > 0

    def get_order_count(self) -> int:
        """Get total number of orders in database."""
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM orders").fetchone()[0]

    def _fetch_one_order(self, query: str, params: tuple) -> Optional[Order]:
        orders = self._fetch_orders(query, params)
        return orders[0] if orders else None

    def _fetch_orders(self, query: str, params: tuple) -> List[Order]:
        with self._get_connection() as conn:
            order_rows = conn.execute(query, params).fetchall()
            orders = []
            for order_row in order_rows:
                item_rows = conn.execute("""
                    SELECT * FROM order_items WHERE order_id = ? ORDER BY id
                """, (order_row['order_id'],)).fetchall()
                orders.append(self._row_to_order(order_row, item_rows))
            return orders

    # =========================================================================
    # Recommendation edges
    # =========================================================================

    def get_edges_from(self, product_ids: Iterable[str]) -> List[RecommendationEdge]:
        """Retrieve every edge whose source is one of the given products."""
        product_ids = list(product_ids)
        if not product_ids:
            return []
        placeholders = ", ".join("?" for _ in product_ids)
        with self._get_connection() as conn:
            rows = conn.execute(f"""
                SELECT product_id, recommended_id, strength
                FROM recommendation_edges
                WHERE product_id IN ({placeholders})
            """, tuple(product_ids)).fetchall()
        return [RecommendationEdge(**dict(row)) for row in rows]

    def get_edge(self, product_id: str, recommended_id: str) -> Optional[RecommendationEdge]:
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT product_id, recommended_id, strength
                FROM recommendation_edges
                WHERE product_id = ? AND recommended_id = ?
            """, (product_id, recommended_id)).fetchone()
        return RecommendationEdge(**dict(row)) if row else None

    def upsert_edge(self, edge: RecommendationEdge) -> None:
        """Write an edge with an explicit strength (used for seeding)."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO recommendation_edges (product_id, recommended_id, strength)
                VALUES (?, ?, ?)
                ON CONFLICT(product_id, recommended_id) DO UPDATE SET
                    strength = excluded.strength
            """, (edge.product_id, edge.recommended_id, edge.strength))

    def increment_edges(
        self,
        pairs: Iterable[Tuple[str, str]],
        increment: float,
        initial_strength: float
    ) -> int:
        """
        Increment directed edges in one transaction.

        Missing edges are created at initial_strength instead.

        Returns:
            Number of edges written
        """
        written = 0
        with self._get_connection() as conn:
            for product_id, recommended_id in pairs:
                conn.execute("""
                    INSERT INTO recommendation_edges (product_id, recommended_id, strength)
                    VALUES (?, ?, ?)
                    ON CONFLICT(product_id, recommended_id) DO UPDATE SET
                        strength = strength + ?
                """, (product_id, recommended_id, initial_strength, increment))
                written += 1
        return written

    def get_popular_product_ids(self, limit: int = 5) -> List[str]:
        """Products ranked by the summed strength of edges pointing at them."""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT recommended_id, SUM(strength) AS total
                FROM recommendation_edges
                GROUP BY recommended_id
                ORDER BY total DESC, recommended_id
                LIMIT ?
            """, (limit,)).fetchall()
        return [row['recommended_id'] for row in rows]

    # =========================================================================
    # Row mapping
    # =========================================================================

    def _row_to_product(self, row: sqlite3.Row) -> Product:
        return Product(
            product_id=row['product_id'],
            name=row['name'],
            name_swahili=row['name_swahili'],
            category=row['category'],
            description=row['description'],
            base_price=row['base_price'],
            unit=row['unit'],
            availability=AvailabilityStatus(row['availability']),
            availability_notes=row['availability_notes'],
            stock_quantity=row['stock_quantity'],
            is_active=bool(row['is_active']),
            display_order=row['display_order'],
            image_url=row['image_url'],
        )

    def _row_to_order(self, order_row: sqlite3.Row, item_rows: List[sqlite3.Row]) -> Order:
        """Convert database rows to Order object."""
        items = [
            OrderItem(
                product_id=row['product_id'],
                product_name=row['product_name'],
                quantity=row['quantity'],
                unit_price=row['unit_price'],
                unit=row['unit'],
                notes=row['notes'],
            )
            for row in item_rows
        ]

        def _dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return Order(
            order_id=order_row['order_id'],
            order_number=order_row['order_number'],
            customer_id=order_row['customer_id'],
            items=items,
            delivery_location=order_row['delivery_location'],
            delivery_notes=order_row['delivery_notes'],
            delivery_distance_km=order_row['delivery_distance_km'],
            delivery_fee=order_row['delivery_fee'],
            delivery_zone=DeliveryZone(order_row['delivery_zone']) if order_row['delivery_zone'] else None,
            delivery_fee_reason=(
                FeeReason(order_row['delivery_fee_reason'])
                if order_row['delivery_fee_reason'] else None
            ),
            status=OrderStatus(order_row['status']),
            created_at=_dt(order_row['created_at']),
            updated_at=_dt(order_row['updated_at']),
            delivery_date=_dt(order_row['delivery_date']),
            confirmed_at=_dt(order_row['confirmed_at']),
            notified_at=_dt(order_row['notified_at']),
        )


def get_database() -> DatabaseManager:
    """Get the default database manager instance."""
    return DatabaseManager()
