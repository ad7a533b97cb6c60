"""
Order confirmation.

Turns a session cart into a persisted order, then runs the post-commit
steps: notification, stock decrement, recommendation update and cart reset.
A failure in any post-commit step is logged and never undoes the order.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from freshcart.catalog import format_price
from freshcart.config import (
    DELIVERY_HOUR,
    ORDER_NUMBER_MAX_ATTEMPTS,
    ORDER_NUMBER_PREFIX,
    SHOP_UTC_OFFSET_HOURS,
)
from freshcart.database import DatabaseManager
from freshcart.errors import EmptyCartError, MissingLocationError, OrderNumberExhaustedError
from freshcart.models import Order, OrderItem, OrderStatus, Session
from freshcart.recommendations import RecommendationGraph
from freshcart.session import SessionEvent, advance

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Receives confirmed orders, e.g. to alert the shop owner."""

    def send(self, order: Order) -> bool:
        ...


class LogNotifier:
    """Notifier that writes the order summary to the log."""

    def send(self, order: Order) -> bool:
        logger.info("New order %s\n%s", order.order_number, format_order_summary(order))
        return True


def format_order_summary(order: Order) -> str:
    lines = [f"Order {order.order_number} for {order.customer_id}"]
    for item in order.items:
        lines.append(
            f"- {item.product_name} x{item.quantity:g} @ {format_price(item.unit_price)}"
            f" = {format_price(item.subtotal)}"
        )
    lines.append(f"Items: {format_price(order.items_total)}")
    lines.append(f"Delivery to {order.delivery_location}: {format_price(order.delivery_fee)}")
    if order.delivery_date:
        lines.append(f"Delivery on: {format_delivery_date(order.delivery_date)}")
    lines.append(f"Total: {format_price(order.total_amount)}")
    return "\n".join(lines)


def next_delivery_date(
    when: datetime,
    hour: int = DELIVERY_HOUR,
    utc_offset_hours: int = SHOP_UTC_OFFSET_HOURS
) -> datetime:
    """Next shop-local day at the delivery hour, e.g. 10:00 EAT tomorrow."""
    shop_tz = timezone(timedelta(hours=utc_offset_hours))
    local = when.astimezone(shop_tz)
    tomorrow = local.date() + timedelta(days=1)
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day, hour, tzinfo=shop_tz)


def format_delivery_date(when: datetime) -> str:
    return f"{when.strftime('%A')} {when.day} {when.strftime('%B %Y')}, {when.strftime('%H:%M')}"


class CheckoutOrchestrator:
    """Validates a session and turns it into a confirmed order."""

    def __init__(
        self,
        database: DatabaseManager,
        recommendations: Optional[RecommendationGraph] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
        prefix: str = ORDER_NUMBER_PREFIX,
        max_attempts: int = ORDER_NUMBER_MAX_ATTEMPTS
    ):
        self.database = database
        self.recommendations = recommendations or RecommendationGraph(database)
        self.notifier = notifier or LogNotifier()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.prefix = prefix
        self.max_attempts = max_attempts

    def validate(self, session: Session) -> None:
        """
        Raises:
            EmptyCartError: nothing to order
            MissingLocationError: no delivery location recorded
        """
        if not session.cart:
            raise EmptyCartError()
        if not session.has_delivery_location:
            raise MissingLocationError()

    def order_number_prefix(self, when: datetime) -> str:
        return f"{self.prefix}-{when.strftime('%Y%m%d')}-"

    def next_order_number(self, when: Optional[datetime] = None) -> str:
        """
        First free number for the day, e.g. AFN-20240115-003.

        Starts after the day's existing orders and walks forward past
        numbers already taken.
        """
        day_prefix = self.order_number_prefix(when or self.clock())
        sequence = self.database.count_orders_with_prefix(day_prefix) + 1
        for _ in range(self.max_attempts):
            candidate = f"{day_prefix}{sequence:03d}"
            if not self.database.order_number_exists(candidate):
                return candidate
            sequence += 1
        raise OrderNumberExhaustedError(
            f"No free order number for {day_prefix} after {self.max_attempts} attempts"
        )

    def checkout(self, customer_id: str, session: Session) -> Order:
        """
        Confirm the session's cart as an order.

        Args:
            customer_id: Customer placing the order
            session: Their session; its cart is cleared on success

        Returns:
            The persisted order

        Raises:
            CheckoutValidationError: cart empty or location missing; nothing
                is written in that case
            OrderNumberExhaustedError: no order number could be allocated
        """
        self.validate(session)

        order = self._persist_order(customer_id, session)
        logger.info(
            "Order %s confirmed for %s: %s",
            order.order_number, customer_id, format_price(order.total_amount),
        )

        self._notify(order)
        self._decrement_stock(order)
        self._update_recommendations(order)

        session.cart = []
        advance(session, SessionEvent.ORDER_CONFIRMED)
        return order

    def _persist_order(self, customer_id: str, session: Session) -> Order:
        now = self.clock()
        items = [OrderItem.from_cart_line(line) for line in session.cart]

        for _ in range(self.max_attempts):
            order = Order(
                order_number=self.next_order_number(now),
                customer_id=customer_id,
                items=items,
                delivery_location=session.delivery_location,
                delivery_notes=session.delivery_notes,
                delivery_distance_km=session.delivery_distance_km,
                delivery_fee=session.delivery_fee or 0,
                delivery_zone=session.delivery_zone,
                delivery_fee_reason=session.delivery_fee_reason,
                delivery_date=next_delivery_date(now),
                status=OrderStatus.CONFIRMED,
                created_at=now,
                updated_at=now,
                confirmed_at=now,
            )
            try:
                self.database.create_order(order)
                return order
            except sqlite3.IntegrityError:
                # Another writer took the number between the check and the insert.
                logger.warning("Order number %s taken, retrying", order.order_number)

        raise OrderNumberExhaustedError(
            f"Could not store order for {customer_id} after {self.max_attempts} attempts"
        )

    def _notify(self, order: Order) -> None:
        try:
            delivered = self.notifier.send(order)
        except Exception:
            logger.exception("Notifier raised for order %s", order.order_number)
            delivered = False

        status = OrderStatus.NOTIFICATION_SENT if delivered else OrderStatus.NOTIFICATION_FAILED
        at = self.clock()
        try:
            self.database.update_order_status(order.order_id, status, at)
        except Exception:
            logger.exception("Could not record notification status for %s", order.order_number)
            return
        order.status = status
        order.updated_at = at
        if delivered:
            order.notified_at = at
        else:
            logger.warning("Notification failed for order %s", order.order_number)

    def _decrement_stock(self, order: Order) -> None:
        for item in order.items:
            try:
                self.database.decrement_stock(item.product_id, item.quantity)
            except Exception:
                logger.exception(
                    "Stock decrement failed for %s in order %s",
                    item.product_id, order.order_number,
                )

    def _update_recommendations(self, order: Order) -> None:
        try:
            self.recommendations.update_from_order(order.product_ids)
        except Exception:
            logger.exception("Recommendation update failed for order %s", order.order_number)
