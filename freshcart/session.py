"""
Per-customer session storage and the session state machine.

Every step change goes through `transition(step, event)`, whose table
covers every (step, event) pair. Cart and delivery mutations live on
`SessionStateMachine`; persistence, expiry and per-customer serialization
live on `SessionStore`.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from freshcart.catalog import ProductCatalog
from freshcart.config import (
    CONVERSATION_TIMEOUT_MINUTES,
    MAX_CART_LINES,
    MAX_MESSAGE_HISTORY,
    MAX_QUANTITY_PER_LINE,
)
from freshcart.database import DatabaseManager
from freshcart.delivery import DeliveryQuoteEngine, classify_cart_lines
from freshcart.errors import CartLimitError, CommerceError, ProductNotFoundError
from freshcart.models import (
    AddToCartAction,
    CartLine,
    ChatMessage,
    ClearCartAction,
    ConfirmOrderAction,
    ConversationStep,
    DeliveryQuote,
    Order,
    ProductImage,
    RemoveFromCartAction,
    RequestLocationAction,
    Session,
    ShowProductsAction,
    ViewCartAction,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Transition table
# =============================================================================

class SessionEvent(str, Enum):
    MESSAGE_RECEIVED = "message_received"
    CART_VIEWED = "cart_viewed"
    CART_CHANGED = "cart_changed"
    LOCATION_REQUESTED = "location_requested"
    QUOTE_RESOLVED = "quote_resolved"
    LOCATION_NOT_FOUND = "location_not_found"
    ORDER_CONFIRMED = "order_confirmed"
    SESSION_EXPIRED = "session_expired"


def _build_transitions() -> Dict[Tuple[ConversationStep, SessionEvent], ConversationStep]:
    S, E = ConversationStep, SessionEvent
    # Every pair starts as "stay"; the rules below override.
    table = {(step, event): step for step in S for event in E}

    for step in (S.GREETING, S.ORDER_PLACED):
        table[(step, E.MESSAGE_RECEIVED)] = S.BROWSING
    for step in (S.GREETING, S.BROWSING, S.ORDER_PLACED):
        table[(step, E.CART_VIEWED)] = S.CART_MANAGEMENT
    for step in S:
        if step != S.REQUESTING_LOCATION:
            table[(step, E.CART_CHANGED)] = S.CART_MANAGEMENT
        table[(step, E.LOCATION_REQUESTED)] = S.REQUESTING_LOCATION
        table[(step, E.ORDER_CONFIRMED)] = S.ORDER_PLACED
        table[(step, E.SESSION_EXPIRED)] = S.GREETING
    table[(S.REQUESTING_LOCATION, E.QUOTE_RESOLVED)] = S.CONFIRMING_ORDER
    return table


TRANSITIONS = _build_transitions()


def transition(step: ConversationStep, event: SessionEvent) -> ConversationStep:
    """Next step for an event; unlisted combinations keep the current step."""
    return TRANSITIONS[(step, event)]


def advance(session: Session, event: SessionEvent) -> ConversationStep:
    """Apply an event to a session's step and return the new step."""
    new_step = transition(session.step, event)
    if new_step != session.step:
        logger.debug(
            "Session %s: %s --%s--> %s",
            session.customer_id, session.step.value, event.value, new_step.value,
        )
        session.step = new_step
    return new_step


# =============================================================================
# Storage
# =============================================================================

class _CustomerLock:
    """A lock plus the number of threads holding or waiting for it."""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class SessionStore:
    """
    Loads and saves sessions, enforcing the inactivity timeout.

    Callers that read-modify-write a session hold `locked(customer_id)` for
    the whole cycle so concurrent messages from one customer serialize.
    Locks are per process and dropped once nobody holds or waits for them.
    """

    def __init__(
        self,
        database: DatabaseManager,
        timeout_minutes: int = CONVERSATION_TIMEOUT_MINUTES,
        max_history: int = MAX_MESSAGE_HISTORY,
        clock: Optional[Clock] = None
    ):
        self.database = database
        self.timeout = timedelta(minutes=timeout_minutes)
        self.max_history = max_history
        self.clock = clock or _utcnow
        self._locks: Dict[str, _CustomerLock] = {}
        self._registry_lock = threading.Lock()

    @property
    def active_locks(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    @contextmanager
    def locked(self, customer_id: str):
        """Serialize session work for one customer."""
        with self._registry_lock:
            entry = self._locks.get(customer_id)
            if entry is None:
                entry = self._locks[customer_id] = _CustomerLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._registry_lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[customer_id]

    def load(self, customer_id: str) -> Session:
        """
        Return the customer's live session, or a fresh default one.

        An expired record is deleted and never reused.
        """
        record = self.database.get_session(customer_id)
        if record is None:
            return Session(customer_id=customer_id)

        session, expires_at = record
        if self.clock() >= expires_at:
            logger.info("Session for %s expired, starting fresh", customer_id)
            self.database.delete_session(customer_id)
            fresh = Session(customer_id=customer_id, step=session.step)
            advance(fresh, SessionEvent.SESSION_EXPIRED)
            return fresh
        return session

    def save(self, session: Session) -> datetime:
        """Persist the session and push its expiry forward."""
        expires_at = self.clock() + self.timeout
        self.database.save_session(session, expires_at)
        return expires_at

    def reset(self, customer_id: str) -> None:
        self.database.delete_session(customer_id)

    def append_history(self, session: Session, user_text: str, assistant_text: str) -> None:
        """Record one exchange, keeping only the most recent messages."""
        now = self.clock()
        if user_text:
            session.history.append(ChatMessage(role="user", content=user_text, timestamp=now))
        if assistant_text:
            session.history.append(ChatMessage(role="assistant", content=assistant_text, timestamp=now))
        if len(session.history) > self.max_history:
            session.history = session.history[-self.max_history:]


# =============================================================================
# State machine
# =============================================================================

class ActionOutcome(BaseModel):
    """What applying one batch of assistant actions produced."""
    applied: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    images: List[ProductImage] = Field(default_factory=list)
    order: Optional[Order] = None
    cart_viewed: bool = False


class SessionStateMachine:
    """Applies cart, delivery and step changes to a session."""

    def __init__(
        self,
        catalog: ProductCatalog,
        quote_engine: DeliveryQuoteEngine,
        checkout=None,
        max_cart_lines: int = MAX_CART_LINES,
        max_quantity_per_line: float = MAX_QUANTITY_PER_LINE
    ):
        self.catalog = catalog
        self.quote_engine = quote_engine
        self.checkout = checkout
        self.max_cart_lines = max_cart_lines
        self.max_quantity_per_line = max_quantity_per_line

    # -- cart ---------------------------------------------------------------

    def add_to_cart(
        self,
        session: Session,
        product_id: str,
        quantity: float,
        notes: Optional[str] = None
    ) -> CartLine:
        """
        Add a product, merging into its existing line if there is one.

        Raises:
            ProductNotFoundError: product missing or inactive
            CartLimitError: line or quantity caps would be exceeded
        """
        if quantity <= 0:
            raise CartLimitError("Quantity must be positive")

        product = self.catalog.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)

        line = session.find_line(product_id)
        if line is not None:
            merged = line.quantity + quantity
            if merged > self.max_quantity_per_line:
                raise CartLimitError(
                    f"{product.name}: at most {self.max_quantity_per_line:g} per order"
                )
            line.quantity = merged
            if notes:
                line.notes = notes
        else:
            if len(session.cart) >= self.max_cart_lines:
                raise CartLimitError(f"Cart is limited to {self.max_cart_lines} products")
            if quantity > self.max_quantity_per_line:
                raise CartLimitError(
                    f"{product.name}: at most {self.max_quantity_per_line:g} per order"
                )
            line = CartLine(
                product_id=product.product_id,
                product_name=product.display_name,
                category=product.category,
                quantity=quantity,
                unit_price=product.base_price,
                unit=product.unit,
                notes=notes,
            )
            session.cart.append(line)

        logger.info(
            "Cart %s: %s x%g (line total %.2f)",
            session.customer_id, product_id, line.quantity, line.line_total,
        )
        self._cart_changed(session)
        return line

    def remove_from_cart(self, session: Session, product_id: str) -> bool:
        """Remove a product's line; returns False if it was not in the cart."""
        before = len(session.cart)
        session.cart = [line for line in session.cart if line.product_id != product_id]
        removed = len(session.cart) < before
        if removed:
            self._cart_changed(session)
        return removed

    def clear_cart(self, session: Session) -> None:
        session.cart = []
        self._cart_changed(session)

    def _cart_changed(self, session: Session) -> None:
        advance(session, SessionEvent.CART_CHANGED)
        self.refresh_delivery_quote(session)

    # -- delivery -----------------------------------------------------------

    def request_location(self, session: Session) -> None:
        advance(session, SessionEvent.LOCATION_REQUESTED)

    def apply_quote(self, session: Session, quote: DeliveryQuote) -> None:
        """Snapshot a quote into the session and advance past location entry."""
        session.delivery_location = quote.location_name
        session.delivery_distance_km = quote.distance_km
        session.delivery_fee = quote.fee
        session.delivery_fee_reason = quote.fee_reason
        session.delivery_zone = quote.zone
        advance(session, SessionEvent.QUOTE_RESOLVED)

    def location_not_found(self, session: Session) -> None:
        advance(session, SessionEvent.LOCATION_NOT_FOUND)

    def refresh_delivery_quote(self, session: Session) -> Optional[DeliveryQuote]:
        """Re-price the stored delivery snapshot against the current cart."""
        if session.delivery_distance_km is None:
            return None
        quote = self.quote_engine.quote(
            session.delivery_distance_km,
            classify_cart_lines(session.cart),
            location_name=session.delivery_location or "Customer location",
        )
        session.delivery_fee = quote.fee
        session.delivery_fee_reason = quote.fee_reason
        session.delivery_zone = quote.zone
        return quote

    def current_quote(self, session: Session) -> Optional[DeliveryQuote]:
        """Rebuild the quote implied by the session's delivery snapshot."""
        if session.delivery_distance_km is None or not session.has_delivery_location:
            return None
        return self.quote_engine.quote(
            session.delivery_distance_km,
            classify_cart_lines(session.cart),
            location_name=session.delivery_location,
        )

    # -- turn helpers ---------------------------------------------------------

    def on_message(self, session: Session) -> None:
        advance(session, SessionEvent.MESSAGE_RECEIVED)

    def apply_actions(self, session: Session, actions: Sequence) -> ActionOutcome:
        """
        Apply a batch of assistant actions in order.

        Each action is isolated: a failure is logged and recorded, and the
        remaining actions still run.
        """
        outcome = ActionOutcome()
        for action in actions:
            try:
                self._apply(session, action, outcome)
                outcome.applied.append(action.type)
            except CommerceError as e:
                logger.warning(
                    "Action %s rejected for %s: %s", action.type, session.customer_id, e
                )
                outcome.failed.append(action.type)
            except Exception:
                logger.exception(
                    "Action %s failed for %s", action.type, session.customer_id
                )
                outcome.failed.append(action.type)
        return outcome

    def _apply(self, session: Session, action, outcome: ActionOutcome) -> None:
        if isinstance(action, AddToCartAction):
            self.add_to_cart(session, action.product_id, action.quantity, action.notes)
        elif isinstance(action, RemoveFromCartAction):
            self.remove_from_cart(session, action.product_id)
        elif isinstance(action, ClearCartAction):
            self.clear_cart(session)
        elif isinstance(action, RequestLocationAction):
            self.request_location(session)
        elif isinstance(action, ConfirmOrderAction):
            if self.checkout is None:
                raise RuntimeError("No checkout configured")
            outcome.order = self.checkout.checkout(session.customer_id, session)
        elif isinstance(action, ShowProductsAction):
            outcome.images = self.catalog.select_product_images(action.product_ids)
        elif isinstance(action, ViewCartAction):
            outcome.cart_viewed = True
            advance(session, SessionEvent.CART_VIEWED)
        else:
            raise TypeError(f"Unknown action {action!r}")
