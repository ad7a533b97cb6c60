"""
Session storage, transitions and cart actions.
"""

import threading
from unittest.mock import Mock

import pytest

from freshcart.delivery import classify_cart_lines
from freshcart.errors import CartLimitError, EmptyCartError, ProductNotFoundError
from freshcart.models import (
    AddToCartAction,
    ClearCartAction,
    ConfirmOrderAction,
    ConversationStep,
    DeliveryZone,
    FeeReason,
    RemoveFromCartAction,
    RequestLocationAction,
    Session,
    ShowProductsAction,
    ViewCartAction,
)
from freshcart.session import (
    TRANSITIONS,
    SessionEvent,
    SessionStateMachine,
    SessionStore,
    transition,
)

S = ConversationStep


@pytest.fixture
def machine(catalog, quote_engine):
    return SessionStateMachine(catalog, quote_engine)


@pytest.fixture
def store(test_database, clock):
    return SessionStore(test_database, timeout_minutes=30, max_history=4, clock=clock)


class TestTransitions:

    def test_table_covers_every_pair(self):
        assert len(TRANSITIONS) == len(ConversationStep) * len(SessionEvent)

    def test_quote_only_advances_from_requesting_location(self):
        assert transition(S.REQUESTING_LOCATION, SessionEvent.QUOTE_RESOLVED) == S.CONFIRMING_ORDER
        assert transition(S.BROWSING, SessionEvent.QUOTE_RESOLVED) == S.BROWSING

    def test_location_not_found_stays(self):
        assert transition(S.REQUESTING_LOCATION, SessionEvent.LOCATION_NOT_FOUND) == S.REQUESTING_LOCATION

    def test_cart_change_keeps_waiting_for_location(self):
        assert transition(S.REQUESTING_LOCATION, SessionEvent.CART_CHANGED) == S.REQUESTING_LOCATION
        assert transition(S.BROWSING, SessionEvent.CART_CHANGED) == S.CART_MANAGEMENT

    def test_new_message_after_order_resumes_browsing(self):
        assert transition(S.ORDER_PLACED, SessionEvent.MESSAGE_RECEIVED) == S.BROWSING
        assert transition(S.CART_MANAGEMENT, SessionEvent.MESSAGE_RECEIVED) == S.CART_MANAGEMENT


class TestSessionStore:

    def test_new_customer_gets_default_session(self, store):
        session = store.load("254700000001")
        assert session.step == S.GREETING
        assert session.cart == []

    def test_save_and_load(self, store):
        session = store.load("254700000001")
        session.step = S.BROWSING
        store.save(session)
        assert store.load("254700000001").step == S.BROWSING

    def test_expired_session_is_replaced(self, store, clock, test_database):
        session = store.load("254700000001")
        session.step = S.CART_MANAGEMENT
        session.delivery_location = "Kondele"
        store.save(session)

        clock.advance(minutes=31)
        fresh = store.load("254700000001")

        assert fresh.step == S.GREETING
        assert fresh.delivery_location is None
        assert test_database.get_session("254700000001") is None

    def test_activity_extends_expiry(self, store, clock):
        session = store.load("254700000001")
        session.step = S.BROWSING
        store.save(session)
        clock.advance(minutes=20)
        store.save(store.load("254700000001"))
        clock.advance(minutes=20)
        assert store.load("254700000001").step == S.BROWSING

    def test_history_is_bounded(self, store):
        session = store.load("254700000001")
        for i in range(5):
            store.append_history(session, f"question {i}", f"answer {i}")
        assert len(session.history) == 4
        assert session.history[0].content == "question 3"
        assert session.history[-1].content == "answer 4"

    def test_same_customer_waits_for_lock(self, store):
        acquired = threading.Event()

        def second_message():
            with store.locked("a"):
                acquired.set()

        with store.locked("a"):
            worker = threading.Thread(target=second_message)
            worker.start()
            assert not acquired.wait(0.2)
            with store.locked("b"):
                assert store.active_locks == 2
        worker.join(timeout=5)

        assert acquired.is_set()

    def test_released_locks_are_forgotten(self, store):
        for i in range(1000):
            customer_id = f"2547{i:08d}"
            with store.locked(customer_id):
                store.reset(customer_id)
        assert store.active_locks == 0

    def test_lock_released_when_turn_raises(self, store):
        with pytest.raises(RuntimeError):
            with store.locked("a"):
                raise RuntimeError("boom")
        assert store.active_locks == 0
        with store.locked("a"):
            pass


class TestCart:

    def test_repeated_add_merges_line(self, machine):
        session = Session(customer_id="c1")
        machine.add_to_cart(session, "FISH-001", 1.5)
        machine.add_to_cart(session, "FISH-001", 2)

        assert len(session.cart) == 1
        assert session.cart[0].quantity == 3.5
        assert session.cart[0].line_total == 3.5 * 600

    def test_merge_overwrites_notes_only_when_given(self, machine):
        session = Session(customer_id="c1")
        machine.add_to_cart(session, "FISH-001", 1, notes="cleaned")
        machine.add_to_cart(session, "FISH-001", 1)
        assert session.cart[0].notes == "cleaned"
        machine.add_to_cart(session, "FISH-001", 1, notes="fried")
        assert session.cart[0].notes == "fried"

    def test_unit_price_captured_at_add(self, machine, seeded_database):
        session = Session(customer_id="c1")
        machine.add_to_cart(session, "FISH-001", 1)
        product = seeded_database.get_product("FISH-001")
        seeded_database.upsert_product(product.model_copy(update={"base_price": 650}))
        machine.add_to_cart(session, "FISH-001", 1)
        assert session.cart[0].unit_price == 600

    def test_unknown_or_inactive_product(self, machine):
        session = Session(customer_id="c1")
        with pytest.raises(ProductNotFoundError):
            machine.add_to_cart(session, "NOPE", 1)
        with pytest.raises(ProductNotFoundError):
            machine.add_to_cart(session, "VEG-004", 1)
        assert session.cart == []

    def test_quantity_cap(self, machine):
        session = Session(customer_id="c1")
        machine.add_to_cart(session, "FISH-001", 8)
        with pytest.raises(CartLimitError):
            machine.add_to_cart(session, "FISH-001", 3)
        assert session.cart[0].quantity == 8

    def test_line_cap(self, catalog, quote_engine):
        machine = SessionStateMachine(catalog, quote_engine, max_cart_lines=2)
        session = Session(customer_id="c1")
        machine.add_to_cart(session, "FISH-001", 1)
        machine.add_to_cart(session, "FISH-002", 1)
        with pytest.raises(CartLimitError):
            machine.add_to_cart(session, "VEG-001", 1)

    def test_remove_absent_is_not_an_error(self, machine):
        session = Session(customer_id="c1")
        assert machine.remove_from_cart(session, "FISH-001") is False

    def test_cart_change_requotes_delivery(self, machine):
        session = Session(customer_id="c1", step=S.REQUESTING_LOCATION)
        machine.add_to_cart(session, "VEG-001", 2)
        machine.apply_quote(session, machine.quote_engine.quote(3, classify_cart_lines(session.cart)))
        assert session.delivery_fee == 250

        machine.add_to_cart(session, "FISH-001", 1)
        assert session.delivery_fee == 0
        assert session.delivery_fee_reason == FeeReason.FREE_ANCHOR
        assert session.delivery_zone == DeliveryZone.TOWN


class TestApplyActions:

    def test_failures_do_not_stop_the_batch(self, machine):
        session = Session(customer_id="c1")
        outcome = machine.apply_actions(session, [
            AddToCartAction(product_id="NOPE", quantity=1),
            AddToCartAction(product_id="FISH-001", quantity=2),
            RemoveFromCartAction(product_id="VEG-001"),
        ])

        assert outcome.failed == ["add_to_cart"]
        assert outcome.applied == ["add_to_cart", "remove_from_cart"]
        assert session.product_ids == ["FISH-001"]

    def test_request_location(self, machine):
        session = Session(customer_id="c1", step=S.CART_MANAGEMENT)
        machine.apply_actions(session, [RequestLocationAction()])
        assert session.step == S.REQUESTING_LOCATION

    def test_clear_cart(self, machine):
        session = Session(customer_id="c1")
        machine.add_to_cart(session, "FISH-001", 1)
        machine.apply_actions(session, [ClearCartAction()])
        assert session.cart == []

    def test_show_products_is_read_only(self, machine):
        session = Session(customer_id="c1", step=S.CART_MANAGEMENT)
        before = session.model_dump()

        outcome = machine.apply_actions(session, [ShowProductsAction(
            product_ids=["FISH-001", "VEG-004", "VEG-002", "FISH-001", "CHKN-001"]
        )])

        assert [image.product_id for image in outcome.images] == ["FISH-001", "CHKN-001"]
        assert session.model_dump() == before

    def test_view_cart(self, machine):
        session = Session(customer_id="c1", step=S.BROWSING)
        outcome = machine.apply_actions(session, [ViewCartAction()])
        assert outcome.cart_viewed
        assert session.step == S.CART_MANAGEMENT

    def test_confirm_delegates_to_checkout(self, catalog, quote_engine):
        checkout = Mock()
        checkout.checkout.side_effect = EmptyCartError()
        machine = SessionStateMachine(catalog, quote_engine, checkout=checkout)
        session = Session(customer_id="c1")

        outcome = machine.apply_actions(session, [ConfirmOrderAction(), ViewCartAction()])

        checkout.checkout.assert_called_once_with("c1", session)
        assert outcome.failed == ["confirm_order"]
        assert outcome.applied == ["view_cart"]
        assert outcome.order is None
