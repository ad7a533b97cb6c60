"""
Test Scenarios for the FreshCart Chatbot

End-to-end conversation turns with a scripted language-understanding step:
1. Greeting moves the conversation into browsing
2. Location entry resolves, fails gracefully, or arrives as a GPS pin
3. Order confirmation and concurrent duplicate confirmations
4. Ignored, failing and duplicate inbound messages
5. Reply delivery through the WhatsApp sender
"""

import threading
from unittest.mock import Mock, patch

import pytest

from freshcart.assistant import ERROR_MESSAGE
from freshcart.chatbot import ConversationalCommerceChatbot
from freshcart.location import LocationResolver
from freshcart.models import (
    AssistantReply,
    ConfirmOrderAction,
    ConversationStep,
    InboundMessage,
    Intent,
    MessageKind,
    Session,
    ShowProductsAction,
)
from freshcart.transport import SendResult

CUSTOMER = "254700000001"


class ScriptedAssistant:
    """Returns canned replies and records every context it was given."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.contexts = []
        self._lock = threading.Lock()

    def respond(self, context):
        with self._lock:
            self.contexts.append(context)
            if len(self.replies) > 1:
                return self.replies.pop(0)
            return self.replies[0]


class FailingAssistant:
    def respond(self, context):
        raise RuntimeError("model exploded")


def _reply(message="Sawa!", actions=None, intent=Intent.INQUIRY):
    return AssistantReply(message=message, actions=actions or [], intent=intent)


@pytest.fixture
def make_bot(seeded_database, clock):
    def _make(assistant, sender=None):
        return ConversationalCommerceChatbot(
            database=seeded_database,
            assistant=assistant,
            resolver=LocationResolver(),
            sender=sender,
            notifier=Mock(**{"send.return_value": True}),
            clock=clock,
        )
    return _make


def _store_session(bot, step, items=(), location=None):
    session = Session(customer_id=CUSTOMER)
    for product_id, quantity in items:
        bot.state_machine.add_to_cart(session, product_id, quantity)
    if location:
        resolved = bot.resolver.resolve_text(location)
        bot.state_machine.apply_quote(session, bot.quote_engine.quote_for_cart(resolved, session.cart))
    session.step = step
    bot.sessions.save(session)
    return session


class TestConversationFlow:

    def test_greeting_moves_to_browsing(self, make_bot):
        assistant = ScriptedAssistant(_reply("Karibu FreshCart!", intent=Intent.GREETING))
        bot = make_bot(assistant)

        result = bot.handle_message(InboundMessage(sender=CUSTOMER, text="Hello"))

        assert result.reply == "Karibu FreshCart!"
        assert result.step == ConversationStep.BROWSING
        assert assistant.contexts[0].user_text == "Hello"
        assert "Tilapia" in assistant.contexts[0].product_catalog

        stored = bot.get_cart(CUSTOMER)
        assert [m.content for m in stored.history] == ["Hello", "Karibu FreshCart!"]

    def test_history_is_passed_to_next_turn(self, make_bot):
        assistant = ScriptedAssistant(_reply("First"), _reply("Second"))
        bot = make_bot(assistant)

        bot.chat(CUSTOMER, "hi")
        bot.chat(CUSTOMER, "what fish do you have?")

        assert [m.content for m in assistant.contexts[1].history] == ["hi", "First"]


class TestLocation:

    def test_known_place_resolves_and_quotes(self, make_bot):
        assistant = ScriptedAssistant(_reply("Delivery to Kondele is free."))
        bot = make_bot(assistant)
        _store_session(bot, ConversationStep.REQUESTING_LOCATION, items=[("FISH-001", 1)])

        result = bot.handle_message(InboundMessage(sender=CUSTOMER, text="Kondele"))

        assert result.step == ConversationStep.CONFIRMING_ORDER
        assert result.delivery_quote.distance_km == 3
        assert result.delivery_quote.fee == 0
        assert assistant.contexts[0].delivery_quote == result.delivery_quote

        stored = bot.get_cart(CUSTOMER)
        assert stored.delivery_location == "Kondele"
        assert stored.delivery_fee == 0

    def test_unknown_place_keeps_waiting(self, make_bot):
        assistant = ScriptedAssistant(_reply("Could you share a location pin?"))
        bot = make_bot(assistant)
        _store_session(bot, ConversationStep.REQUESTING_LOCATION, items=[("FISH-001", 1)])

        result = bot.handle_message(InboundMessage(sender=CUSTOMER, text="behind the mango tree"))

        assert result.location_not_found
        assert result.delivery_quote is None
        assert result.step == ConversationStep.REQUESTING_LOCATION
        assert assistant.contexts[0].unresolved_location == "behind the mango tree"
        assert bot.get_cart(CUSTOMER).delivery_location is None

    def test_place_names_outside_location_step_are_not_resolved(self, make_bot):
        assistant = ScriptedAssistant(_reply("We deliver to Kondele."))
        bot = make_bot(assistant)

        result = bot.handle_message(InboundMessage(sender=CUSTOMER, text="Do you deliver to Kondele?"))

        assert result.delivery_quote is None
        assert not result.location_not_found

    def test_gps_pin(self, make_bot):
        assistant = ScriptedAssistant(_reply("Got your pin."))
        bot = make_bot(assistant)
        _store_session(bot, ConversationStep.REQUESTING_LOCATION, items=[("VEG-001", 2)])

        reply = bot.share_location(CUSTOMER, -0.0917, 34.768, "Home")

        assert reply == "Got your pin."
        assert assistant.contexts[0].user_text == "[Shared location: Home]"
        stored = bot.get_cart(CUSTOMER)
        assert stored.step == ConversationStep.CONFIRMING_ORDER
        assert stored.delivery_location == "Home"
        assert stored.delivery_distance_km == 0


class TestOrdering:

    def test_confirm_creates_order(self, make_bot, seeded_database):
        assistant = ScriptedAssistant(_reply(
            "Asante! Your order is confirmed.",
            actions=[ConfirmOrderAction()],
            intent=Intent.ORDER_CONFIRMATION,
        ))
        bot = make_bot(assistant)
        _store_session(bot, ConversationStep.CONFIRMING_ORDER,
                       items=[("FISH-001", 2), ("VEG-001", 1)], location="Milimani")

        result = bot.handle_message(InboundMessage(sender=CUSTOMER, text="Yes, confirm"))

        assert result.order is not None
        assert "Order number: AFN-20240115-001" in result.reply
        assert result.reply.endswith("Delivery: Tuesday 16 January 2024, 10:00")
        assert result.step == ConversationStep.ORDER_PLACED
        assert result.order.total_amount == 2 * 600 + 60

        stored_order = seeded_database.get_order_by_number("AFN-20240115-001")
        assert stored_order.customer_id == CUSTOMER
        assert bot.get_cart(CUSTOMER).cart == []
        assert bot.get_recent_orders()[0].order_number == "AFN-20240115-001"

    def test_confirm_without_location_fails_softly(self, make_bot, seeded_database):
        assistant = ScriptedAssistant(_reply("Confirmed!", actions=[ConfirmOrderAction()]))
        bot = make_bot(assistant)
        _store_session(bot, ConversationStep.CART_MANAGEMENT, items=[("FISH-001", 1)])

        result = bot.handle_message(InboundMessage(sender=CUSTOMER, text="confirm"))

        assert result.order is None
        assert result.failed_actions == ["confirm_order"]
        assert seeded_database.get_order_count() == 0
        assert len(bot.get_cart(CUSTOMER).cart) == 1

    def test_cleared_cart_is_stored_even_if_turn_fails_after_order(self, make_bot,
                                                                   seeded_database):
        assistant = ScriptedAssistant(_reply("Confirmed!", actions=[ConfirmOrderAction()]))
        bot = make_bot(assistant)
        _store_session(bot, ConversationStep.CONFIRMING_ORDER,
                       items=[("FISH-001", 1)], location="Kondele")

        with patch.object(bot.sessions, "append_history", side_effect=RuntimeError("disk full")):
            result = bot.handle_message(InboundMessage(sender=CUSTOMER, text="yes"))
        assert result.reply == ERROR_MESSAGE

        bot.handle_message(InboundMessage(sender=CUSTOMER, text="yes"))

        stored, _ = seeded_database.get_session(CUSTOMER)
        assert stored.cart == []
        assert seeded_database.get_order_count() == 1

    def test_concurrent_confirmations_create_one_order(self, make_bot, seeded_database):
        assistant = ScriptedAssistant(_reply("Confirmed!", actions=[ConfirmOrderAction()]))
        bot = make_bot(assistant)
        _store_session(bot, ConversationStep.CONFIRMING_ORDER,
                       items=[("FISH-001", 1)], location="Kondele")

        results = []
        start = threading.Barrier(2)

        def confirm():
            start.wait()
            results.append(bot.handle_message(InboundMessage(sender=CUSTOMER, text="yes")))

        threads = [threading.Thread(target=confirm) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert seeded_database.get_order_count() == 1
        assert sorted(r.order is not None for r in results) == [False, True]


class TestInboundHandling:

    def test_other_messages_are_ignored(self, make_bot):
        assistant = ScriptedAssistant(_reply())
        bot = make_bot(assistant)

        assert bot.handle_message(InboundMessage(sender=CUSTOMER, kind=MessageKind.OTHER)) is None
        assert bot.handle_message(InboundMessage(sender=CUSTOMER, text="   ")) is None
        assert assistant.contexts == []

    def test_assistant_failure_leaves_session_untouched(self, make_bot, seeded_database):
        bot = make_bot(FailingAssistant())
        _store_session(bot, ConversationStep.CART_MANAGEMENT, items=[("FISH-001", 1)])
        before, _ = seeded_database.get_session(CUSTOMER)

        result = bot.handle_message(InboundMessage(sender=CUSTOMER, text="add chicken"))

        assert result.reply == ERROR_MESSAGE
        after, _ = seeded_database.get_session(CUSTOMER)
        assert after.model_dump() == before.model_dump()

    def test_duplicate_webhooks_processed_once(self, make_bot):
        assistant = ScriptedAssistant(_reply())
        bot = make_bot(assistant)
        payload = {
            "key": {"id": "3EB0DUP", "cleanedSenderPn": CUSTOMER},
            "messageBody": "Nataka tilapia",
        }

        assert bot.handle_webhook(payload) is not None
        assert bot.handle_webhook(payload) is None
        assert len(assistant.contexts) == 1

    def test_status_webhook_ignored(self, make_bot):
        assistant = ScriptedAssistant(_reply())
        bot = make_bot(assistant)
        assert bot.handle_webhook({"event": "message.status", "status": "read"}) is None


class TestDelivery:

    def test_reply_and_images_are_sent(self, make_bot):
        sender = Mock()
        sender.send_with_retry.return_value = SendResult(success=True, message_id="wamid-1")
        assistant = ScriptedAssistant(_reply(
            "Here is our tilapia.",
            actions=[ShowProductsAction(product_ids=["FISH-001", "VEG-002"])],
        ))
        bot = make_bot(assistant, sender=sender)

        result = bot.handle_message(InboundMessage(sender=CUSTOMER, text="show me tilapia"))

        assert result.delivered is True
        sender.send_with_retry.assert_called_once_with(CUSTOMER, "Here is our tilapia.")
        sent_images = sender.send_images.call_args.args[1]
        assert [image.product_id for image in sent_images] == ["FISH-001"]

    def test_failed_send_is_reported(self, make_bot):
        sender = Mock()
        sender.send_with_retry.return_value = SendResult(success=False, error="HTTP 500", attempts=3)
        bot = make_bot(ScriptedAssistant(_reply()), sender=sender)

        result = bot.handle_message(InboundMessage(sender=CUSTOMER, text="hi"))

        assert result.delivered is False
        sender.send_images.assert_not_called()
