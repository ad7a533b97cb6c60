"""
Assistant prompt building, output parsing and client error handling.
"""

import json
from unittest.mock import MagicMock, Mock

import httpx
import openai
import pytest

from freshcart.assistant import (
    ERROR_MESSAGE,
    RETRY_MESSAGE,
    AssistantClient,
    AssistantContext,
    build_system_prompt,
    extract_json_object,
    format_cart_summary,
    format_delivery_info,
    parse_assistant_output,
)
from freshcart.models import (
    AddToCartAction,
    CartLine,
    ChatMessage,
    DeliveryQuote,
    DeliveryZone,
    FeeReason,
    Intent,
    ProductCategory,
    Session,
    ShowProductsAction,
)


def _completion(content):
    response = MagicMock()
    response.choices[0].message.content = content
    return response


def _veg_session():
    session = Session(customer_id="c1")
    session.cart.append(CartLine(
        product_id="VEG-001",
        product_name="Sukuma Wiki",
        category=ProductCategory.VEGETABLES,
        quantity=3,
        unit_price=60,
        unit="per bunch",
    ))
    return session


class TestParseAssistantOutput:

    def test_plain_json(self):
        reply = parse_assistant_output(json.dumps({
            "message": "Sawa! 2 tilapia added.",
            "actions": [{"type": "add_to_cart", "data": {"productId": "FISH-001", "quantity": 2}}],
            "intent": "cart_management",
        }))
        assert reply.message == "Sawa! 2 tilapia added."
        assert reply.intent == Intent.CART_MANAGEMENT
        assert reply.actions == [AddToCartAction(product_id="FISH-001", quantity=2)]

    def test_fenced_json(self):
        text = '```json\n{"message": "Hi there!", "actions": [], "intent": "greeting"}\n```'
        reply = parse_assistant_output(text)
        assert reply.message == "Hi there!"
        assert reply.intent == Intent.GREETING

    def test_json_embedded_in_prose(self):
        text = 'Here you go: {"message": "We have {fresh} tilapia", "actions": ' \
               '[{"type": "show_products", "data": {"productIds": ["FISH-001"]}}]} thanks'
        reply = parse_assistant_output(text)
        assert reply.message == "We have {fresh} tilapia"
        assert reply.actions == [ShowProductsAction(product_ids=["FISH-001"])]

    def test_invalid_actions_are_dropped_individually(self):
        reply = parse_assistant_output(json.dumps({
            "message": "Done",
            "actions": [
                {"type": "add_to_cart", "data": {"productId": "FISH-001", "quantity": -1}},
                {"type": "teleport", "data": {}},
                "not an object",
                {"type": "view_cart"},
                {"type": "remove_from_cart", "data": {"productId": "VEG-001"}},
            ],
        }))
        assert [a.type for a in reply.actions] == ["view_cart", "remove_from_cart"]

    def test_unknown_intent_defaults_to_inquiry(self):
        reply = parse_assistant_output('{"message": "Hello", "intent": "shopping"}')
        assert reply.intent == Intent.INQUIRY

    def test_plain_text_reply(self):
        reply = parse_assistant_output("Sorry, we are out of tilapia today. Try nile perch?")
        assert reply.message.startswith("Sorry, we are out of tilapia")
        assert reply.actions == []

    def test_plain_text_is_truncated(self):
        reply = parse_assistant_output("x" * 800)
        assert len(reply.message) == 500

    def test_garbage_falls_back_to_retry_message(self):
        assert parse_assistant_output("{oops").message == RETRY_MESSAGE
        assert parse_assistant_output("").message == RETRY_MESSAGE

    def test_extract_json_object_skips_non_json_braces(self):
        assert extract_json_object('{not json} {"message": "ok"}') == {"message": "ok"}
        assert extract_json_object("no braces") is None


class TestPromptSections:

    def test_veg_only_cart_hint(self):
        summary = format_cart_summary(_veg_session())
        assert "Sukuma Wiki: 3 per bunch x KES 60 = KES 180" in summary
        assert "Vegetables only" in summary

    def test_empty_cart(self):
        assert "Empty" in format_cart_summary(Session(customer_id="c1"))

    def test_location_not_found_hint(self):
        info = format_delivery_info(Session(customer_id="c1"), unresolved_location="behind the mango tree")
        assert "behind the mango tree" in info
        assert "location pin" in info

    def test_far_quote_reports_shortfall(self):
        quote = DeliveryQuote(
            location_name="Katito",
            distance_km=42,
            fee=420,
            zone=DeliveryZone.FAR,
            fee_reason=FeeReason.DISTANCE_BASED,
            minimum_order_required=3000,
        )
        info = format_delivery_info(_veg_session(), quote)
        assert "KES 420 (distance-based)" in info
        assert "KES 2,820 short" in info

    def test_stored_snapshot(self):
        session = _veg_session()
        session.delivery_location = "Kondele"
        session.delivery_distance_km = 3
        session.delivery_fee = 250
        session.delivery_fee_reason = FeeReason.VEG_ONLY_FLAT
        assert "already calculated" in format_delivery_info(session)

    def test_system_prompt_includes_sections(self):
        context = AssistantContext(
            user_text="hi",
            session=_veg_session(),
            product_catalog="## FISH\n### Tilapia",
            recommendations="- Tilapia",
        )
        prompt = build_system_prompt(context)
        assert "### Tilapia" in prompt
        assert "Recommended products" in prompt
        assert '"message": "your reply to the customer"' in prompt


class TestAssistantClient:

    def test_requires_api_key(self, monkeypatch):
        monkeypatch.setattr("freshcart.assistant.OPENAI_API_KEY", None)
        with pytest.raises(ValueError):
            AssistantClient()

    def test_sends_bounded_history(self):
        client = Mock()
        client.chat.completions.create.return_value = _completion('{"message": "Sawa!"}')
        assistant = AssistantClient(client=client, chat_model="test-model", history_window=2)
        history = [ChatMessage(role="user", content=f"m{i}") for i in range(6)]

        reply = assistant.respond(AssistantContext(
            user_text="add tilapia",
            session=Session(customer_id="c1"),
            product_catalog="catalog",
            history=history,
        ))

        assert reply.message == "Sawa!"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        messages = kwargs["messages"]
        assert messages[0]["role"] == "system"
        assert [m["content"] for m in messages[1:]] == ["m4", "m5", "add tilapia"]

    def test_api_error_returns_apology(self):
        client = Mock()
        request = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")
        client.chat.completions.create.side_effect = openai.APIConnectionError(request=request)
        assistant = AssistantClient(client=client)

        reply = assistant.respond(AssistantContext(
            user_text="hi", session=Session(customer_id="c1"), product_catalog="catalog",
        ))

        assert reply.message == ERROR_MESSAGE
        assert reply.actions == []
