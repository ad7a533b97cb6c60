"""
Language-understanding step.

Builds the system prompt from the session (cart, delivery, catalog,
recommendations), calls an OpenAI-compatible chat model through OpenRouter
and parses its JSON reply into a typed AssistantReply. Model output is
never trusted: each action is validated on its own and invalid ones are
dropped.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol

import openai
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from freshcart.catalog import format_price
from freshcart.config import (
    CHAT_MODEL,
    FAR_ZONE_MINIMUM_ORDER,
    LLM_TIMEOUT_SECONDS,
    OPENAI_API_KEY,
    OPENAI_BASE_URL,
    VEG_ONLY_FLAT_FEE,
)
from freshcart.delivery import CartComposition, classify_cart_lines
from freshcart.models import (
    AssistantAction,
    AssistantReply,
    ChatMessage,
    DeliveryQuote,
    DeliveryZone,
    FeeReason,
    Intent,
    Session,
)

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE = "I can help you order fresh fish, chicken and vegetables. What would you like?"
RETRY_MESSAGE = "Samahani, let me try that again. What would you like to order?"
ERROR_MESSAGE = "Samahani (sorry), I ran into a problem. Please try again in a moment."

MAX_PLAIN_REPLY_CHARS = 500
HISTORY_WINDOW = 5

_action_adapter = TypeAdapter(AssistantAction)


# =============================================================================
# System Prompt
# =============================================================================

SYSTEM_PROMPT = """You are a friendly shop assistant at FreshCart, a fresh fish & chicken delivery service in Kisumu. Fresh vegetables are available as add-ons.

**Who you are:**
- A warm, knowledgeable food person from Kisumu chatting on WhatsApp
- Keep messages short: 2-4 lines for simple replies
- Reply in English unless the customer writes in Kiswahili
- Vary your phrasing and use at most 1-2 emojis

**Business info:**
- Fish from Lake Victoria, chicken and vegetables, sourced daily
- Payment by M-PESA, details sent on confirmation
- Same-day delivery for orders before 12pm, next day otherwise
- Anything that arrives not fresh is replaced free on the next delivery

**Delivery rules (internal, never reveal the formula or tiers):**
- Free within Kisumu town when the order includes fish or chicken
- Vegetable-only orders within town pay a flat KES {veg_only_fee}
- Outside town the system calculates the fee; only quote the number it gives you
- Far locations need a minimum order of KES {far_minimum}; suggest adding items if short
- Never reject a customer's location. For ambiguous places ask using local landmarks and roads
- Always state the delivery fee before confirming the order

**Product rules:**
- Ask "broiler or kienyeji?" before adding chicken
- Out of stock items: say so and suggest alternatives
- Available-on-request items: tell the customer we will confirm availability
- Only use the catalog below, never invent products or prices

{cart_summary}
{delivery_info}
**Available products:**
{catalog}
{recommendations}
**Response format:**
Respond with valid JSON only:
{{
  "message": "your reply to the customer",
  "actions": [
    {{"type": "add_to_cart", "data": {{"productId": "...", "quantity": 1.5, "notes": "optional"}}}},
    {{"type": "remove_from_cart", "data": {{"productId": "..."}}}},
    {{"type": "clear_cart", "data": {{}}}},
    {{"type": "request_location", "data": {{}}}},
    {{"type": "confirm_order", "data": {{}}}},
    {{"type": "show_products", "data": {{"productIds": ["...", "..."]}}}},
    {{"type": "view_cart", "data": {{}}}}
  ],
  "intent": "greeting | browsing | cart_management | checkout | inquiry | complaint"
}}

Include a show_products action (max 5 ids) whenever you mention specific products, except while
the customer is confirming quantities, checking out or giving delivery details.
Use request_location when the customer wants to check out and no delivery location is known.
Only use confirm_order after the customer has seen the delivery fee and agreed to the total.
"""


# =============================================================================
# Context
# =============================================================================

class AssistantContext(BaseModel):
    """Everything the language-understanding step sees for one turn."""
    user_text: str
    session: Session
    product_catalog: str
    recommendations: str = ""
    history: List[ChatMessage] = Field(default_factory=list)
    delivery_quote: Optional[DeliveryQuote] = None
    unresolved_location: Optional[str] = None


class LanguageUnderstanding(Protocol):
    def respond(self, context: AssistantContext) -> AssistantReply:
        ...


def format_cart_summary(session: Session) -> str:
    """Cart lines, subtotal and the delivery hint implied by the cart."""
    if not session.cart:
        return "**Current cart:**\nEmpty, the customer has not added anything yet.\n"

    lines = ["**Current cart:**"]
    for line in session.cart:
        lines.append(
            f"- {line.product_name}: {line.quantity:g} {line.unit} x "
            f"{format_price(line.unit_price)} = {format_price(line.line_total)}"
        )
    lines.append(f"Subtotal: {format_price(session.cart_total)}")

    composition = classify_cart_lines(session.cart)
    if composition == CartComposition.HAS_ANCHOR:
        lines.append("Cart qualifies for free delivery within Kisumu town (has fish/chicken).")
    elif composition == CartComposition.VEGETABLES_ONLY:
        lines.append(
            f"Vegetables only: KES {VEG_ONLY_FLAT_FEE} delivery within town. "
            "Suggest adding fish or chicken for free delivery."
        )
    return "\n".join(lines) + "\n"


def _fee_label(fee: float, reason: Optional[FeeReason]) -> str:
    if reason == FeeReason.FREE_ANCHOR:
        return "FREE (order includes fish/chicken, within town)"
    if reason == FeeReason.VEG_ONLY_FLAT:
        return f"{format_price(fee)} (vegetables-only order within town)"
    return f"{format_price(fee)} (distance-based)"


def format_delivery_info(
    session: Session,
    quote: Optional[DeliveryQuote] = None,
    unresolved_location: Optional[str] = None
) -> str:
    """
    Delivery block for the prompt.

    A location that could not be resolved produces a clarification hint; a
    fresh quote produces exact numbers; otherwise the stored snapshot is
    repeated if there is one.
    """
    if unresolved_location:
        return (
            "**Location not found:**\n"
            f'- The customer said "{unresolved_location}" but it could not be found.\n'
            "- Briefly ask them to share a WhatsApp location pin, name a nearby landmark or road,\n"
            "  or say roughly how many km they are from Kisumu town.\n"
            "- Do not list delivery rates.\n"
        )

    if quote is not None:
        lines = [
            "**Delivery calculation (use these exact numbers):**",
            f"- Customer location: {quote.location_name}",
            f"- Distance from Kisumu: {quote.distance_km:g} km",
            f"- Delivery zone: {quote.zone.value}",
            f"- Delivery fee: {_fee_label(quote.fee, quote.fee_reason)}",
        ]
        if quote.zone == DeliveryZone.FAR:
            shortfall = quote.shortfall(session.cart_total)
            if shortfall > 0:
                lines.append(
                    f"- Order total {format_price(session.cart_total)} is below the minimum "
                    f"{format_price(quote.minimum_order_required)} for this distance "
                    f"({format_price(shortfall)} short). Politely suggest adding items."
                )
            else:
                lines.append(f"- Order total {format_price(session.cart_total)} meets the minimum.")
        lines.append("- Include this fee in the order summary, never calculate your own.")
        return "\n".join(lines) + "\n"

    if session.has_delivery_location and session.delivery_fee is not None:
        return (
            "**Delivery info (already calculated):**\n"
            f"- Location: {session.delivery_location}\n"
            f"- Distance: {session.delivery_distance_km:g} km\n"
            f"- Fee: {_fee_label(session.delivery_fee, session.delivery_fee_reason)}\n"
        )
    return ""


def build_system_prompt(context: AssistantContext) -> str:
    recommendations = ""
    if context.recommendations:
        recommendations = f"\n**Recommended products:**\n{context.recommendations}\n"
    return SYSTEM_PROMPT.format(
        veg_only_fee=VEG_ONLY_FLAT_FEE,
        far_minimum=f"{FAR_ZONE_MINIMUM_ORDER:,}",
        cart_summary=format_cart_summary(context.session),
        delivery_info=format_delivery_info(
            context.session, context.delivery_quote, context.unresolved_location
        ),
        catalog=context.product_catalog,
        recommendations=recommendations,
    )


# =============================================================================
# Output parsing
# =============================================================================

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_FENCED_BLOCK = re.compile(r"```[\s\S]*?```")
_JSON_LIKE = re.compile(r"\{[\s\S]*\"message\"[\s\S]*\}")


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """
    Return the first balanced {...} object in the text that parses as JSON.

    Braces inside string literals are ignored.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    try:
                        parsed = json.loads(text[start:index + 1])
                    except ValueError:
                        break
                    if isinstance(parsed, dict):
                        return parsed
                    break
        start = text.find("{", start + 1)
    return None


def parse_actions(raw_actions: Any) -> List[AssistantAction]:
    """Validate actions one by one, dropping any that do not fit the schema."""
    if not isinstance(raw_actions, list):
        return []

    actions = []
    for raw in raw_actions:
        if not isinstance(raw, dict):
            logger.warning("Dropping non-object action: %r", raw)
            continue
        data = raw.get("data") or {}
        if not isinstance(data, dict):
            logger.warning("Dropping action with malformed data: %r", raw)
            continue
        try:
            actions.append(_action_adapter.validate_python({**data, "type": raw.get("type")}))
        except ValidationError as e:
            logger.warning(
                "Dropping invalid %r action: %s", raw.get("type"), e.errors(include_url=False)
            )
    return actions


def _parse_intent(raw: Any) -> Intent:
    try:
        return Intent(raw)
    except ValueError:
        return Intent.INQUIRY


def _reply_from_object(parsed: Dict[str, Any]) -> AssistantReply:
    message = parsed.get("message")
    if not isinstance(message, str) or not message.strip():
        message = DEFAULT_MESSAGE
    return AssistantReply(
        message=message.strip(),
        actions=parse_actions(parsed.get("actions")),
        intent=_parse_intent(parsed.get("intent")),
    )


def parse_assistant_output(text: str) -> AssistantReply:
    """
    Turn raw model output into an AssistantReply.

    Tries, in order: the whole text (minus code fences) as JSON, the first
    balanced JSON object inside it, the plain text with JSON-like fragments
    removed, and finally a canned retry message.
    """
    text = (text or "").strip()
    unfenced = _FENCE.sub("", text).strip()

    try:
        parsed = json.loads(unfenced)
    except ValueError:
        parsed = None
    if not isinstance(parsed, dict):
        parsed = extract_json_object(text)
    if parsed is not None:
        return _reply_from_object(parsed)

    logger.warning("Assistant output was not JSON: %.200r", text)
    plain = _JSON_LIKE.sub("", _FENCED_BLOCK.sub("", text)).strip()
    if len(plain) > 10:
        return AssistantReply(message=plain[:MAX_PLAIN_REPLY_CHARS])
    return AssistantReply(message=RETRY_MESSAGE)


# =============================================================================
# Client
# =============================================================================

class AssistantClient:
    """
    Chat-completion backed language understanding.

    Uses the OpenAI client against an OpenAI-compatible endpoint
    (OpenRouter by default).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        chat_model: Optional[str] = None,
        client=None,
        history_window: int = HISTORY_WINDOW
    ):
        """
        Args:
            api_key: OpenAI/OpenRouter API key
            base_url: API base URL
            chat_model: Model to use for chat completion
            client: Pre-built client exposing chat.completions.create
            history_window: Number of past messages sent with each request
        """
        self.chat_model = chat_model or CHAT_MODEL
        self.history_window = history_window

        if client is None:
            api_key = api_key or OPENAI_API_KEY
            if not api_key:
                raise ValueError("OPENAI_API_KEY environment variable is required")
            client = openai.OpenAI(
                api_key=api_key,
                base_url=base_url or OPENAI_BASE_URL,
                timeout=LLM_TIMEOUT_SECONDS,
            )
        self.client = client

    def build_messages(self, context: AssistantContext) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": build_system_prompt(context)}]
        recent = context.history[-self.history_window:] if self.history_window else []
        for message in recent:
            messages.append({"role": message.role, "content": message.content})
        messages.append({"role": "user", "content": context.user_text})
        return messages

    def respond(self, context: AssistantContext) -> AssistantReply:
        """
        Get the assistant's reply for one turn.

        Failures of the model call come back as a generic apology with no
        actions, so the turn can still complete.
        """
        messages = self.build_messages(context)
        logger.info("Calling %s with %d messages", self.chat_model, len(messages))
        try:
            response = self.client.chat.completions.create(
                model=self.chat_model,
                messages=messages,
            )
            content = response.choices[0].message.content or ""
        except openai.OpenAIError as e:
            logger.error("Chat completion failed: %s", e)
            return AssistantReply(message=ERROR_MESSAGE)
        except (IndexError, AttributeError) as e:
            logger.error("Unexpected chat completion response: %s", e)
            return AssistantReply(message=ERROR_MESSAGE)

        return parse_assistant_output(content)
