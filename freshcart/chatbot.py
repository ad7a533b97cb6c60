"""
Conversational Commerce Chatbot - Main Application

Runs one conversation turn per inbound message:
1. Load (or lazily create) the customer's session under their lock
2. Resolve a delivery location when one is expected or a pin arrives
3. Ask the language-understanding step for a reply and typed actions
4. Apply the actions (cart, location request, checkout, product images)
5. Save the session, then deliver the reply outside the lock
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from freshcart.assistant import ERROR_MESSAGE, AssistantClient, AssistantContext, LanguageUnderstanding
from freshcart.catalog import ProductCatalog, format_price
from freshcart.checkout import CheckoutOrchestrator, Notifier, format_delivery_date
from freshcart.config import configure_logging
from freshcart.database import DatabaseManager, get_database
from freshcart.delivery import DeliveryQuoteEngine
from freshcart.location import LocationResolver, NominatimGeocoder
from freshcart.models import (
    ConversationStep,
    DeliveryQuote,
    InboundMessage,
    Intent,
    MessageKind,
    Order,
    ProductImage,
    Session,
)
from freshcart.recommendations import RecommendationGraph
from freshcart.session import SessionStateMachine, SessionStore
from freshcart.transport import MessageDeduplicator, WhatsAppSender, normalize_webhook_payload

logger = logging.getLogger(__name__)


class TurnResult(BaseModel):
    """Outcome of one processed inbound message."""
    customer_id: str
    reply: str
    intent: Intent = Intent.INQUIRY
    step: Optional[ConversationStep] = None
    images: List[ProductImage] = Field(default_factory=list)
    order: Optional[Order] = None
    delivery_quote: Optional[DeliveryQuote] = None
    location_not_found: bool = False
    failed_actions: List[str] = Field(default_factory=list)
    delivered: Optional[bool] = None


# =============================================================================
# Conversation Commerce Chatbot
# =============================================================================

class ConversationalCommerceChatbot:
    """
    Session-backed commerce assistant.

    Collaborators are injectable; anything not supplied is built from the
    module configuration.
    """

    def __init__(
        self,
        database: Optional[DatabaseManager] = None,
        assistant: Optional[LanguageUnderstanding] = None,
        resolver: Optional[LocationResolver] = None,
        sender: Optional[WhatsAppSender] = None,
        notifier: Optional[Notifier] = None,
        clock=None,
        deduplicator: Optional[MessageDeduplicator] = None
    ):
        self.database = database or get_database()
        self.catalog = ProductCatalog(self.database)
        self.quote_engine = DeliveryQuoteEngine()
        self.recommendations = RecommendationGraph(self.database)
        self.checkout = CheckoutOrchestrator(
            self.database, self.recommendations, notifier=notifier, clock=clock
        )
        self.sessions = SessionStore(self.database, clock=clock)
        self.state_machine = SessionStateMachine(self.catalog, self.quote_engine, self.checkout)
        self.assistant = assistant or AssistantClient()
        self.resolver = resolver or LocationResolver(NominatimGeocoder())
        self.sender = sender
        self.deduplicator = deduplicator or MessageDeduplicator()

    # -- inbound ------------------------------------------------------------

    def handle_webhook(self, payload: Dict[str, Any]) -> Optional[TurnResult]:
        """Normalize, deduplicate and process one webhook payload."""
        message = normalize_webhook_payload(payload)
        if message is None:
            logger.debug("Webhook payload carried no customer message")
            return None
        if self.deduplicator.is_duplicate(message.message_id):
            logger.info("Skipping duplicate message %s", message.message_id)
            return None
        return self.handle_message(message)

    def handle_message(self, message: InboundMessage) -> Optional[TurnResult]:
        """
        Process one inbound message for its sender.

        Messages that are neither text nor a location are ignored. Any
        unexpected failure yields an apology reply and leaves the stored
        session as it was before the turn, unless an order was already
        placed, in which case the session is stored with its cart cleared.
        """
        if message.kind == MessageKind.OTHER or (
            message.kind == MessageKind.TEXT and not (message.text or "").strip()
        ):
            logger.info("Ignoring %s message from %s", message.kind.value, message.sender)
            return None

        try:
            with self.sessions.locked(message.sender):
                result = self._run_turn(message)
        except Exception:
            logger.exception("Turn failed for %s", message.sender)
            result = TurnResult(customer_id=message.sender, reply=ERROR_MESSAGE)

        if self.sender is not None:
            result.delivered = self._deliver(result)
        return result

    def chat(self, customer_id: str, text: str) -> str:
        """Process a text message and return the reply text."""
        result = self.handle_message(InboundMessage(sender=customer_id, text=text))
        return result.reply if result else ""

    def share_location(
        self,
        customer_id: str,
        latitude: float,
        longitude: float,
        label: Optional[str] = None
    ) -> str:
        """Process a location pin and return the reply text."""
        result = self.handle_message(InboundMessage(
            sender=customer_id,
            kind=MessageKind.LOCATION,
            latitude=latitude,
            longitude=longitude,
            location_label=label,
        ))
        return result.reply if result else ""

    # -- turn ---------------------------------------------------------------

    def _run_turn(self, message: InboundMessage) -> TurnResult:
        customer_id = message.sender
        session = self.sessions.load(customer_id)
        self.state_machine.on_message(session)

        user_text = (message.text or "").strip()
        if message.has_coordinates and not user_text:
            label = message.location_label or f"{message.latitude:.5f}, {message.longitude:.5f}"
            user_text = f"[Shared location: {label}]"

        quote, unresolved = self._resolve_delivery(session, message)
        if session.cart:
            recommended = self.recommendations.recommend(session.product_ids)
        else:
            recommended = self.recommendations.popular_products(limit=self.recommendations.max_results)

        context = AssistantContext(
            user_text=user_text,
            session=session,
            product_catalog=self.catalog.format_product_catalog(),
            recommendations=self.recommendations.format_recommendations(recommended),
            history=list(session.history),
            delivery_quote=quote,
            unresolved_location=unresolved,
        )
        reply = self.assistant.respond(context)

        outcome = self.state_machine.apply_actions(session, reply.actions)
        reply_text = reply.message
        if outcome.order is not None:
            # The order is committed; persist the cleared cart before anything else can fail.
            self.sessions.save(session)
            reply_text = f"{reply_text}\n\nOrder number: {outcome.order.order_number}"
            if outcome.order.delivery_date:
                reply_text += f"\nDelivery: {format_delivery_date(outcome.order.delivery_date)}"

        self.sessions.append_history(session, user_text, reply_text)
        self.sessions.save(session)

        return TurnResult(
            customer_id=customer_id,
            reply=reply_text,
            intent=reply.intent,
            step=session.step,
            images=outcome.images,
            order=outcome.order,
            delivery_quote=quote,
            location_not_found=unresolved is not None,
            failed_actions=outcome.failed,
        )

    def _resolve_delivery(
        self,
        session: Session,
        message: InboundMessage
    ) -> Tuple[Optional[DeliveryQuote], Optional[str]]:
        """
        Resolve a location before the assistant runs.

        Returns:
            (quote, None) on success, (None, text) when the customer's text
            could not be resolved, (None, None) when nothing was attempted
        """
        if message.has_coordinates:
            location = self.resolver.resolve_coordinates(
                message.latitude, message.longitude, message.location_label
            )
        elif session.step == ConversationStep.REQUESTING_LOCATION and message.text:
            location = self.resolver.resolve_message(message.text)
            if location is None:
                logger.info("Could not resolve location %r for %s", message.text, session.customer_id)
                self.state_machine.location_not_found(session)
                return None, message.text.strip()
        else:
            return None, None

        quote = self.quote_engine.quote_for_cart(location, session.cart)
        self.state_machine.apply_quote(session, quote)
        return quote, None

    # -- outbound -----------------------------------------------------------

    def _deliver(self, result: TurnResult) -> bool:
        sent = self.sender.send_with_retry(result.customer_id, result.reply)
        if not sent.success:
            logger.error("Reply to %s not delivered: %s", result.customer_id, sent.error)
        if result.images:
            self.sender.send_images(result.customer_id, result.images)
        return sent.success

    # -- helpers ------------------------------------------------------------

    def get_cart(self, customer_id: str) -> Session:
        with self.sessions.locked(customer_id):
            return self.sessions.load(customer_id)

    def reset_conversation(self, customer_id: str):
        """Forget the customer's session."""
        with self.sessions.locked(customer_id):
            self.sessions.reset(customer_id)

    def get_recent_orders(self, limit: int = 10) -> List[Order]:
        """Get recent orders from database."""
        return self.database.get_all_orders(limit=limit)


# =============================================================================
# CLI Interface
# =============================================================================

CLI_CUSTOMER_ID = "cli-customer"
_PIN = re.compile(r"^pin\s+(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)$", re.IGNORECASE)


def print_cart(session: Session):
    if not session.cart:
        print("\nCart is empty.")
        return
    print("\n--- Cart ---")
    for line in session.cart:
        print(f"  {line.product_name} x{line.quantity:g}: {format_price(line.line_total)}")
    print(f"  Subtotal: {format_price(session.cart_total)}")
    if session.has_delivery_location:
        print(f"  Delivery to {session.delivery_location}: {format_price(session.delivery_fee or 0)}")
    print(f"  Step: {session.step.value}")


def run_cli():
    """Run the chatbot in command-line interface mode."""
    configure_logging("WARNING")
    print("=" * 60)
    print("Welcome to FreshCart!")
    print("=" * 60)
    print("\nOrder fresh fish, chicken and vegetables in Kisumu.")
    print("Type 'quit' or 'exit' to end the conversation.")
    print("Type 'reset' to start a new conversation.")
    print("Type 'cart' to view your cart, 'orders' to view recent orders.")
    print("Type 'pin <lat>,<lon>' to share a location pin.")
    print("-" * 60)

    try:
        chatbot = ConversationalCommerceChatbot()
    except Exception as e:
        print(f"\nError initializing chatbot: {e}")
        print("Make sure you have set up your environment variables correctly.")
        print("See .env.example for required configuration.")
        return

    while True:
        try:
            user_input = input("\nYou: ").strip()

            if not user_input:
                continue

            if user_input.lower() in ['quit', 'exit']:
                print("\nAsante! Goodbye!")
                break

            if user_input.lower() == 'reset':
                chatbot.reset_conversation(CLI_CUSTOMER_ID)
                print("\nConversation reset.")
                continue

            if user_input.lower() == 'cart':
                print_cart(chatbot.get_cart(CLI_CUSTOMER_ID))
                continue

            if user_input.lower() == 'orders':
                orders = chatbot.get_recent_orders(5)
                if not orders:
                    print("\nNo orders found.")
                else:
                    print("\n--- Recent Orders ---")
                    for order in orders:
                        print(f"  Order: {order.order_number}")
                        print(f"  Customer: {order.customer_id}")
                        print(f"  Total: {format_price(order.total_amount)}")
                        print(f"  Status: {order.status.value}")
                        print(f"  Created: {order.created_at.strftime('%Y-%m-%d %H:%M')}")
                        print("-" * 30)
                continue

            pin = _PIN.match(user_input)
            if pin:
                response = chatbot.share_location(
                    CLI_CUSTOMER_ID, float(pin.group(1)), float(pin.group(2))
                )
            else:
                response = chatbot.chat(CLI_CUSTOMER_ID, user_input)
            print(f"\nAssistant: {response}")

        except KeyboardInterrupt:
            print("\n\nAsante! Goodbye!")
            break
        except Exception as e:
            print(f"\nError: {e}")
            print("Please try again.")


if __name__ == "__main__":
    run_cli()
