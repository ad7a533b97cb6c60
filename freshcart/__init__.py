"""
FreshCart Conversational Commerce Core

Session-backed WhatsApp ordering for a fresh fish, chicken and vegetable
shop: cart state machine, location resolution, delivery quoting,
co-purchase recommendations and order checkout.
"""

from freshcart.models import (
    Product,
    ProductCategory,
    AvailabilityStatus,
    CartLine,
    Session,
    ConversationStep,
    DeliveryQuote,
    Order,
    OrderItem,
    OrderStatus,
    InboundMessage,
    AssistantReply,
)
from freshcart.database import DatabaseManager, get_database
from freshcart.location import LocationResolver, NominatimGeocoder
from freshcart.delivery import DeliveryQuoteEngine
from freshcart.recommendations import RecommendationGraph
from freshcart.session import SessionStateMachine, SessionStore
from freshcart.checkout import CheckoutOrchestrator
from freshcart.chatbot import ConversationalCommerceChatbot

__version__ = "1.0.0"
__all__ = [
    "Product",
    "ProductCategory",
    "AvailabilityStatus",
    "CartLine",
    "Session",
    "ConversationStep",
    "DeliveryQuote",
    "Order",
    "OrderItem",
    "OrderStatus",
    "InboundMessage",
    "AssistantReply",
    "DatabaseManager",
    "get_database",
    "LocationResolver",
    "NominatimGeocoder",
    "DeliveryQuoteEngine",
    "RecommendationGraph",
    "SessionStateMachine",
    "SessionStore",
    "CheckoutOrchestrator",
    "ConversationalCommerceChatbot",
]
