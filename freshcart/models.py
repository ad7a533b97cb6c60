"""
Pydantic models for the FreshCart commerce core.

Defines validation schemas for catalog products, per-customer sessions and
their carts, delivery quotes, recommendation edges, orders, inbound messages
and the typed actions returned by the language-understanding step.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
import uuid

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enumerations
# =============================================================================

class ProductCategory(str, Enum):
    """Catalog categories. Fish and chicken are delivery-fee anchors."""
    FISH = "fish"
    CHICKEN = "chicken"
    VEGETABLES = "vegetables"


ANCHOR_CATEGORIES = frozenset({ProductCategory.FISH, ProductCategory.CHICKEN})


class AvailabilityStatus(str, Enum):
    """Enumeration for product availability."""
    IN_STOCK = "in_stock"
    AVAILABLE_ON_REQUEST = "available_on_request"
    OUT_OF_STOCK = "out_of_stock"


class ConversationStep(str, Enum):
    """Where a customer is in the conversation."""
    GREETING = "greeting"
    BROWSING = "browsing"
    CART_MANAGEMENT = "cart_management"
    REQUESTING_LOCATION = "requesting_location"
    CONFIRMING_ORDER = "confirming_order"
    ORDER_PLACED = "order_placed"


class DeliveryZone(str, Enum):
    TOWN = "town"
    NEARBY = "nearby"
    FAR = "far"


class FeeReason(str, Enum):
    FREE_ANCHOR = "free_anchor"
    VEG_ONLY_FLAT = "veg_only_flat"
    DISTANCE_BASED = "distance_based"


class LocationSource(str, Enum):
    """How a delivery distance was obtained."""
    GAZETTEER = "gazetteer"
    GEOCODER = "geocoder"
    GPS = "gps"
    STATED_DISTANCE = "stated_distance"


class OrderStatus(str, Enum):
    """Enumeration for order status."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    NOTIFICATION_SENT = "notification_sent"
    NOTIFICATION_FAILED = "notification_failed"


class MessageKind(str, Enum):
    TEXT = "text"
    LOCATION = "location"
    OTHER = "other"


class Intent(str, Enum):
    """Intent label attached to every assistant reply."""
    GREETING = "greeting"
    BROWSING = "browsing"
    CART_MANAGEMENT = "cart_management"
    CHECKOUT = "checkout"
    INQUIRY = "inquiry"
    COMPLAINT = "complaint"


# =============================================================================
# Catalog
# =============================================================================

class Product(BaseModel):
    """
    Catalog product.

    Attributes:
        product_id: Unique identifier for the product
        name: Display name
        category: One of the fixed catalog categories
        base_price: Price per unit (must be greater than 0)
        unit: Unit of measure, e.g. "per kg"
        availability: Current availability status
        stock_quantity: Bounded stock counter; None means unlimited
        is_active: Inactive products are hidden from customers
    """
    product_id: str = Field(..., min_length=1, description="Unique product identifier")
    name: str = Field(..., min_length=2, description="Product name")
    name_swahili: Optional[str] = Field(None, description="Kiswahili product name")
    category: ProductCategory = Field(..., description="Product category")
    description: str = Field("", description="Product description")
    base_price: float = Field(..., gt=0, description="Price per unit")
    unit: str = Field("per piece", min_length=1, description="Unit of measure")
    availability: AvailabilityStatus = Field(
        AvailabilityStatus.IN_STOCK, description="Availability status"
    )
    availability_notes: Optional[str] = Field(None, description="Extra availability details")
    stock_quantity: Optional[float] = Field(None, ge=0, description="Units in stock, None if unlimited")
    is_active: bool = Field(True, description="Whether the product is offered")
    display_order: int = Field(0, description="Catalog sort order")
    image_url: Optional[str] = Field(None, description="Public product image")

    @field_validator('base_price')
    @classmethod
    def validate_price(cls, v: float) -> float:
        """Ensure price has at most 2 decimal places."""
        return round(v, 2)

    @model_validator(mode='after')
    def validate_stock_consistency(self) -> 'Product':
        """An exhausted stock counter always means out of stock."""
        if self.stock_quantity == 0:
            self.availability = AvailabilityStatus.OUT_OF_STOCK
        return self

    @property
    def display_name(self) -> str:
        if self.name_swahili:
            return f"{self.name} ({self.name_swahili})"
        return self.name

    @property
    def is_anchor(self) -> bool:
        return self.category in ANCHOR_CATEGORIES


class ProductImage(BaseModel):
    """Image reference handed to the transport layer for show-products."""
    product_id: str
    name: str
    image_url: str


# =============================================================================
# Sessions
# =============================================================================

class CartLine(BaseModel):
    """
    One product in a session cart.

    The unit price is captured when the line is created and is not repriced
    afterwards; the line total is always quantity x unit price.
    """
    product_id: str = Field(..., min_length=1, frozen=True, description="Product identifier")
    product_name: str = Field(..., min_length=1, description="Product name at add time")
    category: ProductCategory = Field(..., description="Product category at add time")
    quantity: float = Field(..., gt=0, description="Quantity in the product's unit")
    unit_price: float = Field(..., gt=0, description="Price per unit at add time")
    unit: str = Field("per piece", description="Unit of measure")
    notes: Optional[str] = Field(None, description="Special requests")

    @computed_field
    @property
    def line_total(self) -> float:
        return round(self.quantity * self.unit_price, 2)


class ChatMessage(BaseModel):
    """
    Model for individual chat messages in conversation history.
    """
    role: str = Field(..., pattern="^(user|assistant)$", description="Message role")
    content: str = Field(..., min_length=1, description="Message content")
    timestamp: datetime = Field(default_factory=utcnow, description="Message timestamp")


class Session(BaseModel):
    """
    Durable per-customer conversation and cart state.

    Created lazily with default values on the first message from a customer
    and recreated with defaults once the inactivity window has elapsed.
    """
    customer_id: str = Field(..., min_length=1, description="Customer identity")
    step: ConversationStep = Field(ConversationStep.GREETING, description="Conversation step")
    cart: List[CartLine] = Field(default_factory=list, description="Cart lines in insertion order")
    delivery_location: Optional[str] = Field(None, description="Free text or GPS label")
    delivery_notes: Optional[str] = Field(None, description="Delivery instructions")
    delivery_distance_km: Optional[float] = Field(None, ge=0, description="Road distance")
    delivery_fee: Optional[float] = Field(None, ge=0, description="Quoted delivery fee")
    delivery_fee_reason: Optional[FeeReason] = Field(None, description="Why the fee applies")
    delivery_zone: Optional[DeliveryZone] = Field(None, description="Distance bucket")
    history: List[ChatMessage] = Field(default_factory=list, description="Recent messages")

    def find_line(self, product_id: str) -> Optional[CartLine]:
        for line in self.cart:
            if line.product_id == product_id:
                return line
        return None

    @property
    def product_ids(self) -> List[str]:
        return [line.product_id for line in self.cart]

    @property
    def cart_total(self) -> float:
        return round(sum(line.line_total for line in self.cart), 2)

    @property
    def has_delivery_location(self) -> bool:
        return bool(self.delivery_location and self.delivery_location.strip())


# =============================================================================
# Delivery
# =============================================================================

class ResolvedLocation(BaseModel):
    """A place turned into a road distance from the reference point."""
    name: str = Field(..., min_length=1)
    distance_km: float = Field(..., ge=0, description="Road-adjusted distance")
    source: LocationSource
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class DeliveryQuote(BaseModel):
    """
    Delivery fee quote for a distance and cart composition.

    Computed per request; a session only keeps a snapshot of it.
    """
    location_name: str = Field(..., min_length=1)
    distance_km: float = Field(..., ge=0, description="Road-adjusted distance")
    fee: float = Field(..., ge=0)
    zone: DeliveryZone
    fee_reason: FeeReason
    minimum_order_required: Optional[float] = Field(
        None, ge=0, description="Only set for the far zone"
    )
    source: Optional[LocationSource] = None

    def shortfall(self, cart_total: float) -> float:
        """Amount still missing to reach the far-zone minimum order."""
        if self.minimum_order_required is None:
            return 0.0
        return max(0.0, round(self.minimum_order_required - cart_total, 2))


# =============================================================================
# Recommendations
# =============================================================================

class RecommendationEdge(BaseModel):
    """Directed co-purchase link between two products."""
    product_id: str = Field(..., min_length=1)
    recommended_id: str = Field(..., min_length=1)
    strength: float = Field(..., ge=0)

    @model_validator(mode='after')
    def validate_not_self_edge(self) -> 'RecommendationEdge':
        if self.product_id == self.recommended_id:
            raise ValueError('A product cannot recommend itself')
        return self


# =============================================================================
# Orders
# =============================================================================

class OrderItem(BaseModel):
    """
    Immutable snapshot of a cart line taken at confirmation time.
    """
    product_id: str = Field(..., min_length=1, description="Product identifier")
    product_name: str = Field(..., min_length=1, description="Product name")
    quantity: float = Field(..., gt=0, description="Quantity ordered")
    unit_price: float = Field(..., gt=0, description="Price per unit")
    unit: str = Field("per piece", description="Unit of measure")
    subtotal: float = Field(0, ge=0, description="Line item total")
    notes: Optional[str] = Field(None, description="Special requests")

    model_config = ConfigDict(frozen=True)

    @model_validator(mode='before')
    @classmethod
    def calculate_subtotal(cls, data):
        """Auto-calculate subtotal from quantity and unit_price."""
        if isinstance(data, dict) and data.get('quantity') is not None \
                and data.get('unit_price') is not None:
            data = dict(data)
            data['subtotal'] = round(float(data['quantity']) * float(data['unit_price']), 2)
        return data

    @classmethod
    def from_cart_line(cls, line: CartLine) -> 'OrderItem':
        return cls(
            product_id=line.product_id,
            product_name=line.product_name,
            quantity=line.quantity,
            unit_price=line.unit_price,
            unit=line.unit,
            notes=line.notes,
        )


class Order(BaseModel):
    """
    Confirmed customer order.

    Attributes:
        order_id: Unique order identifier (auto-generated UUID)
        order_number: Human-facing, date-scoped sequential number
        customer_id: Customer who placed the order
        items: Line items snapshotted from the cart
        items_total: Sum of line subtotals
        delivery_fee: Fee from the session's delivery snapshot
        delivery_date: When the order is scheduled to arrive
        total_amount: items_total + delivery_fee
        status: Current order status
    """
    order_id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique order ID")
    order_number: str = Field(..., min_length=1, description="Date-scoped order number")
    customer_id: str = Field(..., min_length=1, description="Customer identity")
    items: List[OrderItem] = Field(..., min_length=1, description="Order items")
    items_total: float = Field(0, ge=0, description="Sum of item subtotals")
    delivery_location: str = Field(..., min_length=1, description="Delivery location")
    delivery_notes: Optional[str] = Field(None, description="Delivery instructions")
    delivery_distance_km: Optional[float] = Field(None, ge=0)
    delivery_fee: float = Field(0, ge=0)
    delivery_zone: Optional[DeliveryZone] = None
    delivery_fee_reason: Optional[FeeReason] = None
    total_amount: float = Field(0, ge=0, description="Total order amount")
    status: OrderStatus = Field(default=OrderStatus.PENDING, description="Order status")
    created_at: datetime = Field(default_factory=utcnow, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=utcnow, description="Last update timestamp")
    delivery_date: Optional[datetime] = Field(None, description="Scheduled delivery time")
    confirmed_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None

    @model_validator(mode='after')
    def validate_total(self) -> 'Order':
        """Keep totals consistent with the line items and delivery fee."""
        self.items_total = round(sum(item.subtotal for item in self.items), 2)
        self.total_amount = round(self.items_total + self.delivery_fee, 2)
        return self

    @property
    def product_ids(self) -> List[str]:
        return [item.product_id for item in self.items]


# =============================================================================
# Inbound messages
# =============================================================================

class InboundMessage(BaseModel):
    """Normalized event handed over by the transport adapter."""
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    sender: str = Field(..., min_length=1, description="Customer identity")
    kind: MessageKind = MessageKind.TEXT
    text: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    location_label: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @model_validator(mode='after')
    def validate_payload(self) -> 'InboundMessage':
        if self.kind == MessageKind.LOCATION and (self.latitude is None or self.longitude is None):
            raise ValueError('Location messages need latitude and longitude')
        return self

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


# =============================================================================
# Assistant actions
# =============================================================================

class _ActionBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class AddToCartAction(_ActionBase):
    type: Literal["add_to_cart"] = "add_to_cart"
    product_id: str = Field(..., alias="productId", min_length=1)
    quantity: float = Field(..., gt=0)
    notes: Optional[str] = None


class RemoveFromCartAction(_ActionBase):
    type: Literal["remove_from_cart"] = "remove_from_cart"
    product_id: str = Field(..., alias="productId", min_length=1)


class ClearCartAction(_ActionBase):
    type: Literal["clear_cart"] = "clear_cart"


class RequestLocationAction(_ActionBase):
    type: Literal["request_location"] = "request_location"


class ConfirmOrderAction(_ActionBase):
    type: Literal["confirm_order"] = "confirm_order"


class ShowProductsAction(_ActionBase):
    type: Literal["show_products"] = "show_products"
    product_ids: List[str] = Field(..., alias="productIds", min_length=1)


class ViewCartAction(_ActionBase):
    type: Literal["view_cart"] = "view_cart"


AssistantAction = Annotated[
    Union[
        AddToCartAction,
        RemoveFromCartAction,
        ClearCartAction,
        RequestLocationAction,
        ConfirmOrderAction,
        ShowProductsAction,
        ViewCartAction,
    ],
    Field(discriminator="type"),
]


class AssistantReply(BaseModel):
    """Parsed output of the language-understanding step."""
    message: str = Field(..., min_length=1)
    actions: List[AssistantAction] = Field(default_factory=list)
    intent: Intent = Intent.INQUIRY
