"""
Failure types raised by the commerce core.

Not-found conditions for locations are returned as None by the resolver
rather than raised; the exceptions here cover product lookups, cart limits,
checkout validation and order-number generation.
"""


class CommerceError(Exception):
    """Base class for all commerce core errors."""

    code = "commerce_error"


class ProductNotFoundError(CommerceError):
    """The product does not exist or is no longer offered."""

    code = "product_not_found"

    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class CartLimitError(CommerceError):
    """A cart mutation would exceed the line or quantity caps."""

    code = "cart_limit"


class CheckoutValidationError(CommerceError, ValueError):
    """Checkout preconditions failed; the session is left untouched."""

    code = "checkout_validation"


class EmptyCartError(CheckoutValidationError):
    code = "empty_cart"

    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class MissingLocationError(CheckoutValidationError):
    code = "missing_location"

    def __init__(self, message: str = "Delivery location is required"):
        super().__init__(message)


class OrderNumberExhaustedError(CommerceError):
    """No free order number was found within the retry budget."""

    code = "order_number_exhausted"
