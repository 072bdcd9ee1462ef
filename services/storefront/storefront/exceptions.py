"""
Typed errors raised by the storefront core.

The HTTP layer maps each family to a status code; in-process callers catch
the narrowest class they can recover from.
"""
from typing import Optional


class StorefrontError(Exception):
    """Base class for every error raised by the core."""


class ValidationError(StorefrontError):
    """Input rejected by a business rule (bounds, inactive product, transition)."""

    def __init__(self, message: str, product_id: Optional[str] = None):
        super().__init__(message)
        self.product_id = product_id


class InvalidTransitionError(ValidationError):
    """Requested order status change is not allowed from the current status."""

    def __init__(self, old_status: str, new_status: str):
        super().__init__(f"Invalid status transition: {old_status} -> {new_status}")
        self.old_status = old_status
        self.new_status = new_status


class PaymentRequiredError(ValidationError):
    """Order cannot be completed before its payment is captured."""


class CartStaleError(ValidationError):
    """Checkout attempted while a pricing revalidation is still outstanding."""


class InsufficientCreditsError(StorefrontError):
    """Credit debit rejected because the balance does not cover the amount."""

    def __init__(self, user_id: str, requested, available):
        super().__init__(
            f"Insufficient credits for user {user_id}: available {available}, requested {requested}"
        )
        self.user_id = user_id
        self.requested = requested
        self.available = available


class OrderNotFoundError(StorefrontError):
    """Order does not exist or has been soft-deleted."""

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class PersistenceError(StorefrontError):
    """Storage write failed; prior state is left untouched."""


class ConcurrencyConflictError(PersistenceError):
    """Another writer changed the row between our read and our write."""
