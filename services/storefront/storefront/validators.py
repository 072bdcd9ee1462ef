"""
Business-rule validation shared by the cart, pricing and order services.

Validators return ``(is_valid, error_message)`` tuples; callers decide
whether a failure is dropped with a warning or raised.
"""
from typing import Iterable, Optional, Tuple

# Workflow axis, in forward order
ORDER_WORKFLOW = ("pending", "confirmed", "processing", "in_progress", "completed")
ORDER_STATUSES = ORDER_WORKFLOW + ("cancelled", "refunded")
TERMINAL_STATUSES = ("completed", "cancelled", "refunded")

PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded", "partial")
FULFILLMENT_STATUSES = ("unfulfilled", "partial", "fulfilled")
PRODUCT_TYPES = ("service", "bundle", "custom_item")

# Order status -> referral record status
REFERRAL_BUCKETS = {
    "pending": "pending",
    "confirmed": "pending",
    "processing": "pending",
    "in_progress": "pending",
    "completed": "completed",
    "cancelled": "cancelled",
    "refunded": "cancelled",
}


def validate_status_transition(old_status: str, new_status: str) -> Tuple[bool, str]:
    """
    Validate that a status transition is allowed.

    Forward moves along the workflow may skip steps; ``cancelled`` and
    ``refunded`` are reachable from every non-terminal status, and a
    completed order may still be refunded.

    Args:
        old_status: Current order status
        new_status: Requested order status

    Returns:
        Tuple of (is_valid, error_message)
    """
    if old_status not in ORDER_STATUSES:
        return False, f"Unknown status: {old_status}"

    if new_status not in ORDER_STATUSES:
        return False, f"Unknown status: {new_status}"

    if old_status == new_status:
        return False, f"Order is already {old_status}"

    if old_status == "completed" and new_status == "refunded":
        return True, ""

    if old_status in TERMINAL_STATUSES:
        return False, f"Invalid status transition: {old_status} -> {new_status}"

    if new_status in ("cancelled", "refunded"):
        return True, ""

    if ORDER_WORKFLOW.index(new_status) < ORDER_WORKFLOW.index(old_status):
        return False, f"Invalid status transition: {old_status} -> {new_status}"

    return True, ""


def validate_quantity(quantity: int, minimum: Optional[int], maximum: Optional[int]) -> Tuple[bool, str]:
    """Check a line quantity against the product's ordering bounds."""
    minimum = minimum or 1
    if quantity < minimum:
        return False, f"Minimum quantity is {minimum}"
    if maximum is not None and quantity > maximum:
        return False, f"Maximum quantity is {maximum}"
    return True, ""


def validate_progress(progress: int) -> Tuple[bool, str]:
    if progress < 0 or progress > 100:
        return False, "Progress must be between 0 and 100"
    return True, ""


def referral_bucket(status: str) -> str:
    """Map an order status onto the status a referral record mirrors."""
    return REFERRAL_BUCKETS.get(status, "pending")


def derive_order_type(product_types: Iterable[str]) -> str:
    """
    Classify an order from the product types of its lines.

    Pure custom-item orders are "custom", pure bundle orders are "bundle",
    pure service orders are "standard"; mixes containing custom items or
    mixing bundles with services are treated as "custom".
    """
    types = set(product_types)
    has_custom = "custom_item" in types
    has_bundles = "bundle" in types
    has_services = "service" in types

    if has_custom or (has_bundles and has_services):
        return "custom"
    if has_bundles:
        return "bundle"
    return "standard"
