"""
Authoritative pricing for cart lines and orders.

Every price shown in the cart, charged at checkout or checked by the
pricing endpoint is computed by ``price_line``; nothing else multiplies
prices. Custom items are priced per unit at ``price_per_unit`` (falling
back to the regular unit price when no per-unit rate is set), so a line
total is always ``unit_price * quantity``.
"""
import logging
from collections import namedtuple
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Optional, Protocol, Tuple, Union

from . import config, schemas
from .validators import validate_quantity

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

OrderTotals = namedtuple("OrderTotals", "subtotal discount tax credits total")


class ProductSource(Protocol):
    def get_product(self, product_id: str) -> Optional[schemas.ProductData]:
        ...


def to_money(value: Any) -> Decimal:
    """Round a numeric value half-up to whole cents."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def unit_price_for(product: schemas.ProductData) -> Decimal:
    if product.product_type == "custom_item" and product.price_per_unit:
        return to_money(product.price_per_unit)
    if product.sale_price:
        return to_money(product.sale_price)
    return to_money(product.base_price)


def price_line(product: schemas.ProductData, quantity: int) -> Tuple[Decimal, Decimal]:
    """
    Price ``quantity`` units of ``product``.

    Returns:
        Tuple of (unit_price, total_price)
    """
    unit_price = unit_price_for(product)
    return unit_price, to_money(unit_price * quantity)


def check_product(product: Optional[schemas.ProductData], quantity: int,
                  product_type: Optional[str] = None) -> Tuple[bool, str]:
    """
    Check that ``product`` can be bought in ``quantity``.

    Returns:
        Tuple of (is_valid, reason)
    """
    if product is None or not product.active:
        return False, "Product not found or inactive"
    if product_type is not None and product_type != product.product_type:
        return False, f"Product type mismatch: expected {product.product_type}"
    return validate_quantity(quantity, product.minimum_quantity, product.maximum_quantity)


def compute_totals(subtotal: Decimal, discount: Decimal = ZERO, credits: Decimal = ZERO,
                   tax_rate: Decimal = None) -> OrderTotals:
    """
    Derive checkout totals from a validated subtotal.

    The discount is clamped to the subtotal, tax is charged on the
    discounted subtotal and credits are clamped to the amount due, so
    the total can never go below zero.
    """
    tax_rate = config.TAX_RATE if tax_rate is None else tax_rate
    subtotal = to_money(subtotal)
    discount = min(max(to_money(discount), ZERO), subtotal)
    taxable = subtotal - discount
    tax = to_money(taxable * tax_rate)
    due = taxable + tax
    credits = min(max(to_money(credits), ZERO), due)
    return OrderTotals(subtotal, discount, tax, credits, due - credits)


def _as_pricing_item(item: Union[schemas.PricingItem, schemas.CartLine, dict]) -> schemas.PricingItem:
    if isinstance(item, schemas.PricingItem):
        return item
    if isinstance(item, dict):
        return schemas.PricingItem.model_validate(item)
    return schemas.PricingItem(
        product_id=item.product_id,
        quantity=item.quantity,
        product_type=item.product_type,
        custom_options=getattr(item, "custom_options", None) or {},
    )


class PricingValidator:
    """
    Recomputes authoritative prices from canonical catalog data.

    Has no side effects; calling ``validate`` repeatedly with the same
    catalog state yields the same result.
    """

    def __init__(self, catalog: ProductSource):
        self.catalog = catalog

    def validate(self, items: Iterable[Union[schemas.PricingItem, schemas.CartLine, dict]]) -> schemas.PricingResult:
        """
        Reprice every item, flagging the ones that cannot be bought.

        Args:
            items: Pricing items, cart lines or equivalent dicts

        Returns:
            PricingResult with validated items, invalid items and a summary
        """
        validated = []
        invalid = []
        requested = 0

        for raw in items:
            requested += 1
            item = _as_pricing_item(raw)
            product = self.catalog.get_product(item.product_id)

            is_valid, reason = check_product(product, item.quantity, item.product_type)
            if not is_valid:
                invalid.append(schemas.InvalidItem(product_id=item.product_id, reason=reason))
                continue

            unit_price, total_price = price_line(product, item.quantity)
            validated.append(
                schemas.ValidatedItem(
                    product_id=item.product_id,
                    product_name=product.name,
                    product_type=product.product_type,
                    quantity=item.quantity,
                    unit_price=unit_price,
                    total_price=total_price,
                    custom_options=item.custom_options,
                )
            )

        total_value = sum((item.total_price for item in validated), ZERO)
        logger.info(
            f"Pricing validation: requested={requested} validated={len(validated)} "
            f"invalid={len(invalid)} total={total_value}"
        )
        return schemas.PricingResult(
            validated_items=validated,
            invalid_items=invalid,
            summary=schemas.PricingSummary(
                requested=requested,
                validated=len(validated),
                invalid=len(invalid),
                total_value=total_value,
            ),
        )
