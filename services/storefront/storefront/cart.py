"""
Session shopping cart.

The cart caches prices for display but never invents them: every price
comes from ``pricing.price_line`` and is re-derived by the pricing
validator before checkout. Each local mutation bumps ``version`` and marks
the cart stale until a validation tagged with that version is applied;
responses for older versions are discarded.
"""
import logging
from collections import namedtuple
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from pydantic import ValidationError as SchemaValidationError

from . import config, schemas
from .cart_store import RedisCartStore
from .exceptions import CartStaleError, ValidationError
from .pricing import ZERO, PricingValidator, check_product, price_line, to_money

logger = logging.getLogger(__name__)

RevalidationRequest = namedtuple("RevalidationRequest", "version items")

CartListener = Callable[[str, "CartAggregator"], None]


class CartAggregator:
    """
    Client-held basket of line items, keyed by product id.

    Args:
        validator: Pricing validator used for every (re)pricing
        store: Snapshot store; without one the cart is memory-only
        cart_id: Key the snapshot is stored under
    """

    def __init__(self, validator: PricingValidator, store: Optional[RedisCartStore] = None,
                 cart_id: Optional[str] = None, tax_rate: Optional[Decimal] = None):
        self.validator = validator
        self.store = store
        self.cart_id = cart_id
        self.tax_rate = config.TAX_RATE if tax_rate is None else tax_rate
        self.warning: Optional[str] = None
        self._lines: Dict[str, schemas.CartLine] = {}
        self._version = 0
        self._validated_version = 0
        self._listeners: List[CartListener] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def items(self) -> List[schemas.CartLine]:
        return [line.model_copy() for line in self._lines.values()]

    @property
    def version(self) -> int:
        return self._version

    @property
    def is_stale(self) -> bool:
        """True while a local change has not been confirmed by the validator."""
        return self._validated_version != self._version

    @property
    def subtotal(self) -> Decimal:
        return sum((line.total_price for line in self._lines.values()), ZERO)

    @property
    def tax(self) -> Decimal:
        return to_money(self.subtotal * self.tax_rate)

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.tax

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self._lines.values())

    def get_line(self, product_id: str) -> Optional[schemas.CartLine]:
        line = self._lines.get(product_id)
        return line.model_copy() if line is not None else None

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------
    def subscribe(self, listener: CartListener) -> Callable[[], None]:
        """
        Register a change listener.

        Returns:
            A callable that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, self)
            except Exception as e:
                logger.error(f"Cart listener failed on '{event}': {e}")

    def _changed(self, event: str) -> None:
        self._version += 1
        self._notify(event)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def add_item(self, product: schemas.ProductData, quantity: int = 1,
                 options: Optional[Dict[str, Any]] = None) -> schemas.CartLine:
        """
        Add ``quantity`` of ``product``, merging with an existing line.

        A merged quantity is clamped to the product maximum.

        Raises:
            ValidationError: Product inactive or ``quantity`` outside its bounds
        """
        is_valid, reason = check_product(product, quantity)
        if not is_valid:
            raise ValidationError(reason, product_id=product.id)

        existing = self._lines.get(product.id)
        if existing is not None:
            quantity = existing.quantity + quantity
            if product.maximum_quantity is not None:
                quantity = min(quantity, product.maximum_quantity)
            options = {**existing.custom_options, **(options or {})}

        unit_price, total_price = price_line(product, quantity)
        line = schemas.CartLine(
            product_id=product.id,
            product_name=product.name,
            product_type=product.product_type,
            quantity=quantity,
            unit_price=unit_price,
            total_price=total_price,
            custom_options=options or {},
        )
        self._lines[product.id] = line
        self._changed("item_added")
        return line.model_copy()

    def remove_item(self, product_id: str) -> bool:
        if self._lines.pop(product_id, None) is None:
            return False
        self._changed("item_removed")
        return True

    def update_quantity(self, product_id: str, quantity: int) -> Optional[schemas.CartLine]:
        """
        Set a line's quantity; zero or less removes the line.

        Raises:
            ValidationError: Line missing, product gone, or quantity outside bounds
        """
        if quantity <= 0:
            self.remove_item(product_id)
            return None

        line = self._lines.get(product_id)
        if line is None:
            raise ValidationError("Item not found in cart", product_id=product_id)

        product = self.validator.catalog.get_product(product_id)
        is_valid, reason = check_product(product, quantity)
        if not is_valid:
            raise ValidationError(reason, product_id=product_id)

        unit_price, total_price = price_line(product, quantity)
        updated = line.model_copy(update={"quantity": quantity, "unit_price": unit_price, "total_price": total_price})
        self._lines[product_id] = updated
        self._changed("quantity_updated")
        return updated.model_copy()

    def update_options(self, product_id: str, options: Dict[str, Any]) -> None:
        line = self._lines.get(product_id)
        if line is None:
            raise ValidationError("Item not found in cart", product_id=product_id)
        self._lines[product_id] = line.model_copy(update={"custom_options": {**line.custom_options, **options}})
        self._changed("options_updated")

    def clear(self) -> None:
        self._lines.clear()
        self.warning = None
        self._changed("cleared")

    # ------------------------------------------------------------------
    # Revalidation
    # ------------------------------------------------------------------
    def begin_revalidation(self) -> RevalidationRequest:
        """Snapshot the lines to send to the validator, tagged with the current version."""
        items = [
            schemas.PricingItem(
                product_id=line.product_id,
                quantity=line.quantity,
                product_type=line.product_type,
                custom_options=line.custom_options,
            )
            for line in self._lines.values()
        ]
        return RevalidationRequest(self._version, items)

    def apply_revalidation(self, version: int, result: schemas.PricingResult) -> Optional[int]:
        """
        Apply a validator response.

        Args:
            version: Cart version the request was issued for
            result: Validator response

        Returns:
            Number of lines dropped, or None when the response was outdated
        """
        if version < self._version:
            logger.debug(f"Discarding pricing response for version {version}, cart is at {self._version}")
            return None

        dropped = 0
        for invalid in result.invalid_items:
            if self._lines.pop(invalid.product_id, None) is not None:
                dropped += 1
                logger.warning(f"Dropped cart line {invalid.product_id}: {invalid.reason}")

        for validated in result.validated_items:
            line = self._lines.get(validated.product_id)
            if line is None:
                continue
            self._lines[validated.product_id] = line.model_copy(
                update={
                    "product_name": validated.product_name,
                    "unit_price": validated.unit_price,
                    "total_price": validated.total_price,
                }
            )

        self._validated_version = version
        self.warning = f"Removed {dropped} item(s) with outdated pricing." if dropped else None
        self._notify("revalidated")
        return dropped

    def revalidate(self) -> Optional[int]:
        """Revalidate against the local validator."""
        request = self.begin_revalidation()
        return self.apply_revalidation(request.version, self.validator.validate(request.items))

    async def revalidate_async(
        self, validate: Callable[[List[schemas.PricingItem]], Awaitable[schemas.PricingResult]]
    ) -> Optional[int]:
        """
        Revalidate through an asynchronous round trip (e.g. the pricing endpoint).

        The cart may change while the request is in flight; the response is
        applied only if no newer mutation happened meanwhile.
        """
        request = self.begin_revalidation()
        result = await validate(request.items)
        return self.apply_revalidation(request.version, result)

    def checkout_items(self) -> List[schemas.PricingItem]:
        """
        Lines to hand to checkout.

        Raises:
            CartStaleError: A revalidation is outstanding
            ValidationError: The cart is empty
        """
        if self.is_stale:
            raise CartStaleError("Cart pricing is being revalidated")
        if not self._lines:
            raise ValidationError("Cart is empty")
        return self.begin_revalidation().items

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def save(self) -> bool:
        if self.store is None or self.cart_id is None:
            return False
        return self.store.save(self.cart_id, [line.model_dump(mode="json") for line in self._lines.values()])

    def discard(self) -> None:
        """Empty the cart and delete its snapshot (after checkout)."""
        self.clear()
        if self.store is not None and self.cart_id is not None:
            self.store.delete(self.cart_id)

    @classmethod
    def load(cls, validator: PricingValidator, store: RedisCartStore, cart_id: str,
             tax_rate: Optional[Decimal] = None) -> Tuple["CartAggregator", int]:
        """
        Restore a cart from its snapshot.

        Expired snapshots yield an empty cart. Every restored line is
        revalidated; lines failing validation are dropped.

        Returns:
            Tuple of (cart, dropped_line_count)
        """
        cart = cls(validator, store=store, cart_id=cart_id, tax_rate=tax_rate)
        snapshot = store.load(cart_id)
        if snapshot is None:
            return cart, 0

        lines = []
        dropped = 0
        for raw in snapshot["items"]:
            try:
                lines.append(schemas.CartLine.model_validate(raw))
            except SchemaValidationError:
                dropped += 1

        result = validator.validate(lines)
        options = {line.product_id: line.custom_options for line in lines}
        for validated in result.validated_items:
            cart._lines[validated.product_id] = schemas.CartLine(
                product_id=validated.product_id,
                product_name=validated.product_name,
                product_type=validated.product_type,
                quantity=validated.quantity,
                unit_price=validated.unit_price,
                total_price=validated.total_price,
                custom_options=options.get(validated.product_id, {}),
            )
        dropped += len(result.invalid_items)

        if dropped:
            cart.warning = f"Removed {dropped} item(s) with outdated pricing."
            logger.warning(f"Dropped {dropped} line(s) while restoring cart {cart_id}")
        return cart, dropped
