"""
Order lifecycle: checkout, the status state machine and the audit trail.

Orders are only ever mutated through ``OrderLifecycleManager``. Every write
is a single commit guarded by the order's version column; side effects that
may fail on their own (referral accrual, subscriber notifications) run after
that commit and never undo it.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import config, crud, models, schemas
from .exceptions import (
    ConcurrencyConflictError,
    InsufficientCreditsError,
    InvalidTransitionError,
    OrderNotFoundError,
    PaymentRequiredError,
    PersistenceError,
    ValidationError,
)
from .ledger import CreditLedger
from .pricing import ZERO, PricingValidator, compute_totals, to_money
from .referrals import ReferralAttributor, normalize_code
from .validators import TERMINAL_STATUSES, derive_order_type, validate_progress, validate_status_transition

logger = logging.getLogger(__name__)

OrderListener = Callable[[str, Dict[str, Any]], None]


def order_payload(order: models.Order) -> Dict[str, Any]:
    """JSON-safe summary of an order handed to subscribers."""
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "order_type": order.order_type,
        "user_id": order.user_id,
        "status": order.status,
        "payment_status": order.payment_status,
        "total_amount": str(order.total_amount),
        "created_at": order.created_at.isoformat() if order.created_at else "",
    }


class OrderLifecycleManager:
    """
    Creates orders from validated carts and moves them through their workflow.

    Args:
        db: Database session
        validator: Pricing validator used to reprice checkout items
        ledger: Credit ledger credits are spent from and restored to
        referrals: Referral attributor notified on completion and reversal
        get_client_ip: Best-effort source of the customer's IP address
        max_retries: Automatic retries of a failed status update
    """

    def __init__(
        self,
        db: Session,
        validator: PricingValidator,
        ledger: Optional[CreditLedger] = None,
        referrals: Optional[ReferralAttributor] = None,
        get_client_ip: Optional[Callable[[], Optional[str]]] = None,
        tax_rate: Optional[Decimal] = None,
        max_retries: Optional[int] = None,
    ):
        self.db = db
        self.validator = validator
        self.ledger = ledger if ledger is not None else CreditLedger(db)
        self.referrals = referrals if referrals is not None else ReferralAttributor(db, self.ledger)
        self.get_client_ip = get_client_ip
        self.tax_rate = config.TAX_RATE if tax_rate is None else tax_rate
        self.max_retries = config.STATUS_UPDATE_RETRIES if max_retries is None else max_retries
        self._listeners: List[OrderListener] = []

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------
    def subscribe(self, listener: OrderListener) -> Callable[[], None]:
        """
        Register a listener for order events.

        Listeners receive ``(event_type, payload)`` after the change is committed.

        Returns:
            A callable that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event_type: str, data: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event_type, data)
            except Exception as e:
                logger.warning(f"Order listener failed on '{event_type}': {e}")

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------
    def create_order(self, order: schemas.OrderCreate, actor_id: Optional[str] = None) -> str:
        """
        Turn a cart snapshot into a pending order.

        Items are repriced from the catalog; client prices are never trusted.
        Lines that fail validation are dropped and listed under
        ``metadata.dropped_items``. Credits are debited in the same
        transaction as the order insert, so either both happen or neither.

        Args:
            order: Checkout data
            actor_id: User who placed the order (optional)

        Returns:
            ID of the new order, or of the existing order carrying the same
            payment reference

        Raises:
            ValidationError: No valid item left, credits requested by a guest, or
                the payment reference belongs to a deleted order
            InsufficientCreditsError: Credit balance does not cover the credits used
            PersistenceError: The order could not be stored
        """
        if order.payment_reference:
            existing = self._order_for_reference(order.payment_reference)
            if existing is not None:
                logger.info(f"Payment reference {order.payment_reference} already used by order {existing.id}")
                return existing.id

        result = self.validator.validate(order.items)
        for invalid in result.invalid_items:
            logger.warning(f"Dropping checkout item {invalid.product_id}: {invalid.reason}")
        if not result.validated_items:
            raise ValidationError("No valid items in order")

        user_id = order.customer.user_id
        if order.credits_to_use > 0 and not user_id:
            raise ValidationError("Credits can only be used by signed-in customers")

        totals = compute_totals(result.summary.total_value, order.discount, order.credits_to_use, self.tax_rate)

        payment_status = order.payment_status
        payment_method = None
        if totals.credits > ZERO and totals.total == ZERO:
            payment_status = "paid"
            payment_method = "credits"

        ip_address = self._client_ip()
        metadata = {}
        if ip_address:
            metadata["ip_address"] = ip_address
        if result.invalid_items:
            metadata["dropped_items"] = [item.model_dump(mode="json") for item in result.invalid_items]

        now = datetime.utcnow()
        db_order = models.Order(
            id=crud.new_order_id(),
            order_number=crud.new_order_number(now),
            order_type=derive_order_type(item.product_type for item in result.validated_items),
            user_id=user_id,
            customer_email=str(order.customer.email),
            customer_name=order.customer.name,
            customer_discord=order.customer.discord,
            items=[item.model_dump(mode="json") for item in result.validated_items],
            subtotal_amount=totals.subtotal,
            tax_amount=totals.tax,
            discount_amount=totals.discount,
            credits_used=totals.credits,
            total_amount=totals.total,
            currency=config.CURRENCY,
            status="pending",
            payment_status=payment_status,
            fulfillment_status="unfulfilled",
            progress=0,
            payment_reference=order.payment_reference,
            payment_method=payment_method,
            ip_address=ip_address,
            referral_code=normalize_code(order.referral_code),
            notes=order.notes,
            special_instructions=order.special_instructions,
            order_metadata=metadata,
            status_history=[{"status": "pending", "timestamp": now.isoformat(), "note": "Order created"}],
            created_at=now,
            updated_at=now,
        )

        try:
            self.db.add(db_order)
            self.db.flush()
            if totals.credits > ZERO:
                self.ledger.debit(
                    user_id,
                    totals.credits,
                    description=f"Credits applied to order {db_order.order_number}",
                    order_id=db_order.id,
                    commit=False,
                )
            crud.log_order_event(
                self.db,
                order_id=db_order.id,
                event_type="created",
                description="Order created with status 'pending'",
                new_value="pending",
                user_id=actor_id,
            )
            self.db.commit()
        except InsufficientCreditsError:
            self.db.rollback()
            raise
        except IntegrityError as e:
            self.db.rollback()
            if order.payment_reference:
                existing = self._order_for_reference(order.payment_reference)
                if existing is not None:
                    logger.info(f"Payment reference {order.payment_reference} claimed concurrently by order {existing.id}")
                    return existing.id
            logger.error(f"Failed to create order: {e}")
            raise PersistenceError(f"Failed to create order: {e}") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to create order: {e}")
            raise PersistenceError(f"Failed to create order: {e}") from e

        logger.info(
            f"Created {db_order.order_type} order {db_order.id} total={totals.total} "
            f"credits={totals.credits} dropped={len(result.invalid_items)}"
        )
        self._notify("order.created", order_payload(db_order))
        return db_order.id

    def _order_for_reference(self, payment_reference: str) -> Optional[models.Order]:
        existing = crud.get_order_by_payment_reference(self.db, payment_reference)
        if existing is not None and existing.deleted_at is not None:
            raise ValidationError(f"Payment reference {payment_reference} belongs to a deleted order")
        return existing

    def _client_ip(self) -> Optional[str]:
        if self.get_client_ip is None:
            return None
        try:
            return self.get_client_ip()
        except Exception as e:
            logger.warning(f"Could not determine client IP: {e}")
            return None

    # ------------------------------------------------------------------
    # Status workflow
    # ------------------------------------------------------------------
    def update_status(
        self,
        order_id: str,
        new_status: str,
        note: Optional[str] = None,
        payment_status: Optional[str] = None,
        override: bool = False,
        actor_id: Optional[str] = None,
    ) -> models.Order:
        """
        Move an order to ``new_status``.

        Completion sets ``completed_at``, ``fulfillment_status`` and
        ``progress`` in the same commit as the status. Cancelling or
        refunding returns the credits spent on the order. A storage failure
        is retried ``max_retries`` times against a freshly loaded order.

        Raises:
            OrderNotFoundError: Order does not exist or was deleted
            InvalidTransitionError: Transition not allowed from the current status
            PaymentRequiredError: Completion requested before payment, without override
            PersistenceError: The update could not be stored after retrying
        """
        attempt = 0
        while True:
            try:
                db_order, old_status = self._apply_status(order_id, new_status, note, payment_status, override, actor_id)
                break
            except PersistenceError as e:
                if attempt >= self.max_retries:
                    logger.error(f"Status update of order {order_id} to {new_status} failed: {e}")
                    raise
                attempt += 1
                logger.warning(f"Status update of order {order_id} failed, retrying ({attempt}/{self.max_retries}): {e}")

        logger.info(f"Order {order_id} status {old_status} -> {new_status}")
        if new_status == "completed":
            self._accrue_referral(db_order)
        elif new_status in ("cancelled", "refunded"):
            self._sync_referral(db_order)

        self._notify(
            "order.status_changed",
            {"order_id": order_id, "old_status": old_status, "new_status": new_status},
        )
        return db_order

    def _apply_status(self, order_id, new_status, note, payment_status, override, actor_id) -> Tuple[models.Order, str]:
        db_order = self._load(order_id)
        old_status = db_order.status

        is_valid, error = validate_status_transition(old_status, new_status)
        if not is_valid:
            logger.info(f"Rejected transition on order {order_id}: {error}")
            raise InvalidTransitionError(old_status, new_status)

        effective_payment = payment_status or db_order.payment_status
        if new_status == "completed" and effective_payment != "paid":
            if not override:
                raise PaymentRequiredError(f"Order {order_id} cannot be completed while payment is {effective_payment}")
            note = f"{note} (payment override)" if note else "Completed with payment override"
            logger.warning(f"Order {order_id} completed with payment {effective_payment} by override")

        now = datetime.utcnow()
        if payment_status and payment_status != db_order.payment_status:
            self._set_payment_status(db_order, payment_status, actor_id)

        db_order.status = new_status
        if new_status == "confirmed" and db_order.confirmed_at is None:
            db_order.confirmed_at = now
        elif new_status == "completed":
            db_order.completed_at = now
            db_order.fulfillment_status = "fulfilled"
            db_order.progress = 100
        elif new_status in ("cancelled", "refunded"):
            if new_status == "refunded" and db_order.payment_status == "paid":
                self._set_payment_status(db_order, "refunded", actor_id)
            self._restore_credits(db_order)

        # Reassign so the JSON column is flagged dirty
        db_order.status_history = list(db_order.status_history or []) + [
            {"status": new_status, "timestamp": now.isoformat(), "note": note}
        ]
        db_order.updated_at = now

        crud.log_order_event(
            self.db,
            order_id=order_id,
            event_type="status_changed",
            description=f"Status changed from '{old_status}' to '{new_status}'",
            old_value=old_status,
            new_value=new_status,
            user_id=actor_id,
        )
        self._commit(order_id)
        return db_order, old_status

    def _set_payment_status(self, db_order: models.Order, payment_status: str, actor_id: Optional[str]) -> None:
        crud.log_order_event(
            self.db,
            order_id=db_order.id,
            event_type="payment_changed",
            description=f"Payment status changed from '{db_order.payment_status}' to '{payment_status}'",
            old_value=db_order.payment_status,
            new_value=payment_status,
            user_id=actor_id,
        )
        db_order.payment_status = payment_status

    def _restore_credits(self, db_order: models.Order) -> None:
        credits_used = to_money(db_order.credits_used or 0)
        if credits_used <= ZERO or not db_order.user_id:
            return
        self.ledger.credit(
            db_order.user_id,
            credits_used,
            description=f"Credits restored from order {db_order.order_number}",
            order_id=db_order.id,
            commit=False,
        )
        logger.info(f"Restoring {credits_used} credits to user {db_order.user_id} from order {db_order.id}")

    def _accrue_referral(self, db_order: models.Order) -> None:
        if not db_order.referral_code:
            return
        try:
            self.referrals.accrue(db_order)
        except Exception as e:
            self.db.rollback()
            logger.warning(f"Referral accrual failed for order {db_order.id}: {e}")

    def _sync_referral(self, db_order: models.Order) -> None:
        if not db_order.referral_code:
            return
        try:
            self.referrals.sync_status(db_order)
        except Exception as e:
            self.db.rollback()
            logger.warning(f"Referral sync failed for order {db_order.id}: {e}")

    # ------------------------------------------------------------------
    # Other updates
    # ------------------------------------------------------------------
    def update_payment_status(self, order_id: str, payment_status: str,
                              actor_id: Optional[str] = None) -> models.Order:
        db_order = self._load(order_id)
        if payment_status == db_order.payment_status:
            return db_order
        self._set_payment_status(db_order, payment_status, actor_id)
        db_order.updated_at = datetime.utcnow()
        self._commit(order_id)
        logger.info(f"Order {order_id} payment status is now {payment_status}")
        self._notify("order.updated", order_payload(db_order))
        return db_order

    def update_progress(self, order_id: str, progress: int, actor_id: Optional[str] = None) -> models.Order:
        """
        Record fulfillment progress in percent.

        Raises:
            ValidationError: Progress outside 0-100 or the order is closed
        """
        is_valid, error = validate_progress(progress)
        if not is_valid:
            raise ValidationError(error)

        db_order = self._load(order_id)
        if db_order.status in TERMINAL_STATUSES:
            raise ValidationError(f"Cannot update progress of a {db_order.status} order")

        old_progress = db_order.progress
        db_order.progress = progress
        if progress > 0 and db_order.fulfillment_status == "unfulfilled":
            db_order.fulfillment_status = "partial"
        db_order.updated_at = datetime.utcnow()
        crud.log_order_event(
            self.db,
            order_id=order_id,
            event_type="progress_updated",
            description=f"Progress updated to {progress}%",
            old_value=str(old_progress),
            new_value=str(progress),
            user_id=actor_id,
        )
        self._commit(order_id)
        self._notify("order.updated", order_payload(db_order))
        return db_order

    def add_note(self, order_id: str, note: str, is_admin: bool = False,
                 actor_id: Optional[str] = None) -> models.Order:
        """Append a customer note, or an admin note when ``is_admin`` is set."""
        note = note.strip()
        if not note:
            raise ValidationError("Note must not be empty")

        db_order = self._load(order_id)
        field = "admin_notes" if is_admin else "notes"
        current = getattr(db_order, field)
        setattr(db_order, field, f"{current}\n{note}" if current else note)
        db_order.updated_at = datetime.utcnow()
        crud.log_order_event(
            self.db,
            order_id=order_id,
            event_type="note_added",
            description="Admin note added" if is_admin else "Note added",
            new_value=note,
            user_id=actor_id,
        )
        self._commit(order_id)
        return db_order

    def soft_delete(self, order_id: str, actor_id: Optional[str] = None) -> None:
        db_order = self._load(order_id)
        now = datetime.utcnow()
        db_order.deleted_at = now
        db_order.updated_at = now
        crud.log_order_event(
            self.db,
            order_id=order_id,
            event_type="deleted",
            description="Order deleted",
            user_id=actor_id,
        )
        self._commit(order_id)
        logger.info(f"Order {order_id} soft-deleted")
        self._notify("order.deleted", {"order_id": order_id})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_order(self, order_id: str) -> models.Order:
        db_order = crud.get_order(self.db, order_id)
        if db_order is None:
            raise OrderNotFoundError(order_id)
        return db_order

    def list_orders(self, user_id: Optional[str] = None, status: Optional[str] = None,
                    skip: int = 0, limit: int = 100) -> List[models.Order]:
        return crud.get_orders(self.db, skip=skip, limit=limit, user_id=user_id, status=status)

    def get_orders_by_user(self, user_id: str) -> List[models.Order]:
        return self.list_orders(user_id=user_id, limit=None)

    def get_timeline(self, order_id: str) -> List[models.OrderEvent]:
        self.get_order(order_id)
        return crud.get_order_events(self.db, order_id)

    def get_stats(self, user_id: Optional[str] = None) -> schemas.OrderStats:
        """
        Order counts and revenue over non-deleted orders.

        Revenue counts completed orders only; the fulfillment rate is the
        share of orders that were completed, in percent.
        """
        query = crud.active_orders(self.db)
        if user_id is not None:
            query = query.filter(models.Order.user_id == user_id)

        counts = dict(
            query.with_entities(models.Order.status, func.count(models.Order.id))
            .group_by(models.Order.status)
            .all()
        )
        total_orders = sum(counts.values())
        completed_orders = counts.get("completed", 0)
        pending_orders = sum(counts.get(status, 0) for status in ("pending", "confirmed", "processing", "in_progress"))

        revenue = (
            query.filter(models.Order.status == "completed")
            .with_entities(func.coalesce(func.sum(models.Order.total_amount), 0))
            .scalar()
        )
        total_revenue = to_money(revenue or 0)
        avg_order_value = to_money(total_revenue / completed_orders) if completed_orders else ZERO
        fulfillment_rate = round(completed_orders / total_orders * 100, 2) if total_orders else 0.0

        return schemas.OrderStats(
            total_orders=total_orders,
            pending_orders=pending_orders,
            completed_orders=completed_orders,
            total_revenue=total_revenue,
            avg_order_value=avg_order_value,
            fulfillment_rate=fulfillment_rate,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _load(self, order_id: str) -> models.Order:
        db_order = (
            crud.active_orders(self.db)
            .populate_existing()
            .filter(models.Order.id == order_id)
            .first()
        )
        if db_order is None:
            raise OrderNotFoundError(order_id)
        return db_order

    def _commit(self, order_id: str) -> None:
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            logger.warning(f"Order {order_id} was modified concurrently")
            raise ConcurrencyConflictError(f"Order {order_id} was modified concurrently") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to update order {order_id}: {e}")
            raise PersistenceError(f"Failed to update order {order_id}: {e}") from e
