"""
Referral codes, commission records and referrer statistics.

A referral record is created once per referred order, when the order is
completed; afterwards its status follows the order, and a reversed order
takes back the commission it paid. Statistics are keyed by code ownership,
so standard, custom and bundle orders all count towards the same referrer.
Reading statistics never creates a code.
"""
import logging
import uuid
from decimal import Decimal
from typing import Optional
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import config, crud, models, schemas
from .exceptions import InsufficientCreditsError, PersistenceError
from .ledger import CreditLedger
from .pricing import ZERO, to_money
from .validators import referral_bucket

logger = logging.getLogger(__name__)


def normalize_code(code: Optional[str]) -> Optional[str]:
    if code is None:
        return None
    code = code.strip().upper()
    return code or None


class ReferralAttributor:
    """
    Resolves referral codes and accrues commissions.

    Args:
        db: Database session
        ledger: Credit ledger commissions are paid into
        commission_rate: Share of the order total paid as commission
    """

    def __init__(self, db: Session, ledger: Optional[CreditLedger] = None,
                 commission_rate: Optional[Decimal] = None):
        self.db = db
        self.ledger = ledger if ledger is not None else CreditLedger(db)
        self.commission_rate = config.REFERRAL_COMMISSION_RATE if commission_rate is None else commission_rate

    def commission_for(self, total_amount) -> Decimal:
        return to_money(to_money(total_amount) * self.commission_rate)

    # ------------------------------------------------------------------
    # Codes
    # ------------------------------------------------------------------
    def code_of(self, user_id: str) -> Optional[str]:
        """The user's existing referral code, without creating one."""
        existing = self.db.query(models.ReferralCode).filter(models.ReferralCode.user_id == user_id).first()
        return existing.code if existing is not None else None

    def code_for(self, user_id: str) -> str:
        """Return the user's referral code, creating it on first use."""
        existing = self.code_of(user_id)
        if existing is not None:
            return existing

        candidates = [
            f"{config.REFERRAL_CODE_PREFIX}-{user_id[-6:]}".upper(),
            f"{config.REFERRAL_CODE_PREFIX}-{uuid.uuid4().hex[:8]}".upper(),
        ]
        for code in candidates:
            if self.db.get(models.ReferralCode, code) is not None:
                continue
            self.db.add(models.ReferralCode(code=code, user_id=user_id))
            try:
                self.db.commit()
                return code
            except IntegrityError:
                self.db.rollback()
                existing = self.db.query(models.ReferralCode).filter(models.ReferralCode.user_id == user_id).first()
                if existing is not None:
                    return existing.code
            except SQLAlchemyError as e:
                self.db.rollback()
                raise PersistenceError(f"Failed to create referral code: {e}") from e

        raise PersistenceError(f"Could not allocate a referral code for user {user_id}")

    def resolve(self, code: Optional[str]) -> Optional[str]:
        """Owner of ``code``, or None when the code is unknown."""
        code = normalize_code(code)
        if code is None:
            return None
        owner = self.db.query(models.ReferralCode).filter(models.ReferralCode.code == code).first()
        return owner.user_id if owner is not None else None

    # ------------------------------------------------------------------
    # Accrual
    # ------------------------------------------------------------------
    def get_record(self, order_id: str) -> Optional[models.Referral]:
        return self.db.query(models.Referral).filter(models.Referral.order_id == order_id).first()

    def accrue(self, order: models.Order) -> Optional[models.Referral]:
        """
        Record the commission for a referred order.

        Nothing is recorded when the order carries no code, the code is
        unknown, or the referrer is the customer. A completed record pays
        the commission into the referrer's credit balance in the same
        commit. Accruing an order twice only re-syncs the record status.

        Returns:
            The referral record, or None when the order is not attributable
        """
        referrer_id = self.resolve(order.referral_code)
        if referrer_id is None:
            if order.referral_code:
                logger.info(f"Order {order.id} carries unknown referral code {order.referral_code}")
            return None
        if referrer_id == order.user_id:
            logger.info(f"Ignoring self-referral on order {order.id}")
            return None

        existing = self.get_record(order.id)
        if existing is not None:
            return self.sync_status(order)

        status = referral_bucket(order.status)
        commission = self.commission_for(order.total_amount)
        record = models.Referral(
            referrer_user_id=referrer_id,
            referred_user_id=order.user_id,
            referral_code=normalize_code(order.referral_code),
            order_id=order.id,
            order_type=order.order_type,
            commission_amount=commission,
            status=status,
        )
        self.db.add(record)
        try:
            self.db.flush()
            if status == "completed" and commission > ZERO:
                self.ledger.credit(
                    referrer_id,
                    commission,
                    description=f"Referral commission for order {order.order_number}",
                    order_id=order.id,
                    commit=False,
                )
            self.db.commit()
        except IntegrityError:
            # Another writer recorded this order first
            self.db.rollback()
            return self.get_record(order.id)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to record referral for order {order.id}: {e}") from e

        logger.info(f"Accrued referral commission {commission} on order {order.id} for user {referrer_id}")
        return record

    def sync_status(self, order: models.Order) -> Optional[models.Referral]:
        """
        Mirror the order's bucket onto its existing referral record.

        When a completed record is cancelled, the commission already paid to
        the referrer is debited back in the same commit. Whatever the
        referrer has spent in the meantime is recorded as
        ``clawback_shortfall`` instead.
        """
        record = self.get_record(order.id)
        if record is None:
            return None
        status = referral_bucket(order.status)
        if record.status == status:
            return record

        reversed_amount = ZERO
        if record.status == "completed" and status == "cancelled":
            reversed_amount = self._reverse_commission(record, order)
        record.status = status
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to update referral for order {order.id}: {e}") from e
        logger.info(f"Referral for order {order.id} is now {status} (reversed {reversed_amount})")
        return record

    def _reverse_commission(self, record: models.Referral, order: models.Order) -> Decimal:
        commission = to_money(record.commission_amount)
        amount = min(commission, self.ledger.get_balance(record.referrer_user_id))
        if amount > ZERO:
            try:
                self.ledger.debit(
                    record.referrer_user_id,
                    amount,
                    description=f"Referral commission reversed for order {order.order_number}",
                    order_id=order.id,
                    commit=False,
                )
            except InsufficientCreditsError:
                # Balance spent between the read and the debit
                amount = ZERO
        shortfall = commission - amount
        record.clawback_shortfall = shortfall
        if shortfall > ZERO:
            logger.warning(
                f"Referrer {record.referrer_user_id} already spent {shortfall} of the commission on order {order.id}"
            )
        return amount

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------
    def get_stats(self, user_id: str) -> schemas.ReferralStats:
        """
        Referrer statistics merged across all order types.

        Returns:
            ReferralStats with referral count, earned and pending commission,
            and the referrer's credit balance
        """
        code = self.code_of(user_id)
        if code is None:
            return schemas.ReferralStats(
                total_referred=0,
                total_earned=ZERO,
                pending_earnings=ZERO,
                credit_balance=self.ledger.get_balance(user_id),
            )

        orders = (
            crud.active_orders(self.db)
            .filter(models.Order.referral_code == code)
            .filter(or_(models.Order.user_id.is_(None), models.Order.user_id != user_id))
            .all()
        )
        records = (
            self.db.query(models.Referral)
            .filter(models.Referral.referrer_user_id == user_id)
            .order_by(models.Referral.created_at.desc())
            .all()
        )
        records_by_order = {record.order_id: record for record in records}

        total_earned = sum(
            (to_money(record.commission_amount) for record in records if record.status == "completed"),
            ZERO,
        )
        pending_earnings = ZERO
        for order in orders:
            record = records_by_order.get(order.id)
            status = record.status if record is not None else referral_bucket(order.status)
            if status != "pending":
                continue
            pending_earnings += to_money(record.commission_amount) if record is not None else self.commission_for(order.total_amount)

        return schemas.ReferralStats(
            referral_code=code,
            total_referred=len(orders),
            total_earned=total_earned,
            pending_earnings=pending_earnings,
            credit_balance=self.ledger.get_balance(user_id),
            referrals=[schemas.ReferralRecord.model_validate(record) for record in records],
        )
