"""
Per-user store-credit ledger.

Debits are a single conditional UPDATE at the storage layer, so two
concurrent checkouts can never both spend the same credit and a balance
can never go negative. Every applied movement is logged to
``credit_transactions``.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .exceptions import InsufficientCreditsError, PersistenceError, ValidationError
from .pricing import ZERO, to_money

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


class CreditLedger:
    """
    Store-credit balances backed by the ``credit_accounts`` table.

    Operations that take ``commit=False`` leave the surrounding transaction
    open so a caller (checkout, cancellation) can commit the credit movement
    together with its own writes.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_account(self, user_id: str) -> Optional[models.CreditAccount]:
        return (
            self.db.query(models.CreditAccount)
            .populate_existing()
            .filter(models.CreditAccount.user_id == user_id)
            .first()
        )

    def get_balance(self, user_id: str) -> Decimal:
        """
        Current balance of a user, 0 when the user has no account yet.

        Args:
            user_id: Owner of the balance

        Returns:
            Balance rounded to cents
        """
        balance = self.db.execute(
            select(models.CreditAccount.balance).where(models.CreditAccount.user_id == user_id)
        ).scalar_one_or_none()
        return to_money(balance) if balance is not None else ZERO

    def history(self, user_id: str, limit: int = 100) -> List[models.CreditTransaction]:
        return (
            self.db.query(models.CreditTransaction)
            .filter(models.CreditTransaction.user_id == user_id)
            .order_by(models.CreditTransaction.id.desc())
            .limit(limit)
            .all()
        )

    def debit(self, user_id: str, amount, description: str = "Credits applied to order",
              order_id: Optional[str] = None, commit: bool = True) -> Decimal:
        """
        Spend credit if, and only if, the balance covers it.

        Args:
            user_id: Owner of the balance
            amount: Positive amount to deduct
            description: Reason recorded in the transaction log
            order_id: Order the credit is spent on (optional)
            commit: Commit immediately, or leave it to the caller

        Returns:
            Balance after the debit

        Raises:
            InsufficientCreditsError: Balance is lower than ``amount``; nothing changed
            PersistenceError: The storage write failed
        """
        amount = self._positive(amount)
        try:
            result = self.db.execute(
                update(models.CreditAccount)
                .where(
                    models.CreditAccount.user_id == user_id,
                    models.CreditAccount.balance >= amount,
                )
                .values(
                    balance=models.CreditAccount.balance - amount,
                    total_spent=models.CreditAccount.total_spent + amount,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Credit debit failed for user {user_id}: {e}")
            raise PersistenceError(f"Failed to debit credits: {e}") from e

        if result.rowcount == 0:
            available = self.get_balance(user_id)
            if commit:
                self.db.rollback()
            logger.info(f"Debit of {amount} rejected for user {user_id} (available {available})")
            raise InsufficientCreditsError(user_id, amount, available)

        balance_after = self._record(user_id, amount, "debit", description, order_id, before_delta=amount)
        if commit:
            self._commit()
        logger.info(f"Debited {amount} credits from user {user_id}, balance {balance_after}")
        return balance_after

    def credit(self, user_id: str, amount, description: str = "Credits added",
               order_id: Optional[str] = None, commit: bool = True) -> Decimal:
        """
        Add credit to a user's balance, opening the account if needed.

        Returns:
            Balance after the credit
        """
        amount = self._positive(amount)
        try:
            self._ensure_account(user_id)
            self.db.execute(
                update(models.CreditAccount)
                .where(models.CreditAccount.user_id == user_id)
                .values(
                    balance=models.CreditAccount.balance + amount,
                    total_earned=models.CreditAccount.total_earned + amount,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Credit grant failed for user {user_id}: {e}")
            raise PersistenceError(f"Failed to credit user: {e}") from e

        balance_after = self._record(user_id, amount, "credit", description, order_id, before_delta=-amount)
        if commit:
            self._commit()
        logger.info(f"Credited {amount} to user {user_id}, balance {balance_after}")
        return balance_after

    def _ensure_account(self, user_id: str) -> None:
        insert = _UPSERT_DIALECTS.get(self.db.get_bind().dialect.name)
        if insert is not None:
            self.db.execute(
                insert(models.CreditAccount)
                .values(user_id=user_id, balance=0, total_earned=0, total_spent=0)
                .on_conflict_do_nothing(index_elements=["user_id"])
            )
        elif self.get_account(user_id) is None:
            self.db.add(models.CreditAccount(user_id=user_id, balance=0, total_earned=0, total_spent=0))
            self.db.flush()

    def _record(self, user_id, amount, kind, description, order_id, before_delta) -> Decimal:
        balance_after = self.get_balance(user_id)
        self.db.add(
            models.CreditTransaction(
                user_id=user_id,
                amount=amount,
                type=kind,
                description=description,
                order_id=order_id,
                balance_before=balance_after + before_delta,
                balance_after=balance_after,
            )
        )
        return balance_after

    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to commit credit movement: {e}")
            raise PersistenceError(f"Failed to commit credit movement: {e}") from e

    @staticmethod
    def _positive(amount) -> Decimal:
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationError("Credit amount must be positive")
        return amount
