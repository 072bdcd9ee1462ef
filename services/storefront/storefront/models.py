"""
SQLAlchemy ORM models for the storefront core.

Defines the database schema for catalog, order, credit and referral tables.
"""
from datetime import datetime
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from .database import Base, JSONType


class Product(Base):
    """
    Catalog product as read by the pricing validator.

    Attributes:
        id (str): Primary key, product UUID
        name (str): Display name
        product_type (str): "service", "bundle" or "custom_item"
        base_price (Decimal): List price per unit
        sale_price (Decimal): Discounted price per unit, if on sale
        price_per_unit (Decimal): Per-unit rate for custom items
        minimum_quantity (int): Smallest quantity that may be ordered
        maximum_quantity (int): Largest quantity that may be ordered (None = unbounded)
        status (str): "active", "inactive", "draft" or "discontinued"
    """
    __tablename__ = "products"

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)
    product_type = Column(String, nullable=False, default="service")
    base_price = Column(Numeric(10, 2), nullable=False, default=0)
    sale_price = Column(Numeric(10, 2), nullable=True)
    price_per_unit = Column(Numeric(10, 2), nullable=True)
    minimum_quantity = Column(Integer, nullable=False, default=1)
    maximum_quantity = Column(Integer, nullable=True)
    status = Column(String, nullable=False, default="active")
    created_at = Column(DateTime, default=datetime.utcnow)


class Order(Base):
    """
    Canonical order aggregate. Standard, custom and bundle orders share this table.

    Attributes:
        id (str): Primary key, order UUID
        order_number (str): Human-facing order reference
        order_type (str): "standard", "custom" or "bundle", derived from the items
        user_id (str): Customer account, None for guest checkouts
        items (list): Priced line items snapshot (immutable after creation)
        total_amount (Decimal): Amount due after discount, tax and credits (never negative)
        status (str): Workflow axis (pending .. completed, cancelled, refunded)
        payment_status (str): Payment axis (pending, paid, failed, refunded, partial)
        fulfillment_status (str): Delivery axis (unfulfilled, partial, fulfilled)
        progress (int): Fulfillment progress in percent
        status_history (list): Append-only {status, timestamp, note} entries
        version (int): Optimistic concurrency counter, bumped on every write
        deleted_at (datetime): Soft-delete marker; deleted orders are never read back
    """
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_order_total_non_negative"),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_order_progress_range"),
    )

    id = Column(String, primary_key=True, index=True)
    order_number = Column(String, unique=True, nullable=False)
    order_type = Column(String, nullable=False, default="standard")
    user_id = Column(String, nullable=True, index=True)
    customer_email = Column(String, nullable=False)
    customer_name = Column(String, nullable=False)
    customer_discord = Column(String, nullable=True)
    items = Column(JSONType, nullable=False, default=list)
    subtotal_amount = Column(Numeric(10, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(10, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    credits_used = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String, nullable=False, default="pending", index=True)
    payment_status = Column(String, nullable=False, default="pending")
    fulfillment_status = Column(String, nullable=False, default="unfulfilled")
    progress = Column(Integer, nullable=False, default=0)
    payment_reference = Column(String, unique=True, nullable=True)
    payment_method = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    referral_code = Column(String, nullable=True, index=True)
    notes = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True)
    special_instructions = Column(Text, nullable=True)
    order_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    status_history = Column(JSONType, nullable=False, default=list)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    confirmed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)

    __mapper_args__ = {"version_id_col": version}


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (str): Foreign key to the order
        event_type (str): Type of event (e.g., "created", "status_changed", "note_added")
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        user_id (str): ID of the user who triggered the event (optional)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    user_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class CreditAccount(Base):
    """
    Store-credit balance of a single user.

    Attributes:
        user_id (str): Primary key, owning user
        balance (Decimal): Spendable credit, never negative
        total_earned (Decimal): Lifetime credit added
        total_spent (Decimal): Lifetime credit debited
    """
    __tablename__ = "credit_accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_balance_non_negative"),
    )

    user_id = Column(String, primary_key=True, index=True)
    balance = Column(Numeric(10, 2), nullable=False, default=0)
    total_earned = Column(Numeric(10, 2), nullable=False, default=0)
    total_spent = Column(Numeric(10, 2), nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class CreditTransaction(Base):
    """Audit log row for every applied debit or credit."""
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    type = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    order_id = Column(String, nullable=True)
    balance_before = Column(Numeric(10, 2), nullable=False)
    balance_after = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ReferralCode(Base):
    """Referral code owned by exactly one user."""
    __tablename__ = "referral_codes"

    code = Column(String, primary_key=True)
    user_id = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Referral(Base):
    """
    Commission record linking a referred order to its referrer.

    Attributes:
        referrer_user_id (str): Owner of the referral code
        referred_user_id (str): Customer who placed the order (None for guests)
        order_id (str): Referred order, at most one record per order
        order_type (str): Order sub-type, kept so stats can be broken down later
        commission_amount (Decimal): Commission rate applied to the order total
        clawback_shortfall (Decimal): Part of a reversed commission the referrer had already spent
        status (str): "pending", "completed" or "cancelled", mirrored from the order
    """
    __tablename__ = "referrals"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    referrer_user_id = Column(String, nullable=False, index=True)
    referred_user_id = Column(String, nullable=True)
    referral_code = Column(String, nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), unique=True, nullable=False)
    order_type = Column(String, nullable=False, default="standard")
    commission_amount = Column(Numeric(10, 2), nullable=False)
    clawback_shortfall = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(String, nullable=False, default="pending")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
