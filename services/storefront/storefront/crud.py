"""
Order queries and timeline helpers.

Soft-deleted orders are filtered out here, so no caller can read one back.
"""
import uuid
from datetime import datetime
from typing import List, Optional
from sqlalchemy.orm import Session
from . import models


def active_orders(db: Session):
    """Base query over orders that have not been soft-deleted."""
    return db.query(models.Order).filter(models.Order.deleted_at.is_(None))


def get_order(db: Session, order_id: str) -> Optional[models.Order]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found or deleted
    """
    return active_orders(db).filter(models.Order.id == order_id).first()


def get_order_by_payment_reference(db: Session, payment_reference: str) -> Optional[models.Order]:
    """Order holding a payment reference, soft-deleted ones included."""
    return db.query(models.Order).filter(models.Order.payment_reference == payment_reference).first()


def get_orders(db: Session, skip: int = 0, limit: int = 100, user_id: Optional[str] = None,
               status: Optional[str] = None) -> List[models.Order]:
    """
    Retrieve a list of orders with pagination, newest first.

    Args:
        db: Database session
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return
        user_id: Only orders of this customer (optional)
        status: Only orders in this status (optional)

    Returns:
        List of Order objects
    """
    query = active_orders(db)
    if user_id is not None:
        query = query.filter(models.Order.user_id == user_id)
    if status is not None:
        query = query.filter(models.Order.status == status)
    return query.order_by(models.Order.created_at.desc()).offset(skip).limit(limit).all()


def get_order_events(db: Session, order_id: str) -> List[models.OrderEvent]:
    return (
        db.query(models.OrderEvent)
        .filter(models.OrderEvent.order_id == order_id)
        .order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc())
        .all()
    )


def log_order_event(
    db: Session,
    order_id: str,
    event_type: str,
    description: str,
    old_value: str = None,
    new_value: str = None,
    user_id: str = None
) -> models.OrderEvent:
    """
    Add an order event to the timeline.

    The event joins the caller's transaction and is committed with it.

    Args:
        db: Database session
        order_id: Order identifier
        event_type: Type of event (e.g., "created", "status_changed", "note_added")
        description: Human-readable description
        old_value: Previous value (optional)
        new_value: New value (optional)
        user_id: User who triggered the event (optional)
    """
    event = models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        user_id=user_id
    )
    db.add(event)
    return event


def new_order_id() -> str:
    return str(uuid.uuid4())


def new_order_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    return f"HD-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"
