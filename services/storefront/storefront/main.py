"""
Storefront Service API

This module implements the FastAPI boundary of the storefront core. It
translates wire payloads (including the legacy camelCase checkout payload)
into the canonical schemas and delegates every business rule to the pricing,
order, credit and referral services.

Endpoints:
    GET /healthz: Health check endpoint for orchestration systems
    POST /pricing/validate: Reprice cart items from the catalog
    POST /orders: Create an order from a cart snapshot
    GET /orders: List orders (own orders, or all for admins)
    GET /orders/stats: Order counts and revenue
    GET /orders/{order_id}: Get a single order
    GET /orders/{order_id}/timeline: Order event timeline
    PUT /orders/{order_id}/status: Move an order along its workflow (admin)
    PUT /orders/{order_id}/payment: Update the payment status (admin)
    PUT /orders/{order_id}/progress: Update fulfillment progress (admin)
    POST /orders/{order_id}/notes: Add a note
    DELETE /orders/{order_id}: Soft-delete an order (admin)
    GET /credits/me: Current user's credit balance
    POST /credits/{user_id}/grant: Grant store credit (admin)
    GET /referrals/me: Current user's referral statistics
    POST /referrals/me/code: Create (or return) the current user's referral code

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "storefront-service"
"""
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.orm import Session

from . import auth, models, schemas, webhooks
from .catalog import SqlCatalog
from .database import engine, get_db
from .exceptions import (
    ConcurrencyConflictError,
    InsufficientCreditsError,
    OrderNotFoundError,
    PersistenceError,
    ValidationError,
)
from .ledger import CreditLedger
from .orders import OrderLifecycleManager
from .pricing import ZERO, PricingValidator
from .referrals import ReferralAttributor

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables
    models.Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="storefront-service", lifespan=lifespan)


# ----------------------------------------------------------------------
# Error mapping
# ----------------------------------------------------------------------
def _error(status_code: int, exc: Exception, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc), **extra})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error(status.HTTP_400_BAD_REQUEST, exc, product_id=exc.product_id)


@app.exception_handler(InsufficientCreditsError)
async def insufficient_credits_handler(request: Request, exc: InsufficientCreditsError):
    return _error(status.HTTP_402_PAYMENT_REQUIRED, exc, available=str(exc.available))


@app.exception_handler(OrderNotFoundError)
async def order_not_found_handler(request: Request, exc: OrderNotFoundError):
    return _error(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(ConcurrencyConflictError)
async def conflict_handler(request: Request, exc: ConcurrencyConflictError):
    return _error(status.HTTP_409_CONFLICT, exc)


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc)


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------
def client_ip(request: Request) -> Optional[str]:
    """Originating client address, honouring X-Forwarded-For."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def get_validator(db: Session = Depends(get_db)) -> PricingValidator:
    return PricingValidator(SqlCatalog(db))


def get_ledger(db: Session = Depends(get_db)) -> CreditLedger:
    return CreditLedger(db)


def get_referrals(db: Session = Depends(get_db), ledger: CreditLedger = Depends(get_ledger)) -> ReferralAttributor:
    return ReferralAttributor(db, ledger)


def get_order_manager(
    request: Request,
    db: Session = Depends(get_db),
    validator: PricingValidator = Depends(get_validator),
    ledger: CreditLedger = Depends(get_ledger),
    referrals: ReferralAttributor = Depends(get_referrals),
) -> OrderLifecycleManager:
    manager = OrderLifecycleManager(db, validator, ledger, referrals, get_client_ip=lambda: client_ip(request))
    manager.subscribe(webhooks.dispatch)
    return manager


def _check_access(db_order: models.Order, current_user: auth.CurrentUser, action: str) -> None:
    if not current_user.is_admin and db_order.user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Not authorized to {action} this order"
        )


def parse_checkout(payload: Dict[str, Any]) -> schemas.OrderCreate:
    """Accept the canonical payload or the legacy ``{paymentIntentId, orderData}`` shape."""
    try:
        if "orderData" in payload or "order_data" in payload:
            return schemas.LegacyOrderPayload.model_validate(payload).to_order_create()
        return schemas.OrderCreate.model_validate(payload)
    except SchemaValidationError as e:
        raise RequestValidationError(e.errors())


# ----------------------------------------------------------------------
# Endpoints
# ----------------------------------------------------------------------
@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the storefront service.

    Returns:
        dict: {"status": "healthy"} when the service is operational
    """
    return {"status": "healthy"}


@app.post("/pricing/validate", response_model=schemas.PricingResult)
def validate_pricing(request: schemas.PricingRequest, validator: PricingValidator = Depends(get_validator)):
    """
    Reprice items from canonical catalog data.

    Client-supplied prices are never read; invalid items are reported with a reason.
    """
    return validator.validate(request.items)


@app.post("/orders", response_model=schemas.OrderCreated, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: Dict[str, Any] = Body(...),
    manager: OrderLifecycleManager = Depends(get_order_manager),
    current_user: Optional[auth.CurrentUser] = Depends(auth.get_optional_user),
):
    """
    Create an order from a cart snapshot (guests allowed).

    Signed-in customers always order for themselves; admins may order on
    behalf of any user. Guests cannot spend credits. Only admins may set
    the payment status or a discount; for everyone else the order starts
    unpaid at catalog price.

    Raises:
        HTTPException: 400 if no valid item remains
        HTTPException: 402 if the credit balance is too low
        HTTPException: 422 if the payload is malformed
    """
    order = parse_checkout(payload)
    if current_user is None:
        order.customer.user_id = None
    elif not current_user.is_admin or order.customer.user_id is None:
        order.customer.user_id = current_user.id

    if current_user is None or not current_user.is_admin:
        if order.payment_status != "pending" or order.discount > 0:
            logger.warning(
                f"Ignoring client payment status '{order.payment_status}' and discount {order.discount} at checkout"
            )
        order.payment_status = "pending"
        order.discount = Decimal("0")

    order_id = manager.create_order(order, actor_id=current_user.id if current_user else None)
    db_order = manager.get_order(order_id)
    return schemas.OrderCreated(
        order_id=db_order.id,
        order_number=db_order.order_number,
        total_amount=db_order.total_amount,
    )


@app.get("/orders", response_model=List[schemas.Order])
def list_orders(
    skip: int = 0,
    limit: int = 100,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    user_id: Optional[str] = None,
    manager: OrderLifecycleManager = Depends(get_order_manager),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    List orders with pagination (authenticated users see their own, admins see all).
    """
    if not current_user.is_admin:
        user_id = current_user.id
    return manager.list_orders(user_id=user_id, status=status_filter, skip=skip, limit=limit)


@app.get("/orders/stats", response_model=schemas.OrderStats)
def order_stats(
    manager: OrderLifecycleManager = Depends(get_order_manager),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Order statistics (authenticated users see their own, admins see all)."""
    return manager.get_stats(user_id=None if current_user.is_admin else current_user.id)


@app.get("/orders/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: str,
    manager: OrderLifecycleManager = Depends(get_order_manager),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get a single order by ID (owner or admin).

    Raises:
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
    """
    db_order = manager.get_order(order_id)
    _check_access(db_order, current_user, "access")
    return db_order


@app.get("/orders/{order_id}/timeline", response_model=List[schemas.OrderEvent])
def get_order_timeline(
    order_id: str,
    manager: OrderLifecycleManager = Depends(get_order_manager),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get the timeline of events for an order (owner or admin).

    Returns:
        List of order events in chronological order
    """
    _check_access(manager.get_order(order_id), current_user, "view the timeline of")
    return manager.get_timeline(order_id)


@app.put("/orders/{order_id}/status", response_model=schemas.Order)
async def update_order_status(
    order_id: str,
    update: schemas.StatusUpdate,
    manager: OrderLifecycleManager = Depends(get_order_manager),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Move an order along its workflow (admin only).

    Raises:
        HTTPException: 400 if the transition is not allowed or payment is missing
        HTTPException: 404 if order not found
        HTTPException: 409 if the order changed concurrently
    """
    return manager.update_status(
        order_id,
        update.status,
        note=update.note,
        payment_status=update.payment_status,
        override=update.override,
        actor_id=current_user.id,
    )


@app.put("/orders/{order_id}/payment", response_model=schemas.Order)
async def update_payment_status(
    order_id: str,
    update: schemas.PaymentUpdate,
    manager: OrderLifecycleManager = Depends(get_order_manager),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    return manager.update_payment_status(order_id, update.payment_status, actor_id=current_user.id)


@app.put("/orders/{order_id}/progress", response_model=schemas.Order)
async def update_progress(
    order_id: str,
    update: schemas.ProgressUpdate,
    manager: OrderLifecycleManager = Depends(get_order_manager),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    return manager.update_progress(order_id, update.progress, actor_id=current_user.id)


@app.post("/orders/{order_id}/notes", response_model=schemas.Order)
def add_order_note(
    order_id: str,
    note: schemas.NoteCreate,
    manager: OrderLifecycleManager = Depends(get_order_manager),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Add a note (owner or admin); admin notes go to ``admin_notes``."""
    _check_access(manager.get_order(order_id), current_user, "annotate")
    return manager.add_note(order_id, note.note, is_admin=current_user.is_admin, actor_id=current_user.id)


@app.delete("/orders/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_order(
    order_id: str,
    manager: OrderLifecycleManager = Depends(get_order_manager),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Soft-delete an order (admin only). The order disappears from every read.
    """
    manager.soft_delete(order_id, actor_id=current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/credits/me", response_model=schemas.CreditBalance)
def my_credits(
    ledger: CreditLedger = Depends(get_ledger),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    return _credit_balance(ledger, current_user.id)


@app.post("/credits/{user_id}/grant", response_model=schemas.CreditBalance)
def grant_credits(
    user_id: str,
    grant: schemas.CreditGrant,
    ledger: CreditLedger = Depends(get_ledger),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Add store credit to a user's balance (admin only)."""
    ledger.credit(user_id, grant.amount, description=grant.description)
    logger.info(f"Admin {current_user.id} granted {grant.amount} credits to user {user_id}")
    return _credit_balance(ledger, user_id)


@app.get("/referrals/me", response_model=schemas.ReferralStats)
def my_referrals(
    referrals: ReferralAttributor = Depends(get_referrals),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Referral code and commission statistics of the current user (read-only)."""
    return referrals.get_stats(current_user.id)


@app.post("/referrals/me/code", response_model=schemas.ReferralCodeOut)
def create_my_referral_code(
    referrals: ReferralAttributor = Depends(get_referrals),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Return the current user's referral code, creating it on first call."""
    return schemas.ReferralCodeOut(referral_code=referrals.code_for(current_user.id))


def _credit_balance(ledger: CreditLedger, user_id: str) -> schemas.CreditBalance:
    account = ledger.get_account(user_id)
    if account is None:
        return schemas.CreditBalance(user_id=user_id, balance=ZERO)
    return schemas.CreditBalance(
        user_id=user_id,
        balance=account.balance,
        total_earned=account.total_earned,
        total_spent=account.total_spent,
    )
