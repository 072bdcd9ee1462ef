"""
Pydantic schemas for request/response validation in the storefront core.

These schemas define the structure of data crossing the service boundary.
Legacy camelCase checkout payloads are translated here and nowhere else.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, EmailStr, Field
from pydantic.alias_generators import to_camel

ProductType = Literal["service", "bundle", "custom_item"]
OrderStatus = Literal["pending", "confirmed", "processing", "in_progress", "completed", "cancelled", "refunded"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded", "partial"]


class ProductData(BaseModel):
    """Canonical catalog data the pricing formula is applied to."""
    id: str
    name: str = ""
    product_type: ProductType = "service"
    base_price: Decimal = Field(..., ge=0)
    sale_price: Optional[Decimal] = Field(default=None, ge=0)
    price_per_unit: Optional[Decimal] = Field(default=None, ge=0)
    minimum_quantity: int = Field(default=1, ge=1)
    maximum_quantity: Optional[int] = Field(default=None, ge=1)
    status: str = "active"

    class Config:
        from_attributes = True

    @property
    def active(self) -> bool:
        return self.status == "active"


class PricingItem(BaseModel):
    """A (product, quantity, type) triple submitted for repricing."""
    product_id: str
    quantity: int = Field(..., gt=0, description="Requested quantity")
    product_type: Optional[ProductType] = Field(default=None, description="Expected type; checked when given")
    custom_options: Dict[str, Any] = Field(default_factory=dict)


class PricingRequest(BaseModel):
    items: List[PricingItem] = Field(default_factory=list)


class ValidatedItem(BaseModel):
    """A line priced from canonical catalog data."""
    product_id: str
    product_name: str
    product_type: ProductType
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    custom_options: Dict[str, Any] = Field(default_factory=dict)


class InvalidItem(BaseModel):
    product_id: str
    reason: str


class PricingSummary(BaseModel):
    requested: int
    validated: int
    invalid: int
    total_value: Decimal


class PricingResult(BaseModel):
    """
    Outcome of a pricing validation pass.

    Attributes:
        validated_items (List[ValidatedItem]): Items with corrected unit/total price
        invalid_items (List[InvalidItem]): Rejected items and the reason
        summary (PricingSummary): Counts and total value of the validated items
    """
    validated_items: List[ValidatedItem] = Field(default_factory=list)
    invalid_items: List[InvalidItem] = Field(default_factory=list)
    summary: PricingSummary

    @property
    def invalid_ids(self) -> List[str]:
        return [item.product_id for item in self.invalid_items]


class CartLine(BaseModel):
    """Schema for a cart line item (cached price, re-derived before checkout)."""
    product_id: str
    product_name: str = ""
    product_type: ProductType = "service"
    quantity: int = Field(..., gt=0)
    unit_price: Decimal = Decimal("0.00")
    total_price: Decimal = Decimal("0.00")
    custom_options: Dict[str, Any] = Field(default_factory=dict)


class Customer(BaseModel):
    """Identity of the person placing an order."""
    user_id: Optional[str] = None
    email: EmailStr
    name: str = Field(..., min_length=1)
    discord: Optional[str] = None


class OrderCreate(BaseModel):
    """Schema for creating a new order from a cart snapshot."""
    items: List[PricingItem] = Field(..., min_length=1)
    customer: Customer
    payment_reference: Optional[str] = None
    payment_status: PaymentStatus = "pending"
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    credits_to_use: Decimal = Field(default=Decimal("0"), ge=0)
    referral_code: Optional[str] = None
    notes: Optional[str] = None
    special_instructions: Optional[str] = None


class LegacyService(BaseModel):
    """``services`` entry of the legacy checkout (the client price is ignored)."""
    id: str
    name: Optional[str] = None
    price: Optional[Decimal] = None
    quantity: int = Field(..., gt=0)


class LegacyCustomItem(BaseModel):
    """``customOrderData.items`` entry, priced from the catalog by ``product_id``."""
    product_id: str
    item_name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    quantity: int = Field(..., gt=0)
    price_per_unit: Optional[Decimal] = None
    total_price: Optional[Decimal] = None


class LegacyCustomOrderData(BaseModel):
    items: List[LegacyCustomItem] = Field(default_factory=list)
    special_instructions: Optional[str] = None
    customer_discord: Optional[str] = None


class LegacyOrderData(BaseModel):
    """camelCase ``orderData`` block of the legacy checkout payload."""
    user_id: Optional[str] = None
    customer_email: EmailStr
    customer_name: str = Field(..., min_length=1)
    services: List[LegacyService] = Field(default_factory=list)
    notes: Optional[str] = None
    referral_code: Optional[str] = None
    referral_discount: Decimal = Field(default=Decimal("0"), ge=0)
    referral_credits_used: Decimal = Field(default=Decimal("0"), ge=0)
    custom_order_data: Optional[LegacyCustomOrderData] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class LegacyOrderPayload(BaseModel):
    """Legacy ``{paymentIntentId, orderData}`` checkout payload."""
    payment_intent_id: Optional[str] = None
    order_data: LegacyOrderData

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    def to_order_create(self) -> OrderCreate:
        data = self.order_data
        custom = data.custom_order_data or LegacyCustomOrderData()
        items = [PricingItem(product_id=service.id, quantity=service.quantity) for service in data.services]
        items.extend(
            PricingItem(
                product_id=item.product_id,
                quantity=item.quantity,
                product_type="custom_item",
                custom_options={
                    key: value
                    for key, value in (
                        ("item_name", item.item_name),
                        ("category", item.category),
                        ("description", item.description),
                    )
                    if value
                },
            )
            for item in custom.items
        )
        return OrderCreate(
            items=items,
            customer=Customer(
                user_id=data.user_id,
                email=data.customer_email,
                name=data.customer_name,
                discord=custom.customer_discord,
            ),
            payment_reference=self.payment_intent_id,
            discount=data.referral_discount,
            credits_to_use=data.referral_credits_used,
            referral_code=data.referral_code,
            notes=data.notes,
            special_instructions=custom.special_instructions,
        )


class OrderCreated(BaseModel):
    order_id: str
    order_number: str
    total_amount: Decimal


class StatusHistoryEntry(BaseModel):
    status: str
    timestamp: str
    note: Optional[str] = None


class Order(BaseModel):
    """
    Schema for order responses, includes all database fields.

    Attributes:
        id (str): Order's unique identifier
        order_number (str): Human-facing reference
        status (str): Workflow status
        payment_status (str): Payment status
        fulfillment_status (str): Delivery status
        status_history (List[StatusHistoryEntry]): Audit trail of status changes
        created_at (datetime): When the order was created
    """
    id: str
    order_number: str
    order_type: str
    user_id: Optional[str] = None
    customer_email: str
    customer_name: str
    customer_discord: Optional[str] = None
    items: List[Dict[str, Any]] = Field(default_factory=list)
    subtotal_amount: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    credits_used: Decimal
    total_amount: Decimal
    currency: str
    status: str
    payment_status: str
    fulfillment_status: str
    progress: int
    payment_reference: Optional[str] = None
    payment_method: Optional[str] = None
    referral_code: Optional[str] = None
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    special_instructions: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="order_metadata")
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class StatusUpdate(BaseModel):
    """Schema for moving an order along its workflow."""
    status: OrderStatus
    note: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    override: bool = Field(default=False, description="Complete without captured payment (manual comp)")


class PaymentUpdate(BaseModel):
    payment_status: PaymentStatus


class ProgressUpdate(BaseModel):
    progress: int = Field(..., ge=0, le=100)


class NoteCreate(BaseModel):
    note: str = Field(..., min_length=1)


class OrderEvent(BaseModel):
    """
    Schema for order timeline events.

    Attributes:
        id (int): Event ID
        order_id (str): Order identifier
        event_type (str): Type of event (created, status_changed, note_added, ...)
        description (str): Human-readable event description
        old_value (str): Previous value (optional)
        new_value (str): New value (optional)
        user_id (str): User who triggered the event (optional)
        created_at (datetime): When the event occurred
    """
    id: int
    order_id: str
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class OrderStats(BaseModel):
    total_orders: int
    pending_orders: int
    completed_orders: int
    total_revenue: Decimal
    avg_order_value: Decimal
    fulfillment_rate: float


class CreditBalance(BaseModel):
    user_id: str
    balance: Decimal
    total_earned: Decimal = Decimal("0.00")
    total_spent: Decimal = Decimal("0.00")


class CreditGrant(BaseModel):
    amount: Decimal = Field(..., gt=0)
    description: str = "Manual credit grant"


class ReferralRecord(BaseModel):
    id: int
    referrer_user_id: str
    referred_user_id: Optional[str] = None
    referral_code: str
    order_id: str
    order_type: str
    commission_amount: Decimal
    clawback_shortfall: Decimal = Decimal("0.00")
    status: str
    created_at: datetime

    class Config:
        from_attributes = True


class ReferralStats(BaseModel):
    """Referrer view merged across every order sub-type (no code yet: all zero)."""
    referral_code: Optional[str] = None
    total_referred: int
    total_earned: Decimal
    pending_earnings: Decimal
    credit_balance: Decimal
    referrals: List[ReferralRecord] = Field(default_factory=list)


class ReferralCodeOut(BaseModel):
    referral_code: str
