import uuid
from datetime import datetime
from typing import Literal

from pydantic import ConfigDict, field_validator
from sqlmodel import SQLModel, Field

from storefront.schemas.cart import ProductVariant
from storefront.schemas.pricing import PriceBreakdown

PaymentMethod = Literal["card", "upi", "netbanking", "cod", "wallet"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
OrderStatus = Literal[
    "pending",
    "confirmed",
    "processing",
    "shipped",
    "delivered",
    "cancelled",
    "returned",
]


class OrderCreate(SQLModel):
    """
    Payload for placing an order from a checkout session.

    address_id / payment_method fall back to the selection stored on the
    session; one of the two sources must provide each.

    Backend derives:
      - user_id from token
      - items, quantities and insurance from the session
      - prices from the catalog, breakdown from the pricing calculator
    """

    model_config = ConfigDict(extra="forbid")

    checkout_session_id: str
    address_id: uuid.UUID | None = None
    payment_method: PaymentMethod | None = None
    notes: str | None = Field(default=None, max_length=500)

    @field_validator("notes", mode="before")
    @classmethod
    def normalize_notes(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        return v or None


class ShippingAddress(SQLModel):
    full_name: str
    phone: str
    address_line1: str
    address_line2: str | None = None
    city: str
    state: str
    postal_code: str
    country: str


class OrderItemRead(SQLModel):
    """
    Representation of a single frozen order line.
    """

    id: uuid.UUID
    product_id: uuid.UUID
    name: str
    price: float
    original_price: float
    quantity: int
    discount_percent: float
    insurance_cost: float | None = None
    variant: ProductVariant | None = None
    product_image: str | None = None
    line_total: float


class OrderPaymentRead(SQLModel):
    payment_id: str
    status: str
    method: str
    gateway: str
    gateway_transaction_id: str | None = None


class OrderRead(SQLModel):
    """
    Lightweight representation of an order (without items).
    """

    id: uuid.UUID
    order_number: str
    user_id: uuid.UUID
    total_amount: float
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    order_status: OrderStatus
    tracking_number: str | None = None
    expected_delivery_date: datetime | None = None
    created_at: datetime
    updated_at: datetime


class OrderWithItemsRead(OrderRead):
    """
    Full order view including items, breakdown and payment.
    """

    items: list[OrderItemRead]
    price_breakdown: PriceBreakdown
    shipping_address: ShippingAddress
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    refund_amount: float | None = None
    refunded_at: datetime | None = None
    notes: str | None = None
    payment: OrderPaymentRead | None = None


class OrderList(SQLModel):
    orders: list[OrderRead]
    total: int
    skip: int
    limit: int


class OrderStatusUpdate(SQLModel):
    """
    Admin payload to change order status.
    """

    model_config = ConfigDict(extra="forbid")

    status: OrderStatus
    tracking_number: str | None = None


class OrderCancel(SQLModel):
    model_config = ConfigDict(extra="forbid")

    reason: str | None = Field(default=None, max_length=500)


class OrderNotesUpdate(SQLModel):
    """
    The only user-editable field on a placed order.
    """

    model_config = ConfigDict(extra="forbid")

    notes: str | None = Field(default=None, max_length=500)


class OrderDeleted(SQLModel):
    order_number: str
    order_status: OrderStatus
    total_amount: float
    deleted_at: datetime
