import uuid
from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class Order(SQLModel, table=True):
    """
    Durable purchase record.

    Items, the price breakdown and the shipping snapshot are written once at
    creation. Afterwards only status fields, timestamps, tracking number and
    notes change.
    """

    __tablename__ = "orders"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    order_number: str = Field(
        unique=True,
        index=True,
        max_length=40,
        description="Human-readable identifier, ORD<epoch-ms><suffix>",
    )

    user_id: uuid.UUID = Field(
        foreign_key="users.id",
        index=True,
    )

    # ---- Frozen price breakdown ----
    original_subtotal: float = Field(ge=0)
    item_discount: float = Field(default=0, ge=0)
    subtotal: float = Field(ge=0)
    total_insurance: float = Field(default=0, ge=0)
    shipping_cost: float = Field(default=0, ge=0)
    tax: float = Field(default=0, ge=0)
    coupon_discount: float = Field(default=0, ge=0)
    total_amount: float = Field(
        ge=0,
        description="Grand total charged for this order",
    )
    total_savings: float = Field(default=0, ge=0)

    # ---- Shipping address snapshot ----
    ship_full_name: str
    ship_phone: str
    ship_address_line1: str
    ship_address_line2: str | None = None
    ship_city: str
    ship_state: str
    ship_postal_code: str
    ship_country: str

    # card | upi | netbanking | cod | wallet
    payment_method: str

    # pending | paid | failed | refunded
    payment_status: str = Field(default="pending", index=True)

    # pending | confirmed | processing | shipped | delivered | cancelled | returned
    order_status: str = Field(
        default="pending",
        index=True,
        description="Order status lifecycle",
    )

    tracking_number: str | None = None
    expected_delivery_date: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    refund_amount: float | None = None
    refunded_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=500)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        index=True,
        description="Creation timestamp (UTC)",
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class OrderItem(SQLModel, table=True):
    """
    Frozen copy of a purchased line; later catalog edits never touch it.
    """

    __tablename__ = "order_items"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    order_id: uuid.UUID = Field(
        foreign_key="orders.id",
        index=True,
    )

    product_id: uuid.UUID = Field(index=True)

    name: str
    price: float = Field(ge=0, description="Selling unit price at time of order")
    original_price: float = Field(ge=0)
    quantity: int = Field(
        gt=0,
        description="Quantity ordered (>=1)",
    )
    discount_percent: float = Field(default=0)

    # NULL unless the line was insured
    insurance_cost: float | None = None

    variant_color: str | None = None
    variant_size: str | None = None
    variant_sku: str | None = None

    product_image: str | None = None
