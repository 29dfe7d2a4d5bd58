import uuid
from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class Payment(SQLModel, table=True):
    """
    One-to-one companion of an Order (order_id is unique).

    status: pending -> success | failed; success -> refunded;
    pending -> cancelled when the order is cancelled.
    """

    __tablename__ = "payments"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
    )

    payment_id: str = Field(
        unique=True,
        index=True,
        max_length=64,
    )

    order_id: uuid.UUID = Field(
        foreign_key="orders.id",
        unique=True,
        index=True,
    )

    user_id: uuid.UUID = Field(
        foreign_key="users.id",
        index=True,
    )

    amount: float = Field(ge=0)
    currency: str = Field(default="INR", max_length=3)

    method: str
    # razorpay | mock | offline
    gateway: str

    status: str = Field(default="pending", index=True)

    gateway_order_id: str | None = None
    gateway_transaction_id: str | None = None
    failure_reason: str | None = None

    refund_amount: float | None = None
    refunded_at: datetime | None = None

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
