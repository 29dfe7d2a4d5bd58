import uuid
from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class CheckoutSession(SQLModel, table=True):
    """
    Short-lived snapshot of a cart subset plus delivery/payment selection.

    user_id is unique: a user has at most one session row, so a new session
    always replaces the previous one.
    """

    __tablename__ = "checkout_sessions"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
    )

    session_id: str = Field(
        unique=True,
        index=True,
        max_length=32,
        description="Public session handle",
    )

    user_id: uuid.UUID = Field(
        foreign_key="users.id",
        unique=True,
        index=True,
    )

    selected_address_id: uuid.UUID | None = None
    selected_payment_method: str | None = None

    expires_at: datetime = Field(index=True)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class CheckoutItem(SQLModel, table=True):
    __tablename__ = "checkout_items"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
    )

    checkout_id: uuid.UUID = Field(
        foreign_key="checkout_sessions.id",
        index=True,
    )

    product_id: uuid.UUID
    quantity: int = Field(gt=0)
    has_insurance: bool = Field(default=False)

    # Variant copied from the cart line at session creation
    variant_color: str | None = None
    variant_size: str | None = None
    variant_sku: str | None = None
