import uuid
from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class Cart(SQLModel, table=True):
    """
    One cart per user, created lazily on first add.
    """

    __tablename__ = "carts"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    user_id: uuid.UUID = Field(
        foreign_key="users.id",
        unique=True,
        index=True,
    )

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class CartItem(SQLModel, table=True):
    """
    Candidate purchase line.
    One cart cannot have 2 rows for the same (product, variant).
    """

    __tablename__ = "cart_items"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    cart_id: uuid.UUID = Field(
        foreign_key="carts.id",
        index=True,
    )

    product_id: uuid.UUID = Field(index=True)

    quantity: int = Field(
        gt=0,
        description="Must be >= 1",
    )

    # Optional variant; all three empty means "no variant"
    variant_color: str | None = None
    variant_size: str | None = None
    variant_sku: str | None = None

    added_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
