import uuid
from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class Product(SQLModel, table=True):
    """
    Furniture catalog entry.

    Owned by catalog management; this service only reads it, except for
    stock_quantity / sold_count which are written exclusively through
    InventoryService.reserve / release.
    """

    __tablename__ = "products"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    name: str = Field(
        max_length=200,
        index=True,
        description="Display name of the product",
    )

    price: float = Field(
        ge=0,
        description="Original (list) unit price",
    )

    final_price: float = Field(
        ge=0,
        description="Selling unit price after catalog discount",
    )

    discount_percent: float = Field(default=0, ge=0, le=100)

    image_url: str | None = Field(
        default=None,
        description="Main product image URL",
    )

    is_active: bool = Field(
        default=True,
        index=True,
        description="Whether this product is visible on the storefront",
    )

    stock_quantity: int = Field(
        default=0,
        ge=0,
        description="Units currently available",
    )

    sold_count: int = Field(default=0, ge=0)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_in_stock(self) -> bool:
        return self.is_active and self.stock_quantity > 0


class Address(SQLModel, table=True):
    """
    Address book entry. CRUD lives in the account service; orders copy
    these fields into their own shipping snapshot.
    """

    __tablename__ = "addresses"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    user_id: uuid.UUID = Field(
        foreign_key="users.id",
        index=True,
    )

    full_name: str = Field(max_length=100)
    phone: str
    address_line1: str = Field(max_length=200)
    address_line2: str | None = Field(default=None, max_length=200)
    city: str = Field(max_length=50)
    state: str = Field(max_length=50)
    postal_code: str
    country: str = Field(default="India")
    is_default: bool = Field(default=False)
