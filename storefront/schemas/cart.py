import uuid
from datetime import datetime

from pydantic import ConfigDict, field_validator
from sqlmodel import SQLModel


class ProductVariant(SQLModel):
    """
    Optional variant selection. Blank strings are treated as absent.
    """

    color: str | None = None
    size: str | None = None
    sku: str | None = None

    @field_validator("color", "size", "sku")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        return v or None

    def key(self) -> tuple[str | None, str | None, str | None]:
        return (self.color, self.size, self.sku)

    def is_empty(self) -> bool:
        return not (self.color or self.size or self.sku)


def variant_from_columns(
    color: str | None, size: str | None, sku: str | None
) -> ProductVariant | None:
    """
    Build a ProductVariant from the three nullable columns, or None when no
    part of the variant is set.
    """
    variant = ProductVariant(color=color, size=size, sku=sku)
    return None if variant.is_empty() else variant


class CartItemCreate(SQLModel):
    """
    Payload for adding to cart.
    """

    model_config = ConfigDict(extra="forbid")

    product_id: uuid.UUID
    quantity: int = 1
    variant: ProductVariant | None = None


class CartItemUpdate(SQLModel):
    """
    Payload for updating quantity of a cart item. 0 removes the item.
    """

    model_config = ConfigDict(extra="forbid")

    quantity: int
    variant: ProductVariant | None = None


class CartCheckRequest(SQLModel):
    product_ids: list[uuid.UUID]


class CartCheckResponse(SQLModel):
    cart_products: list[uuid.UUID]


class CartProductRead(SQLModel):
    """
    Live product data joined into a cart line.
    """

    id: uuid.UUID
    name: str
    final_price: float
    original_price: float
    discount_percent: float
    image_url: str | None = None
    stock_quantity: int
    is_in_stock: bool


class CartItemRead(SQLModel):
    """
    Read model for a single cart item, including item_total.
    """

    id: uuid.UUID
    product_id: uuid.UUID
    quantity: int
    variant: ProductVariant | None = None
    added_at: datetime
    item_total: float
    product: CartProductRead


class CartRead(SQLModel):
    """
    Full cart response model with totals.
    """

    items: list[CartItemRead]
    item_count: int
    total_quantity: int
    subtotal: float
