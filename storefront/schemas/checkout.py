import uuid
from datetime import datetime

from pydantic import ConfigDict
from sqlmodel import SQLModel

from storefront.schemas.cart import CartProductRead, ProductVariant
from storefront.schemas.order import PaymentMethod
from storefront.schemas.pricing import PriceBreakdown


class CheckoutCreate(SQLModel):
    """
    Payload for starting checkout from a subset of the cart.
    """

    model_config = ConfigDict(extra="forbid")

    selected_product_ids: list[uuid.UUID]
    insurance_enabled: list[uuid.UUID] = []


class CheckoutCreated(SQLModel):
    session_id: str
    expires_at: datetime


class CheckoutUpdate(SQLModel):
    """
    Partial update of the selection fields. Items are never touched.
    """

    model_config = ConfigDict(extra="forbid")

    selected_address_id: uuid.UUID | None = None
    selected_payment_method: PaymentMethod | None = None


class CheckoutItemRead(SQLModel):
    product_id: uuid.UUID
    quantity: int
    has_insurance: bool
    variant: ProductVariant | None = None
    item_total: float
    insurance_cost: float
    product: CartProductRead


class CheckoutRead(SQLModel):
    """
    Checkout session view. price_breakdown is recomputed on every read.
    """

    session_id: str
    items: list[CheckoutItemRead]
    selected_product_ids: list[uuid.UUID]
    insurance_enabled: list[uuid.UUID]
    selected_address_id: uuid.UUID | None = None
    selected_payment_method: PaymentMethod | None = None
    selected_quantity: int
    price_breakdown: PriceBreakdown
    expires_at: datetime
    created_at: datetime


class CheckoutDeleted(SQLModel):
    deleted: int
