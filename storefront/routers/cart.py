# storefront/routers/cart.py
import uuid

from fastapi import APIRouter, Depends
from sqlmodel import Session

from storefront.core.auth import require_user
from storefront.database import get_session
from storefront.models.user import User
from storefront.repositories.cart_repo import CartRepository
from storefront.repositories.product_repo import ProductRepository
from storefront.schemas.cart import (
    CartCheckRequest,
    CartCheckResponse,
    CartItemCreate,
    CartItemUpdate,
    CartRead,
    ProductVariant,
)
from storefront.services.cart_service import CartService

router = APIRouter(prefix="/cart", tags=["Cart"])

cart_repo = CartRepository()
product_repo = ProductRepository()
service = CartService(cart_repo, product_repo)


@router.get("", response_model=CartRead)
def get_my_cart(
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Get the current user's cart with live product data.

    Auth:
      - Only role='user' (customer) can access.
      - Admins are forbidden.
    """
    return service.read(session, current_user.id)


@router.post("", response_model=CartRead)
def add_to_cart(
    payload: CartItemCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Add a product (optionally a variant) to the current user's cart.

    Returns the updated cart.
    """
    return service.add_item(session, current_user.id, payload)


@router.post("/check", response_model=CartCheckResponse)
def check_cart(
    payload: CartCheckRequest,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Report which of the given product ids are already in the cart.
    """
    return CartCheckResponse(
        cart_products=service.check(session, current_user.id, payload.product_ids)
    )


@router.patch("/{product_id}", response_model=CartRead)
def update_cart_item(
    product_id: uuid.UUID,
    payload: CartItemUpdate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Set the quantity of a product in the cart; 0 removes it.

    Returns the updated cart.
    """
    return service.update_quantity(
        session=session,
        user_id=current_user.id,
        product_id=product_id,
        payload=payload,
    )


@router.delete("/{product_id}", response_model=CartRead)
def remove_cart_item(
    product_id: uuid.UUID,
    color: str | None = None,
    size: str | None = None,
    sku: str | None = None,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Remove a product from the cart.

    Variant query params (color/size/sku) target a single line; without
    them every line of the product is removed.
    """
    variant = ProductVariant(color=color, size=size, sku=sku)
    return service.remove_item(
        session,
        current_user.id,
        product_id,
        None if variant.is_empty() else variant,
    )


@router.delete("", response_model=CartRead)
def clear_cart(
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Clear the entire cart.

    Returns an empty cart.
    """
    return service.clear(session, current_user.id)
