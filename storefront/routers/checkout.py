# storefront/routers/checkout.py
from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from storefront.core.auth import require_user
from storefront.database import get_session
from storefront.models.user import User
from storefront.repositories.cart_repo import CartRepository
from storefront.repositories.checkout_repo import CheckoutRepository
from storefront.repositories.product_repo import ProductRepository
from storefront.schemas.checkout import (
    CheckoutCreate,
    CheckoutCreated,
    CheckoutDeleted,
    CheckoutRead,
    CheckoutUpdate,
)
from storefront.services.checkout_service import CheckoutService

router = APIRouter(prefix="/checkout", tags=["Checkout"])

checkout_repo = CheckoutRepository()
cart_repo = CartRepository()
product_repo = ProductRepository()
service = CheckoutService(checkout_repo, cart_repo, product_repo)


@router.post(
    "",
    response_model=CheckoutCreated,
    status_code=status.HTTP_201_CREATED,
)
def create_checkout_session(
    payload: CheckoutCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Start a checkout session from selected cart products.

    Any previous session of the user is replaced.
    """
    return service.create(session, current_user.id, payload)


@router.get("", response_model=CheckoutRead)
def get_current_checkout_session(
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Get the user's active checkout session with a fresh price breakdown.
    """
    return service.read(session, current_user.id)


@router.get("/{session_id}", response_model=CheckoutRead)
def get_checkout_session(
    session_id: str,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    return service.read(session, current_user.id, session_id)


@router.patch("/{session_id}", response_model=CheckoutRead)
def update_checkout_session(
    session_id: str,
    payload: CheckoutUpdate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Select the shipping address and/or payment method.
    """
    return service.update(session, current_user.id, session_id, payload)


@router.delete("/{session_id}", response_model=CheckoutDeleted)
def delete_checkout_session(
    session_id: str,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    return CheckoutDeleted(deleted=service.delete(session, current_user.id, session_id))


@router.delete("", response_model=CheckoutDeleted)
def delete_all_checkout_sessions(
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Abandon checkout: drop every session of the user.
    """
    return CheckoutDeleted(deleted=service.delete(session, current_user.id))
