# storefront/routers/orders.py
import uuid

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlmodel import Session

from storefront.core.auth import require_admin, require_user
from storefront.database import get_session
from storefront.models.user import User
from storefront.repositories.cart_repo import CartRepository
from storefront.repositories.checkout_repo import CheckoutRepository
from storefront.repositories.order_repo import OrderRepository
from storefront.repositories.payment_repo import PaymentRepository
from storefront.repositories.product_repo import ProductRepository
from storefront.schemas.order import (
    OrderCancel,
    OrderCreate,
    OrderDeleted,
    OrderList,
    OrderNotesUpdate,
    OrderStatus,
    OrderStatusUpdate,
    OrderWithItemsRead,
)
from storefront.services.checkout_service import CheckoutService
from storefront.services.inventory_service import InventoryService
from storefront.services.order_service import OrderService

router = APIRouter(prefix="/orders", tags=["Orders"])

order_repo = OrderRepository()
checkout_repo = CheckoutRepository()
product_repo = ProductRepository()
payment_repo = PaymentRepository()
checkout_service = CheckoutService(checkout_repo, CartRepository(), product_repo)
service = OrderService(
    order_repo,
    checkout_repo,
    product_repo,
    payment_repo,
    InventoryService(),
    checkout_service,
)


# -------- User-facing endpoints --------


@router.post(
    "",
    response_model=OrderWithItemsRead,
    status_code=201,
)
def place_order(
    payload: OrderCreate,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Create an order from the current user's checkout session.

    Auth:
      - Only role='user' (customer) can place orders.

    The confirmation email goes out after the response is sent.
    """
    return service.create_order(session, current_user, payload, background_tasks)


@router.get("/me", response_model=OrderList)
def list_my_orders(
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
    status: OrderStatus | None = None,
    search: str | None = None,
    skip: int = 0,
    limit: int = 50,
):
    """
    List the authenticated user's orders (without items).

    `search` matches part of the order number.
    """
    return service.list_user_orders(session, current_user.id, status, search, skip, limit)


@router.get("/me/number/{order_number}", response_model=OrderWithItemsRead)
def get_my_order_by_number(
    order_number: str,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    return service.get_user_order_by_number(session, current_user.id, order_number)


@router.get("/me/{order_id}", response_model=OrderWithItemsRead)
def get_my_order(
    order_id: uuid.UUID,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Get a single order (with items) belonging to the current user.
    """
    return service.get_user_order(session, current_user.id, order_id)


@router.patch("/me/{order_id}/notes", response_model=OrderWithItemsRead)
def update_my_order_notes(
    order_id: uuid.UUID,
    payload: OrderNotesUpdate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    return service.update_notes(session, current_user.id, order_id, payload)


@router.post("/me/{order_id}/cancel", response_model=OrderWithItemsRead)
def cancel_my_order(
    order_id: uuid.UUID,
    payload: OrderCancel,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Cancel a pending or confirmed order.

    Stock is released and a paid order is marked refunded. Repeating the
    call returns the already cancelled order.
    """
    return service.cancel(session, order_id, payload.reason, user_id=current_user.id)


@router.delete("/me/{order_id}", response_model=OrderDeleted)
def delete_my_order(
    order_id: uuid.UUID,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Delete a cancelled or returned order together with its payment record.
    """
    return service.delete(session, current_user.id, order_id)


# -------- Admin endpoints --------


@router.get(
    "",
    response_model=OrderList,
    dependencies=[Depends(require_admin)],
)
def list_all_orders(
    session: Session = Depends(get_session),
    status: OrderStatus | None = None,
    search: str | None = None,
    skip: int = 0,
    limit: int = 50,
):
    """
    List all orders (admin only).
    """
    return service.list_all_orders(session, status, search, skip, limit)


@router.get(
    "/{order_id}",
    response_model=OrderWithItemsRead,
    dependencies=[Depends(require_admin)],
)
def get_order_admin(
    order_id: uuid.UUID,
    session: Session = Depends(get_session),
):
    """
    Get any order with items (admin only).
    """
    return service.get_order_admin(session, order_id)


@router.patch(
    "/{order_id}/status",
    response_model=OrderWithItemsRead,
    dependencies=[Depends(require_admin)],
)
def update_order_status(
    order_id: uuid.UUID,
    payload: OrderStatusUpdate,
    session: Session = Depends(get_session),
):
    """
    Advance order status (admin only), one step at a time:

      pending -> confirmed -> processing -> shipped -> delivered -> returned

      pending | confirmed -> cancelled

    """
    return service.advance_status(session, order_id, payload)
