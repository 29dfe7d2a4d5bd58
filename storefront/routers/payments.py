# storefront/routers/payments.py
import uuid

from fastapi import APIRouter, Depends
from sqlmodel import Session

from storefront.core.auth import require_user
from storefront.database import get_session
from storefront.models.user import User
from storefront.repositories.order_repo import OrderRepository
from storefront.repositories.payment_repo import PaymentRepository
from storefront.schemas.payment import (
    PaymentInitiate,
    PaymentInitiateResult,
    PaymentRead,
    PaymentVerify,
)
from storefront.services.payment_service import PaymentService

router = APIRouter(prefix="/payments", tags=["Payments"])

service = PaymentService(PaymentRepository(), OrderRepository())


@router.post("/initiate", response_model=PaymentInitiateResult)
def initiate_payment(
    payload: PaymentInitiate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Start payment for an order.

    COD returns a confirmation only. Gateway methods return the gateway
    order handle and public key for the client checkout widget.
    """
    return service.initiate(session, current_user.id, payload)


@router.post("/verify", response_model=PaymentRead)
def verify_payment(
    payload: PaymentVerify,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Verify the gateway signature and mark the order paid.
    """
    return service.verify(session, current_user.id, payload)


@router.get("/status", response_model=PaymentRead)
def get_payment_status(
    payment_id: str | None = None,
    order_id: uuid.UUID | None = None,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_user),
):
    """
    Look up a payment by `payment_id` or `order_id`.
    """
    return service.get_status(session, current_user.id, payment_id, order_id)
