import logging
import secrets
import string
import time
import uuid
from datetime import datetime, timezone

from sqlmodel import Session

from storefront.core.config import get_settings
from storefront.core.errors import (
    AmountMismatchError,
    GatewayError,
    InvalidInputError,
    InvalidStateTransitionError,
    NotFoundError,
    PaymentVerificationFailedError,
)
from storefront.core.gateway import PaymentGateway, get_gateway
from storefront.models.order import Order
from storefront.models.payment import Payment
from storefront.repositories.order_repo import OrderRepository
from storefront.repositories.payment_repo import PaymentRepository
from storefront.schemas.payment import (
    PaymentInitiate,
    PaymentInitiateResult,
    PaymentOrderSummary,
    PaymentRead,
    PaymentVerify,
)

logger = logging.getLogger(__name__)

CLOSED_ORDER_STATUSES = {"cancelled", "returned"}

_PAYMENT_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase


def generate_payment_id() -> str:
    """pay_<epoch-ms>_<8 base36 chars>."""
    suffix = "".join(secrets.choice(_PAYMENT_SUFFIX_ALPHABET) for _ in range(8))
    return f"pay_{int(time.time() * 1000)}_{suffix}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentService:
    """
    Business logic for payments.

    Responsibilities:
      - initiate: COD short-circuit, or a gateway order for the exact order total
      - verify: signature check, then Payment -> success and Order -> paid/confirmed
      - get_status: payment joined with a trimmed order summary

    The gateway is resolved per call so tests can swap it with set_gateway().
    """

    def __init__(self, payment_repo: PaymentRepository, order_repo: OrderRepository):
        self.payment_repo = payment_repo
        self.order_repo = order_repo

    @property
    def gateway(self) -> PaymentGateway:
        return get_gateway()

    # ---- public operations ----

    def initiate(
        self,
        session: Session,
        user_id: uuid.UUID,
        payload: PaymentInitiate,
    ) -> PaymentInitiateResult:
        """
        Start (or restart) payment for an order.

        Rules:
          - order must belong to the caller and not be closed or already paid
          - cod: no gateway call, a pending offline record is ensured
          - gateway methods: payment.amount must equal order.total_amount
            exactly; a failed/cancelled record is replaced by a fresh one
        """
        order = self.order_repo.get_for_user(session, user_id, payload.order_id)
        if order is None:
            raise NotFoundError("Order", payload.order_id)

        if order.payment_status == "paid":
            raise InvalidStateTransitionError(
                order.payment_status, "pending", "Order is already paid"
            )
        if order.order_status in CLOSED_ORDER_STATUSES:
            raise InvalidStateTransitionError(
                order.order_status, "payment", "Order is no longer payable"
            )

        method = payload.payment_method or order.payment_method
        gateway = self.gateway
        gateway_name = "offline" if method == "cod" else gateway.name

        payment = self._ensure_pending_payment(session, order, method, gateway_name)

        if method != order.payment_method:
            logger.info(
                "Order %s payment method changed %s -> %s",
                order.order_number,
                order.payment_method,
                method,
            )
            order.payment_method = method
            if method == "cod" and order.order_status == "pending":
                order.order_status = "confirmed"
            order.updated_at = _utcnow()
            self.order_repo.update_order(session, order)

        if method == "cod":
            session.commit()
            return PaymentInitiateResult(
                success=True,
                payment_method=method,  # type: ignore[arg-type]
                message="Order placed with Cash on Delivery",
                payment_id=payment.payment_id,
                order_number=order.order_number,
            )

        if payment.amount != order.total_amount:
            session.rollback()
            logger.critical(
                "Amount mismatch on payment %s for order %s: payment=%s order=%s",
                payment.payment_id,
                order.order_number,
                payment.amount,
                order.total_amount,
            )
            raise AmountMismatchError(order.total_amount, payment.amount)

        # Persist the pending record before talking to the gateway.
        session.commit()

        try:
            handle = gateway.create_gateway_order(
                amount=payment.amount,
                currency=payment.currency,
                receipt=order.order_number,
            )
        except GatewayError:
            logger.warning(
                "Gateway order creation failed for payment %s; left pending",
                payment.payment_id,
            )
            raise

        payment.gateway_order_id = handle.id
        payment.updated_at = _utcnow()
        self.payment_repo.update(session, payment)
        session.commit()

        logger.info(
            "Payment %s initiated via %s (gateway order %s)",
            payment.payment_id,
            gateway_name,
            handle.id,
        )
        return PaymentInitiateResult(
            success=True,
            payment_method=method,  # type: ignore[arg-type]
            message="Payment initiated",
            payment_id=payment.payment_id,
            gateway_order_id=handle.id,
            amount=payment.amount,
            currency=payment.currency,
            key=gateway.key_id,
            order_number=order.order_number,
        )

    def verify(
        self,
        session: Session,
        user_id: uuid.UUID,
        payload: PaymentVerify,
    ) -> PaymentRead:
        """
        Check the gateway signature and settle the payment.

        Verifying an already successful payment returns it unchanged. A bad
        signature marks the payment failed (the order stays pending so the
        user can pay again) and raises PaymentVerificationFailed.
        """
        payment = self.payment_repo.get_by_payment_id(session, payload.payment_id, user_id)
        if payment is None:
            raise NotFoundError("Payment", payload.payment_id)
        order = self._order_for(session, payment)

        if payment.status == "success":
            return self._build_payment_read(payment, order)
        if payment.status != "pending":
            raise InvalidStateTransitionError(payment.status, "success")
        if order.order_status in CLOSED_ORDER_STATUSES:
            raise InvalidStateTransitionError(
                order.order_status, "paid", "Order is no longer payable"
            )
        if not payment.gateway_order_id:
            raise InvalidInputError("Payment has not been initiated with the gateway")

        now = _utcnow()
        valid = self.gateway.verify_signature(
            payment.gateway_order_id, payload.gateway_payment_id, payload.signature
        )

        if not valid:
            self.payment_repo.transition_status(
                session,
                payment.id,
                {"pending"},
                {
                    "status": "failed",
                    "failure_reason": "Invalid payment signature",
                    "gateway_transaction_id": payload.gateway_payment_id,
                    "updated_at": now,
                },
            )
            session.commit()
            logger.warning(
                "Signature verification failed for payment %s (order %s)",
                payment.payment_id,
                order.order_number,
            )
            raise PaymentVerificationFailedError(payment.payment_id, "Invalid payment signature")

        applied = self.payment_repo.transition_status(
            session,
            payment.id,
            {"pending"},
            {
                "status": "success",
                "gateway_transaction_id": payload.gateway_payment_id,
                "failure_reason": None,
                "updated_at": now,
            },
        )
        if not applied:
            session.rollback()
            session.refresh(payment)
            if payment.status == "success":
                return self._build_payment_read(payment, order)
            raise InvalidStateTransitionError(payment.status, "success")

        order_applied = self.order_repo.transition_status(
            session,
            order.id,
            {"pending", "confirmed"},
            {"payment_status": "paid", "order_status": "confirmed", "updated_at": now},
        )
        if not order_applied:
            # Order left the payable states between the checks and the write.
            session.rollback()
            session.refresh(order)
            raise InvalidStateTransitionError(
                order.order_status, "paid", "Order is no longer payable"
            )

        session.commit()
        logger.info(
            "Payment %s verified; order %s paid", payment.payment_id, order.order_number
        )
        return self._build_payment_read(payment, order)

    def get_status(
        self,
        session: Session,
        user_id: uuid.UUID,
        payment_id: str | None = None,
        order_id: uuid.UUID | None = None,
    ) -> PaymentRead:
        """
        Read-only projection by payment id or order id.
        """
        if payment_id:
            payment = self.payment_repo.get_by_payment_id(session, payment_id, user_id)
            identifier: object = payment_id
        elif order_id:
            order = self.order_repo.get_for_user(session, user_id, order_id)
            payment = self.payment_repo.get_by_order_id(session, order_id) if order else None
            identifier = order_id
        else:
            raise InvalidInputError("payment_id or order_id is required")

        if payment is None or payment.user_id != user_id:
            raise NotFoundError("Payment", identifier)
        return self._build_payment_read(payment, self._order_for(session, payment))

    # ---- internal helpers ----

    def _order_for(self, session: Session, payment: Payment) -> Order:
        order = self.order_repo.get_by_id(session, payment.order_id)
        if order is None:
            raise NotFoundError("Order", payment.order_id)
        return order

    def _ensure_pending_payment(
        self,
        session: Session,
        order: Order,
        method: str,
        gateway_name: str,
    ) -> Payment:
        payment = self.payment_repo.get_by_order_id(session, order.id)

        if payment is not None and payment.status == "success":
            raise InvalidStateTransitionError(payment.status, "pending", "Payment already completed")
        if payment is not None and payment.status == "refunded":
            raise InvalidStateTransitionError(payment.status, "pending", "Payment was refunded")

        if payment is not None and payment.status in {"failed", "cancelled"}:
            logger.info(
                "Replacing %s payment %s for order %s",
                payment.status,
                payment.payment_id,
                order.order_number,
            )
            self.payment_repo.delete(session, payment)
            payment = None

        if payment is None:
            payment = Payment(
                payment_id=generate_payment_id(),
                order_id=order.id,
                user_id=order.user_id,
                amount=order.total_amount,
                currency=get_settings().CURRENCY,
                method=method,
                gateway=gateway_name,
                status="pending",
            )
            return self.payment_repo.create(session, payment)

        if payment.method != method or payment.gateway != gateway_name:
            payment.method = method
            payment.gateway = gateway_name
            payment.gateway_order_id = None
            payment.updated_at = _utcnow()
            self.payment_repo.update(session, payment)
        return payment

    @staticmethod
    def _build_payment_read(payment: Payment, order: Order) -> PaymentRead:
        return PaymentRead(
            payment_id=payment.payment_id,
            amount=payment.amount,
            currency=payment.currency,
            method=payment.method,
            gateway=payment.gateway,
            status=payment.status,  # type: ignore[arg-type]
            gateway_order_id=payment.gateway_order_id,
            gateway_transaction_id=payment.gateway_transaction_id,
            failure_reason=payment.failure_reason,
            refund_amount=payment.refund_amount,
            created_at=payment.created_at,
            order=PaymentOrderSummary(
                id=order.id,
                order_number=order.order_number,
                total_amount=order.total_amount,
                order_status=order.order_status,  # type: ignore[arg-type]
                payment_status=order.payment_status,  # type: ignore[arg-type]
            ),
        )
