import logging
import secrets
import string
import time
import uuid
from collections import defaultdict
from datetime import timedelta
from typing import Callable

from fastapi import BackgroundTasks
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from storefront.core.config import get_settings
from storefront.core.errors import (
    ConcurrencyConflictError,
    InsufficientStockError,
    InvalidInputError,
    InvalidStateTransitionError,
    NotFoundError,
    StorefrontError,
)
from storefront.core.gateway import get_gateway
from storefront.models.catalog import Address, Product
from storefront.models.checkout import CheckoutItem
from storefront.models.order import Order, OrderItem
from storefront.models.payment import Payment
from storefront.models.user import User
from storefront.repositories.checkout_repo import CheckoutRepository
from storefront.repositories.order_repo import OrderRepository
from storefront.repositories.payment_repo import PaymentRepository
from storefront.repositories.product_repo import ProductRepository
from storefront.schemas.cart import variant_from_columns
from storefront.schemas.order import (
    OrderCreate,
    OrderDeleted,
    OrderItemRead,
    OrderList,
    OrderNotesUpdate,
    OrderPaymentRead,
    OrderRead,
    OrderStatusUpdate,
    OrderWithItemsRead,
    ShippingAddress,
)
from storefront.schemas.pricing import PriceBreakdown
from storefront.services.checkout_service import CheckoutService, priced_lines, utcnow
from storefront.services.inventory_service import InventoryService
from storefront.services.notification_service import send_order_confirmation
from storefront.services.payment_service import generate_payment_id
from storefront.services.pricing import compute_breakdown, line_insurance

logger = logging.getLogger(__name__)

# Single forward step allowed from each status (admin transitions).
NEXT_STATUS: dict[str, str] = {
    "pending": "confirmed",
    "confirmed": "processing",
    "processing": "shipped",
    "shipped": "delivered",
    "delivered": "returned",
}

CANCELLABLE_STATUSES = {"pending", "confirmed"}
DELETABLE_STATUSES = {"cancelled", "returned"}

CANCEL_MAX_ATTEMPTS = 3

_ORDER_SUFFIX_ALPHABET = string.digits + string.ascii_uppercase


def generate_order_number() -> str:
    """ORD<epoch-ms><6 base36 chars>."""
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(6))
    return f"ORD{int(time.time() * 1000)}{suffix}"


def can_cancel(order_status: str) -> bool:
    return order_status in CANCELLABLE_STATUSES


class OrderService:
    """
    Business logic for orders.

    Responsibilities:
      - Create an order from a checkout session in one transaction
        (reserve stock, freeze items/address/breakdown, companion payment,
        delete the session)
      - Forward-only status machine (admin)
      - Idempotent cancellation with exact stock release and refund marking
      - Listing, lookup, notes, deletion of finished orders
    """

    def __init__(
        self,
        order_repo: OrderRepository,
        checkout_repo: CheckoutRepository,
        product_repo: ProductRepository,
        payment_repo: PaymentRepository,
        inventory: InventoryService,
        checkout_service: CheckoutService,
        notifier: Callable[[Order, list[OrderItem], str], None] = send_order_confirmation,
    ):
        self.order_repo = order_repo
        self.checkout_repo = checkout_repo
        self.product_repo = product_repo
        self.payment_repo = payment_repo
        self.inventory = inventory
        self.checkout_service = checkout_service
        self.notifier = notifier

    # -------- User-facing operations --------

    def create_order(
        self,
        session: Session,
        user: User,
        payload: OrderCreate,
        background_tasks: BackgroundTasks | None = None,
    ) -> OrderWithItemsRead:
        """
        Convert a checkout session into an Order.

        Everything between loading the session and the commit happens in one
        database transaction; any failure rolls back every reservation and
        insert. An order-number collision at commit retries the whole
        creation with a fresh number.
        """
        settings = get_settings()

        for attempt in range(1, settings.ORDER_NUMBER_MAX_ATTEMPTS + 1):
            try:
                order, items, payment = self._place_order(session, user.id, payload)
            except IntegrityError:
                session.rollback()
                logger.warning(
                    "Order number collision for checkout session %s (attempt %d)",
                    payload.checkout_session_id,
                    attempt,
                )
                continue
            except StorefrontError:
                session.rollback()
                raise
            except Exception:
                session.rollback()
                logger.exception(
                    "Order creation failed for checkout session %s",
                    payload.checkout_session_id,
                )
                raise

            logger.info(
                "Order %s created: user=%s total=%.2f method=%s",
                order.order_number,
                user.id,
                order.total_amount,
                order.payment_method,
            )
            result = self._build_order_with_items_dto(order, items, payment)
            self._notify_order_created(order, items, user.email, background_tasks)
            return result

        raise ConcurrencyConflictError("Could not allocate a unique order number, please retry")

    def list_user_orders(
        self,
        session: Session,
        user_id: uuid.UUID,
        status: str | None = None,
        order_number: str | None = None,
        skip: int = 0,
        limit: int = 50,
    ) -> OrderList:
        """
        List the user's orders (without items), newest first.
        """
        return self._list(session, user_id, status, order_number, skip, limit)

    def get_user_order(
        self,
        session: Session,
        user_id: uuid.UUID,
        order_id: uuid.UUID,
    ) -> OrderWithItemsRead:
        """
        Get a single order for the user, including items.

        - NotFound if the order does not exist or belongs to someone else.
        """
        order = self._require_order(session, order_id, user_id)
        return self._load_dto(session, order)

    def get_user_order_by_number(
        self,
        session: Session,
        user_id: uuid.UUID,
        order_number: str,
    ) -> OrderWithItemsRead:
        order = self.order_repo.get_by_number(session, order_number, user_id)
        if order is None:
            raise NotFoundError("Order", order_number)
        return self._load_dto(session, order)

    def update_notes(
        self,
        session: Session,
        user_id: uuid.UUID,
        order_id: uuid.UUID,
        payload: OrderNotesUpdate,
    ) -> OrderWithItemsRead:
        """
        Replace the free-text notes; nothing else on a placed order is
        user-editable.
        """
        order = self._require_order(session, order_id, user_id)
        notes = payload.notes.strip() if payload.notes else None
        order.notes = notes or None
        order.updated_at = utcnow()
        self.order_repo.update_order(session, order)
        session.commit()
        return self._load_dto(session, order)

    def cancel(
        self,
        session: Session,
        order_id: uuid.UUID,
        reason: str | None = None,
        user_id: uuid.UUID | None = None,
    ) -> OrderWithItemsRead:
        """
        Cancel a pending/confirmed order.

        The status change is a conditional update, so only one caller ever
        releases the stock. Cancelling an already cancelled order returns it
        unchanged.
        """
        order = self._require_order(session, order_id, user_id)

        for _ in range(CANCEL_MAX_ATTEMPTS):
            if order.order_status == "cancelled":
                return self._load_dto(session, order)
            if not can_cancel(order.order_status):
                raise InvalidStateTransitionError(
                    order.order_status,
                    "cancelled",
                    "Order cannot be cancelled at this stage",
                )

            now = utcnow()
            was_paid = order.payment_status == "paid"
            values: dict = {
                "order_status": "cancelled",
                "cancelled_at": now,
                "cancellation_reason": reason or None,
                "updated_at": now,
            }
            if was_paid:
                values.update(
                    payment_status="refunded",
                    refund_amount=order.total_amount,
                    refunded_at=now,
                )

            applied = self.order_repo.transition_status(
                session,
                order.id,
                CANCELLABLE_STATUSES,
                values,
                payment_status=order.payment_status,
            )
            if applied:
                break

            # Lost a race (another cancel, a status advance or a payment
            # verification); re-read and decide again.
            session.rollback()
            session.refresh(order)
        else:
            raise ConcurrencyConflictError("Order changed while cancelling, please retry")

        try:
            items = self.order_repo.list_items_for_order(session, order.id)
            for it in items:
                self.inventory.release(session, it.product_id, it.quantity)

            payment = self.payment_repo.get_by_order_id(session, order.id)
            if payment is not None:
                if was_paid:
                    self.payment_repo.transition_status(
                        session,
                        payment.id,
                        {"success"},
                        {
                            "status": "refunded",
                            "refund_amount": order.total_amount,
                            "refunded_at": now,
                            "updated_at": now,
                        },
                    )
                else:
                    self.payment_repo.transition_status(
                        session,
                        payment.id,
                        {"pending"},
                        {"status": "cancelled", "updated_at": now},
                    )

            session.commit()
        except Exception:
            session.rollback()
            logger.exception("Cancellation of order %s failed", order.order_number)
            raise

        logger.info(
            "Order %s cancelled (refunded=%s, released %d lines)",
            order.order_number,
            was_paid,
            len(items),
        )
        return self._load_dto(session, order)

    def delete(
        self,
        session: Session,
        user_id: uuid.UUID,
        order_id: uuid.UUID,
    ) -> OrderDeleted:
        """
        Delete a finished (cancelled or returned) order and its payment.
        """
        order = self._require_order(session, order_id, user_id)
        if order.order_status not in DELETABLE_STATUSES:
            raise InvalidStateTransitionError(
                order.order_status,
                "deleted",
                "Only cancelled or returned orders can be deleted",
            )

        result = OrderDeleted(
            order_number=order.order_number,
            order_status=order.order_status,  # type: ignore[arg-type]
            total_amount=order.total_amount,
            deleted_at=utcnow(),
        )

        payment = self.payment_repo.get_by_order_id(session, order.id)
        if payment is not None:
            self.payment_repo.delete(session, payment)
        self.order_repo.delete_order(session, order)
        session.commit()

        logger.info("Order %s deleted by user %s", result.order_number, user_id)
        return result

    # -------- Admin operations --------

    def list_all_orders(
        self,
        session: Session,
        status: str | None = None,
        order_number: str | None = None,
        skip: int = 0,
        limit: int = 50,
    ) -> OrderList:
        """
        List all orders (admin only).
        """
        return self._list(session, None, status, order_number, skip, limit)

    def get_order_admin(
        self,
        session: Session,
        order_id: uuid.UUID,
    ) -> OrderWithItemsRead:
        """
        Get any order with items (admin only).
        """
        order = self._require_order(session, order_id)
        return self._load_dto(session, order)

    def advance_status(
        self,
        session: Session,
        order_id: uuid.UUID,
        payload: OrderStatusUpdate,
    ) -> OrderWithItemsRead:
        """
        Admin-only, forward-only status change:

          pending -> confirmed -> processing -> shipped -> delivered -> returned
          pending | confirmed -> cancelled (delegated to cancel)

        The same status is a no-op. Anything else raises
        InvalidStateTransition.
        """
        order = self._require_order(session, order_id)

        current = order.order_status
        new = payload.status

        if new == "cancelled":
            return self.cancel(session, order.id)

        if current == new:
            return self._load_dto(session, order)

        if NEXT_STATUS.get(current) != new:
            raise InvalidStateTransitionError(current, new)

        now = utcnow()
        values: dict = {"order_status": new, "updated_at": now}
        if new == "shipped" and payload.tracking_number:
            values["tracking_number"] = payload.tracking_number.strip()

        cod_delivered = new == "delivered" and order.payment_method == "cod"
        if new == "delivered":
            values["delivered_at"] = now
            if cod_delivered:
                values["payment_status"] = "paid"

        if not self.order_repo.transition_status(session, order.id, {current}, values):
            session.rollback()
            session.refresh(order)
            if order.order_status == new:
                return self._load_dto(session, order)
            raise InvalidStateTransitionError(order.order_status, new)

        if cod_delivered:
            payment = self.payment_repo.get_by_order_id(session, order.id)
            if payment is not None:
                self.payment_repo.transition_status(
                    session,
                    payment.id,
                    {"pending"},
                    {"status": "success", "updated_at": now},
                )

        session.commit()
        logger.info("Order %s: %s -> %s", order.order_number, current, new)
        return self._load_dto(session, order)

    # -------- Order creation steps --------

    def _place_order(
        self,
        session: Session,
        user_id: uuid.UUID,
        payload: OrderCreate,
    ) -> tuple[Order, list[OrderItem], Payment]:
        """
        One attempt at order creation. Commits on success; the caller rolls
        back on any exception.
        """
        settings = get_settings()

        checkout = self.checkout_service.get_active_session(
            session, user_id, payload.checkout_session_id
        )
        checkout_items = self.checkout_repo.list_items(session, checkout.id)
        if not checkout_items:
            raise InvalidInputError("Checkout session has no items")

        # Consume the session before touching stock; a concurrent submission
        # of the same session finds nothing to claim.
        if not self.checkout_repo.claim(session, checkout):
            raise NotFoundError("Checkout session", payload.checkout_session_id)

        address_id = payload.address_id or checkout.selected_address_id
        if address_id is None:
            raise InvalidInputError("Shipping address is required")
        payment_method = payload.payment_method or checkout.selected_payment_method
        if payment_method is None:
            raise InvalidInputError("Payment method is required")

        address = self.product_repo.get_address_for_user(session, user_id, address_id)
        if address is None:
            raise NotFoundError("Address", address_id)

        products = self._validate_items(session, checkout_items)

        # Authoritative stock check: conditional decrement per line.
        for item in checkout_items:
            self.inventory.reserve(session, item.product_id, item.quantity)

        lines, insured = priced_lines(checkout_items, products)
        breakdown = compute_breakdown(lines, insured)

        order_number = self._next_order_number(session)
        now = utcnow()
        order = Order(
            order_number=order_number,
            user_id=user_id,
            original_subtotal=breakdown.original_subtotal,
            item_discount=breakdown.item_discount,
            subtotal=breakdown.subtotal,
            total_insurance=breakdown.total_insurance,
            shipping_cost=breakdown.shipping_cost,
            tax=breakdown.tax,
            coupon_discount=breakdown.coupon_discount,
            total_amount=breakdown.grand_total,
            total_savings=breakdown.total_savings,
            payment_method=payment_method,
            payment_status="pending",
            order_status="confirmed" if payment_method == "cod" else "pending",
            expected_delivery_date=now + timedelta(days=settings.EXPECTED_DELIVERY_DAYS),
            notes=payload.notes,
            created_at=now,
            updated_at=now,
            **self._address_snapshot(address),
        )
        order = self.order_repo.create_order(session, order)

        order_items: list[OrderItem] = []
        for item, line in zip(checkout_items, lines):
            product = products[item.product_id]
            order_items.append(
                OrderItem(
                    order_id=order.id,
                    product_id=item.product_id,
                    name=product.name,
                    price=product.final_price,
                    original_price=product.price,
                    quantity=item.quantity,
                    discount_percent=product.discount_percent,
                    insurance_cost=float(line_insurance(line)) if item.has_insurance else None,
                    variant_color=item.variant_color,
                    variant_size=item.variant_size,
                    variant_sku=item.variant_sku,
                    product_image=product.image_url,
                )
            )
        order_items = self.order_repo.create_items(session, order_items)

        payment = Payment(
            payment_id=generate_payment_id(),
            order_id=order.id,
            user_id=user_id,
            amount=order.total_amount,
            currency=settings.CURRENCY,
            method=payment_method,
            gateway="offline" if payment_method == "cod" else get_gateway().name,
            status="pending",
        )
        payment = self.payment_repo.create(session, payment)

        session.commit()
        return order, order_items, payment

    def _validate_items(
        self,
        session: Session,
        items: list[CheckoutItem],
    ) -> dict[uuid.UUID, Product]:
        """
        Every line's product must still exist, be active and (summed across
        variants) fit current stock. reserve() re-checks atomically.
        """
        products = self.product_repo.get_many(session, (it.product_id for it in items))

        requested: dict[uuid.UUID, int] = defaultdict(int)
        for it in items:
            requested[it.product_id] += it.quantity

        for product_id, quantity in requested.items():
            product = products.get(product_id)
            if product is None:
                raise NotFoundError("Product", product_id)
            if not product.is_active:
                raise InvalidInputError("Product is inactive", product_id=str(product_id))
            if product.stock_quantity < quantity:
                raise InsufficientStockError(
                    product_id, quantity, product.stock_quantity, name=product.name
                )
        return products

    def _next_order_number(self, session: Session) -> str:
        settings = get_settings()
        for _ in range(settings.ORDER_NUMBER_MAX_ATTEMPTS):
            candidate = generate_order_number()
            if not self.order_repo.order_number_exists(session, candidate):
                return candidate
        raise ConcurrencyConflictError("Could not allocate a unique order number, please retry")

    @staticmethod
    def _address_snapshot(address: Address) -> dict:
        return {
            "ship_full_name": address.full_name,
            "ship_phone": address.phone,
            "ship_address_line1": address.address_line1,
            "ship_address_line2": address.address_line2,
            "ship_city": address.city,
            "ship_state": address.state,
            "ship_postal_code": address.postal_code,
            "ship_country": address.country,
        }

    def _notify_order_created(
        self,
        order: Order,
        items: list[OrderItem],
        email: str,
        background_tasks: BackgroundTasks | None = None,
    ) -> None:
        """
        Send the confirmation after the response when `background_tasks` is
        given, otherwise inline.
        """
        if background_tasks is not None:
            background_tasks.add_task(self._send_confirmation, order, items, email)
            return
        self._send_confirmation(order, items, email)

    def _send_confirmation(self, order: Order, items: list[OrderItem], email: str) -> None:
        try:
            self.notifier(order, items, email)
        except Exception:
            logger.exception(
                "Order confirmation email failed for %s (order kept)", order.order_number
            )

    # -------- Helpers --------

    def _require_order(
        self,
        session: Session,
        order_id: uuid.UUID,
        user_id: uuid.UUID | None = None,
    ) -> Order:
        if user_id is None:
            order = self.order_repo.get_by_id(session, order_id)
        else:
            order = self.order_repo.get_for_user(session, user_id, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def _list(
        self,
        session: Session,
        user_id: uuid.UUID | None,
        status: str | None,
        order_number: str | None,
        skip: int,
        limit: int,
    ) -> OrderList:
        if skip < 0 or limit <= 0:
            raise InvalidInputError("skip must be >= 0 and limit > 0")
        orders = self.order_repo.list_orders(
            session, user_id, status, order_number, skip, limit
        )
        total = self.order_repo.count_orders(session, user_id, status, order_number)
        return OrderList(
            orders=[OrderRead.model_validate(o) for o in orders],
            total=total,
            skip=skip,
            limit=limit,
        )

    def _load_dto(self, session: Session, order: Order) -> OrderWithItemsRead:
        items = self.order_repo.list_items_for_order(session, order.id)
        payment = self.payment_repo.get_by_order_id(session, order.id)
        return self._build_order_with_items_dto(order, items, payment)

    # -------- Helper DTO builder --------

    def _build_order_with_items_dto(
        self,
        order: Order,
        items: list[OrderItem],
        payment: Payment | None,
    ) -> OrderWithItemsRead:
        """
        Compose OrderWithItemsRead from ORM models; the breakdown is read
        from the frozen columns, never recomputed.
        """
        item_dtos = [
            OrderItemRead(
                id=it.id,
                product_id=it.product_id,
                name=it.name,
                price=it.price,
                original_price=it.original_price,
                quantity=it.quantity,
                discount_percent=it.discount_percent,
                insurance_cost=it.insurance_cost,
                variant=variant_from_columns(it.variant_color, it.variant_size, it.variant_sku),
                product_image=it.product_image,
                line_total=it.price * it.quantity,
            )
            for it in items
        ]

        return OrderWithItemsRead(
            id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            total_amount=order.total_amount,
            payment_method=order.payment_method,  # Literal
            payment_status=order.payment_status,  # Literal
            order_status=order.order_status,  # Literal
            tracking_number=order.tracking_number,
            expected_delivery_date=order.expected_delivery_date,
            created_at=order.created_at,
            updated_at=order.updated_at,
            items=item_dtos,
            price_breakdown=PriceBreakdown(
                original_subtotal=order.original_subtotal,
                item_discount=order.item_discount,
                subtotal=order.subtotal,
                total_insurance=order.total_insurance,
                shipping_cost=order.shipping_cost,
                tax=order.tax,
                coupon_discount=order.coupon_discount,
                grand_total=order.total_amount,
                total_savings=order.total_savings,
            ),
            shipping_address=ShippingAddress(
                full_name=order.ship_full_name,
                phone=order.ship_phone,
                address_line1=order.ship_address_line1,
                address_line2=order.ship_address_line2,
                city=order.ship_city,
                state=order.ship_state,
                postal_code=order.ship_postal_code,
                country=order.ship_country,
            ),
            delivered_at=order.delivered_at,
            cancelled_at=order.cancelled_at,
            cancellation_reason=order.cancellation_reason,
            refund_amount=order.refund_amount,
            refunded_at=order.refunded_at,
            notes=order.notes,
            payment=(
                OrderPaymentRead(
                    payment_id=payment.payment_id,
                    status=payment.status,
                    method=payment.method,
                    gateway=payment.gateway,
                    gateway_transaction_id=payment.gateway_transaction_id,
                )
                if payment is not None
                else None
            ),
        )
