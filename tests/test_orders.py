import re
import uuid

import pytest
from fastapi import BackgroundTasks
from sqlalchemy import func
from sqlalchemy.pool import NullPool
from sqlmodel import Session, SQLModel, create_engine, select

from storefront.core.errors import (
    ConcurrencyConflictError,
    InsufficientStockError,
    InvalidInputError,
    InvalidStateTransitionError,
    NotFoundError,
)
from storefront.models.catalog import Address, Product
from storefront.models.checkout import CheckoutSession
from storefront.models.order import Order
from storefront.models.payment import Payment
from storefront.models.user import User
from storefront.repositories.cart_repo import CartRepository
from storefront.repositories.checkout_repo import CheckoutRepository
from storefront.repositories.order_repo import OrderRepository
from storefront.repositories.payment_repo import PaymentRepository
from storefront.repositories.product_repo import ProductRepository
from storefront.schemas.cart import CartItemCreate
from storefront.schemas.checkout import CheckoutCreate, CheckoutUpdate
from storefront.schemas.order import OrderCreate, OrderNotesUpdate, OrderStatusUpdate
from storefront.schemas.payment import PaymentInitiate, PaymentVerify
from storefront.services import order_service as order_service_module
from storefront.services.cart_service import CartService
from storefront.services.checkout_service import CheckoutService
from storefront.services.inventory_service import InventoryService
from storefront.services.order_service import OrderService


def _stock(session, product):
    session.expire_all()
    fresh = session.get(Product, product.id)
    return fresh.stock_quantity, fresh.sold_count


def _order_count(session):
    return session.exec(select(func.count()).select_from(Order)).one()


def _advance(order_service, session, order, status, **extra):
    return order_service.advance_status(
        session, order.id, OrderStatusUpdate(status=status, **extra)
    )


def _pay(session, payment_service, gateway, sign, user, order):
    initiated = payment_service.initiate(session, user.id, PaymentInitiate(order_id=order.id))
    return payment_service.verify(
        session,
        user.id,
        PaymentVerify(
            payment_id=initiated.payment_id,
            gateway_payment_id="pay_ref_001",
            signature=sign(initiated.gateway_order_id, "pay_ref_001"),
        ),
    )


# ---- create ----


def test_cod_order_is_confirmed_and_reserves_stock(session, place_order, user, make_product, notifications):
    chair = make_product(price=2500, final_price=2000, stock=5)

    order = place_order(user, [(chair, 2)], payment_method="cod", notes="  Call before delivery ")

    assert re.fullmatch(r"ORD\d{13}[0-9A-Z]{6}", order.order_number)
    assert order.order_status == "confirmed"
    assert order.payment_status == "pending"
    assert order.notes == "Call before delivery"
    assert _stock(session, chair) == (3, 2)

    item = order.items[0]
    assert (item.name, item.price, item.original_price, item.quantity) == (chair.name, 2000, 2500, 2)
    assert item.insurance_cost is None
    assert item.variant is None
    assert order.shipping_address.city == "Bengaluru"
    assert order.shipping_address.country == "India"
    assert (order.expected_delivery_date - order.created_at).days == 7

    assert order.payment.status == "pending"
    assert order.payment.gateway == "offline"
    assert re.fullmatch(r"pay_\d{13}_[0-9a-z]{8}", order.payment.payment_id)

    assert notifications == [(order.order_number, 1, user.email)]


def test_gateway_order_starts_pending(session, place_order, user, make_product, gateway):
    chair = make_product(stock=5)

    order = place_order(user, [(chair, 1)], payment_method="card")

    assert order.order_status == "pending"
    assert order.payment.gateway == gateway.name
    assert gateway.calls == []


def test_order_deletes_checkout_session(session, place_order, user, make_product):
    place_order(user, [(make_product(stock=5), 1)])

    rows = session.exec(select(CheckoutSession).where(CheckoutSession.user_id == user.id)).all()
    assert rows == []


def test_checkout_total_equals_order_total(
    session, cart_service, checkout_service, order_service, user, make_product, address
):
    sofa = make_product(name="Sofa", price=15000, final_price=11999, stock=3)
    lamp = make_product(name="Lamp", price=999, stock=3)
    for product, quantity in ((sofa, 1), (lamp, 3)):
        cart_service.add_item(session, user.id, CartItemCreate(product_id=product.id, quantity=quantity))
    created = checkout_service.create(
        session,
        user.id,
        CheckoutCreate(selected_product_ids=[sofa.id, lamp.id], insurance_enabled=[sofa.id]),
    )
    preview = checkout_service.read(session, user.id, created.session_id).price_breakdown

    order = order_service.create_order(
        session,
        user,
        OrderCreate(checkout_session_id=created.session_id, address_id=address.id, payment_method="upi"),
    )

    assert order.price_breakdown == preview
    assert order.total_amount == preview.grand_total
    sofa_line = next(i for i in order.items if i.product_id == sofa.id)
    lamp_line = next(i for i in order.items if i.product_id == lamp.id)
    assert sofa_line.insurance_cost == 240
    assert lamp_line.insurance_cost is None


def test_selection_stored_on_session_is_used(
    session, cart_service, checkout_service, order_service, user, make_product, address
):
    chair = make_product(stock=5)
    cart_service.add_item(session, user.id, CartItemCreate(product_id=chair.id))
    created = checkout_service.create(session, user.id, CheckoutCreate(selected_product_ids=[chair.id]))
    checkout_service.update(
        session,
        user.id,
        created.session_id,
        CheckoutUpdate(selected_address_id=address.id, selected_payment_method="netbanking"),
    )

    order = order_service.create_order(session, user, OrderCreate(checkout_session_id=created.session_id))

    assert order.payment_method == "netbanking"
    assert order.shipping_address.address_line1 == address.address_line1


def test_missing_address_or_method_is_invalid(
    session, cart_service, checkout_service, order_service, user, make_product, address
):
    chair = make_product(stock=5)
    cart_service.add_item(session, user.id, CartItemCreate(product_id=chair.id))
    created = checkout_service.create(session, user.id, CheckoutCreate(selected_product_ids=[chair.id]))

    with pytest.raises(InvalidInputError):
        order_service.create_order(
            session, user, OrderCreate(checkout_session_id=created.session_id, payment_method="cod")
        )
    with pytest.raises(InvalidInputError):
        order_service.create_order(
            session, user, OrderCreate(checkout_session_id=created.session_id, address_id=address.id)
        )
    assert _stock(session, chair) == (5, 0)


def test_unknown_session_is_not_found(session, order_service, user, address):
    with pytest.raises(NotFoundError):
        order_service.create_order(
            session,
            user,
            OrderCreate(checkout_session_id="nope", address_id=address.id, payment_method="cod"),
        )


def test_insufficient_stock_changes_nothing(
    session, cart_service, checkout_service, order_service, user, make_product, address
):
    chair = make_product(stock=5)
    cart_service.add_item(session, user.id, CartItemCreate(product_id=chair.id, quantity=3))
    created = checkout_service.create(session, user.id, CheckoutCreate(selected_product_ids=[chair.id]))

    chair.stock_quantity = 2
    session.add(chair)
    session.commit()

    with pytest.raises(InsufficientStockError):
        order_service.create_order(
            session,
            user,
            OrderCreate(checkout_session_id=created.session_id, address_id=address.id, payment_method="cod"),
        )

    assert _stock(session, chair) == (2, 0)
    assert _order_count(session) == 0
    assert session.exec(select(Payment)).all() == []
    # The session survives so the user can adjust and retry.
    assert checkout_service.read(session, user.id, created.session_id).session_id == created.session_id


def test_failed_reservation_rolls_back_earlier_lines(
    session, cart_service, checkout_service, order_service, inventory, user, make_product, address, monkeypatch
):
    sofa = make_product(name="Sofa", stock=5)
    lamp = make_product(name="Lamp", stock=5)
    for product in (sofa, lamp):
        cart_service.add_item(session, user.id, CartItemCreate(product_id=product.id, quantity=2))
    created = checkout_service.create(
        session, user.id, CheckoutCreate(selected_product_ids=[sofa.id, lamp.id])
    )

    real_reserve = inventory.reserve

    def reserve(sess, product_id, quantity):
        if product_id == lamp.id:
            raise InsufficientStockError(product_id, quantity, 0)
        real_reserve(sess, product_id, quantity)

    monkeypatch.setattr(inventory, "reserve", reserve)

    with pytest.raises(InsufficientStockError):
        order_service.create_order(
            session,
            user,
            OrderCreate(checkout_session_id=created.session_id, address_id=address.id, payment_method="cod"),
        )

    assert _stock(session, sofa) == (5, 0)
    assert _stock(session, lamp) == (5, 0)
    assert _order_count(session) == 0


def test_notification_failure_does_not_fail_order(
    session, cart_service, checkout_service, order_service, user, make_product, address
):
    def broken(order, items, email):
        raise RuntimeError("smtp down")

    order_service.notifier = broken
    chair = make_product(stock=5)
    cart_service.add_item(session, user.id, CartItemCreate(product_id=chair.id))
    created = checkout_service.create(session, user.id, CheckoutCreate(selected_product_ids=[chair.id]))

    order = order_service.create_order(
        session,
        user,
        OrderCreate(checkout_session_id=created.session_id, address_id=address.id, payment_method="cod"),
    )

    assert order.order_status == "confirmed"
    assert _order_count(session) == 1


def test_confirmation_is_deferred_to_background_tasks(
    session, cart_service, checkout_service, order_service, user, make_product, address, notifications
):
    chair = make_product(stock=5)
    cart_service.add_item(session, user.id, CartItemCreate(product_id=chair.id))
    created = checkout_service.create(session, user.id, CheckoutCreate(selected_product_ids=[chair.id]))
    tasks = BackgroundTasks()

    order = order_service.create_order(
        session,
        user,
        OrderCreate(checkout_session_id=created.session_id, address_id=address.id, payment_method="cod"),
        background_tasks=tasks,
    )

    assert notifications == []
    assert len(tasks.tasks) == 1
    task = tasks.tasks[0]
    task.func(*task.args, **task.kwargs)
    assert notifications == [(order.order_number, 1, user.email)]


def test_order_number_collision_is_retried(session, place_order, order_service, user, make_product, monkeypatch):
    chair = make_product(stock=5)
    first = place_order(user, [(chair, 1)])

    numbers = iter([first.order_number, "ORD1700000000000ABCDEF"])
    monkeypatch.setattr(order_service_module, "generate_order_number", lambda: next(numbers))
    monkeypatch.setattr(order_service.order_repo, "order_number_exists", lambda session, number: False)

    second = place_order(user, [(chair, 1)])

    assert second.order_number == "ORD1700000000000ABCDEF"
    assert _order_count(session) == 2
    assert _stock(session, chair) == (3, 2)


def test_order_number_exhaustion_is_a_conflict(session, place_order, order_service, user, make_product, monkeypatch):
    chair = make_product(stock=5)
    first = place_order(user, [(chair, 1)])

    monkeypatch.setattr(order_service_module, "generate_order_number", lambda: first.order_number)
    monkeypatch.setattr(order_service.order_repo, "order_number_exists", lambda session, number: False)

    with pytest.raises(ConcurrencyConflictError):
        place_order(user, [(chair, 1)])

    assert _order_count(session) == 1
    assert _stock(session, chair) == (4, 1)


# ---- reads ----


def test_list_get_and_search(session, place_order, order_service, user, other_user, make_product):
    chair = make_product(stock=10)
    first = place_order(user, [(chair, 1)], payment_method="cod")
    second = place_order(user, [(chair, 1)], payment_method="card")

    listing = order_service.list_user_orders(session, user.id)
    assert listing.total == 2
    assert {o.order_number for o in listing.orders} == {first.order_number, second.order_number}

    pending = order_service.list_user_orders(session, user.id, status="pending")
    assert [o.id for o in pending.orders] == [second.id]

    found = order_service.list_user_orders(session, user.id, order_number=first.order_number[-6:])
    assert [o.id for o in found.orders] == [first.id]

    paged = order_service.list_user_orders(session, user.id, skip=1, limit=1)
    assert paged.total == 2 and len(paged.orders) == 1

    assert order_service.get_user_order_by_number(session, user.id, first.order_number).id == first.id
    assert order_service.list_user_orders(session, other_user.id).total == 0
    assert order_service.list_all_orders(session).total == 2

    with pytest.raises(NotFoundError):
        order_service.get_user_order(session, other_user.id, first.id)
    with pytest.raises(InvalidInputError):
        order_service.list_user_orders(session, user.id, limit=0)


def test_update_notes(session, place_order, order_service, user, make_product):
    order = place_order(user, [(make_product(stock=5), 1)])

    updated = order_service.update_notes(
        session, user.id, order.id, OrderNotesUpdate(notes="Leave at the gate")
    )
    assert updated.notes == "Leave at the gate"

    cleared = order_service.update_notes(session, user.id, order.id, OrderNotesUpdate(notes="   "))
    assert cleared.notes is None


# ---- status machine ----


def test_forward_chain(session, place_order, order_service, user, make_product):
    order = place_order(user, [(make_product(stock=5), 1)], payment_method="card")

    for status in ("confirmed", "processing", "shipped", "delivered", "returned"):
        extra = {"tracking_number": "TRK123"} if status == "shipped" else {}
        order = _advance(order_service, session, order, status, **extra)
        assert order.order_status == status

    assert order.tracking_number == "TRK123"
    assert order.delivered_at is not None


@pytest.mark.parametrize(
    "start_path, target",
    [
        ((), "processing"),
        ((), "delivered"),
        (("confirmed", "processing"), "confirmed"),
        (("confirmed", "processing", "shipped"), "pending"),
        (("confirmed",), "returned"),
    ],
)
def test_non_forward_transitions_are_rejected(session, place_order, order_service, user, make_product, start_path, target):
    order = place_order(user, [(make_product(stock=5), 1)], payment_method="card")
    for status in start_path:
        order = _advance(order_service, session, order, status)

    with pytest.raises(InvalidStateTransitionError):
        _advance(order_service, session, order, target)


def test_same_status_is_a_no_op(session, place_order, order_service, user, make_product):
    order = place_order(user, [(make_product(stock=5), 1)], payment_method="cod")

    again = _advance(order_service, session, order, "confirmed")

    assert again.order_status == "confirmed"
    assert again.updated_at == order.updated_at


def test_cod_delivery_marks_payment_paid(session, place_order, order_service, user, make_product):
    order = place_order(user, [(make_product(stock=5), 1)], payment_method="cod")
    for status in ("processing", "shipped", "delivered"):
        order = _advance(order_service, session, order, status)

    assert order.payment_status == "paid"
    assert order.payment.status == "success"


def test_prepaid_delivery_leaves_payment_alone(session, place_order, order_service, user, make_product):
    order = place_order(user, [(make_product(stock=5), 1)], payment_method="card")
    for status in ("confirmed", "processing", "shipped", "delivered"):
        order = _advance(order_service, session, order, status)

    assert order.payment_status == "pending"
    assert order.payment.status == "pending"


# ---- cancel ----


def test_cancel_releases_exact_reservations(session, place_order, order_service, user, make_product):
    sofa = make_product(name="Sofa", stock=4)
    lamp = make_product(name="Lamp", stock=6)
    order = place_order(user, [(sofa, 2), (lamp, 3)])
    assert _stock(session, sofa) == (2, 2)

    cancelled = order_service.cancel(session, order.id, "Changed my mind", user_id=user.id)

    assert cancelled.order_status == "cancelled"
    assert cancelled.cancellation_reason == "Changed my mind"
    assert cancelled.cancelled_at is not None
    assert cancelled.payment_status == "pending"
    assert cancelled.payment.status == "cancelled"
    assert _stock(session, sofa) == (4, 0)
    assert _stock(session, lamp) == (6, 0)


def test_cancel_is_idempotent(session, place_order, order_service, user, make_product):
    chair = make_product(stock=5)
    order = place_order(user, [(chair, 2)])

    first = order_service.cancel(session, order.id, user_id=user.id)
    second = order_service.cancel(session, order.id, user_id=user.id)

    assert first.order_status == second.order_status == "cancelled"
    assert first.cancelled_at == second.cancelled_at
    assert _stock(session, chair) == (5, 0)


def test_cancel_after_payment_refunds(
    session, place_order, order_service, payment_service, gateway, sign, user, make_product
):
    # 4203 + 40 shipping + round(756.54) tax = 5000
    desk = make_product(price=4203, stock=2)
    order = place_order(user, [(desk, 1)], payment_method="card")
    assert order.total_amount == 5000
    _pay(session, payment_service, gateway, sign, user, order)

    cancelled = order_service.cancel(session, order.id, user_id=user.id)

    assert cancelled.payment_status == "refunded"
    assert cancelled.refund_amount == 5000
    assert cancelled.refunded_at is not None
    assert cancelled.payment.status == "refunded"
    payment = session.exec(select(Payment).where(Payment.order_id == order.id)).one()
    assert payment.refund_amount == 5000
    assert _stock(session, desk) == (2, 0)


def test_cannot_cancel_after_processing(session, place_order, order_service, user, make_product):
    chair = make_product(stock=5)
    order = place_order(user, [(chair, 1)])
    order = _advance(order_service, session, order, "processing")

    with pytest.raises(InvalidStateTransitionError):
        order_service.cancel(session, order.id, user_id=user.id)
    assert _stock(session, chair) == (4, 1)


def test_admin_cancel_through_status_change(session, place_order, order_service, user, make_product):
    chair = make_product(stock=5)
    order = place_order(user, [(chair, 1)], payment_method="card")

    cancelled = _advance(order_service, session, order, "cancelled")

    assert cancelled.order_status == "cancelled"
    assert _stock(session, chair) == (5, 0)


def test_cancel_someone_elses_order(session, place_order, order_service, user, other_user, make_product):
    order = place_order(user, [(make_product(stock=5), 1)])

    with pytest.raises(NotFoundError):
        order_service.cancel(session, order.id, user_id=other_user.id)


# ---- delete ----


def test_delete_requires_finished_order(session, place_order, order_service, user, make_product):
    order = place_order(user, [(make_product(stock=5), 1)])

    with pytest.raises(InvalidStateTransitionError):
        order_service.delete(session, user.id, order.id)

    order_service.cancel(session, order.id, user_id=user.id)
    deleted = order_service.delete(session, user.id, order.id)

    assert deleted.order_number == order.order_number
    assert deleted.order_status == "cancelled"
    assert _order_count(session) == 0
    assert session.exec(select(Payment)).all() == []
    with pytest.raises(NotFoundError):
        order_service.get_user_order(session, user.id, order.id)


# ---- concurrent submission ----


class _InterleavingCheckoutRepository(CheckoutRepository):
    """Runs `hook` once, right after the first item listing returns."""

    def __init__(self, hook):
        self.hook = hook

    def list_items(self, session, checkout_id):
        items = super().list_items(session, checkout_id)
        hook, self.hook = self.hook, None
        if hook is not None:
            hook()
        return items


def _order_service_with(checkout_repo):
    return OrderService(
        OrderRepository(),
        checkout_repo,
        ProductRepository(),
        PaymentRepository(),
        InventoryService(),
        CheckoutService(CheckoutRepository(), CartRepository(), ProductRepository()),
        notifier=lambda order, items, email: None,
    )


def test_one_checkout_session_yields_one_order(tmp_path):
    """
    A second submission of the same checkout session, interleaved with the
    first, must not create another order or reserve stock again.
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'orders.db'}", poolclass=NullPool)
    SQLModel.metadata.create_all(engine)

    with Session(engine) as setup:
        buyer = User(id=uuid.uuid4(), email="asha@example.com", name="asha")
        product = Product(name="Oak Table", price=5000, final_price=5000, stock_quantity=10)
        setup.add_all([buyer, product])
        setup.commit()
        address = Address(
            user_id=buyer.id,
            full_name="Asha Rao",
            phone="9876543210",
            address_line1="12 MG Road",
            city="Bengaluru",
            state="Karnataka",
            postal_code="560001",
        )
        setup.add(address)
        setup.commit()
        CartService(CartRepository(), ProductRepository()).add_item(
            setup, buyer.id, CartItemCreate(product_id=product.id, quantity=3)
        )
        created = CheckoutService(
            CheckoutRepository(), CartRepository(), ProductRepository()
        ).create(setup, buyer.id, CheckoutCreate(selected_product_ids=[product.id]))
        buyer_id, product_id, address_id = buyer.id, product.id, address.id

    payload = OrderCreate(
        checkout_session_id=created.session_id, address_id=address_id, payment_method="cod"
    )

    with Session(engine) as first, Session(engine) as second:
        first_result = {}

        def submit_first():
            first_result["order"] = _order_service_with(CheckoutRepository()).create_order(
                first, first.get(User, buyer_id), payload
            )

        with pytest.raises(NotFoundError):
            _order_service_with(_InterleavingCheckoutRepository(submit_first)).create_order(
                second, second.get(User, buyer_id), payload
            )

    assert first_result["order"].items[0].quantity == 3
    with Session(engine) as check:
        assert _order_count(check) == 1
        product = check.get(Product, product_id)
        assert (product.stock_quantity, product.sold_count) == (7, 3)
        assert check.exec(select(CheckoutSession)).all() == []

    engine.dispose()
