import os

# Settings are read at import time; configure before importing storefront.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTH_JWT_SECRET", "test-secret")
os.environ.setdefault("PAYMENT_GATEWAY", "mock")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "mock_secret")

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from storefront.core.config import get_settings
from storefront.core.gateway import MockGateway, reset_gateway, set_gateway, sign_payment
from storefront.database import get_session
from storefront.main import app
from storefront.models.catalog import Address, Product
from storefront.models.user import User
from storefront.repositories.cart_repo import CartRepository
from storefront.repositories.checkout_repo import CheckoutRepository
from storefront.repositories.order_repo import OrderRepository
from storefront.repositories.payment_repo import PaymentRepository
from storefront.repositories.product_repo import ProductRepository
from storefront.schemas.cart import CartItemCreate
from storefront.schemas.checkout import CheckoutCreate
from storefront.schemas.order import OrderCreate
from storefront.services.cart_service import CartService
from storefront.services.checkout_service import CheckoutService
from storefront.services.inventory_service import InventoryService
from storefront.services.order_service import OrderService
from storefront.services.payment_service import PaymentService


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(autouse=True)
def gateway():
    gw = MockGateway(key_id="mock_key", key_secret=get_settings().RAZORPAY_KEY_SECRET)
    set_gateway(gw)
    yield gw
    reset_gateway()


@pytest.fixture(autouse=True)
def no_smtp(monkeypatch):
    for name in ("SMTP_HOST", "SMTP_USERNAME", "SMTP_PASSWORD"):
        monkeypatch.delenv(name, raising=False)


# ---- rows ----


def _make_user(session: Session, email: str, role: str = "user") -> User:
    user = User(id=uuid.uuid4(), email=email, name=email.split("@")[0], role=role)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def user(session):
    return _make_user(session, "asha@example.com")


@pytest.fixture
def other_user(session):
    return _make_user(session, "ravi@example.com")


@pytest.fixture
def admin(session):
    return _make_user(session, "admin@example.com", role="admin")


@pytest.fixture
def make_product(session):
    def _make(
        name: str = "Teak Armchair",
        price: float = 1000,
        final_price: float | None = None,
        stock: int = 10,
        is_active: bool = True,
    ) -> Product:
        final = price if final_price is None else final_price
        product = Product(
            name=name,
            price=price,
            final_price=final,
            discount_percent=round((price - final) / price * 100) if price else 0,
            image_url=f"https://cdn.example.com/{name.lower().replace(' ', '-')}.jpg",
            is_active=is_active,
            stock_quantity=stock,
        )
        session.add(product)
        session.commit()
        session.refresh(product)
        return product

    return _make


@pytest.fixture
def make_address(session):
    def _make(owner: User) -> Address:
        address = Address(
            user_id=owner.id,
            full_name="Asha Rao",
            phone="9876543210",
            address_line1="12 MG Road",
            city="Bengaluru",
            state="Karnataka",
            postal_code="560001",
        )
        session.add(address)
        session.commit()
        session.refresh(address)
        return address

    return _make


@pytest.fixture
def address(user, make_address):
    return make_address(user)


# ---- services ----


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def cart_service():
    return CartService(CartRepository(), ProductRepository())


@pytest.fixture
def checkout_service():
    return CheckoutService(CheckoutRepository(), CartRepository(), ProductRepository())


@pytest.fixture
def inventory():
    return InventoryService()


@pytest.fixture
def order_service(checkout_service, inventory, notifications):
    def record(order, items, email):
        notifications.append((order.order_number, len(items), email))

    return OrderService(
        OrderRepository(),
        CheckoutRepository(),
        ProductRepository(),
        PaymentRepository(),
        inventory,
        checkout_service,
        notifier=record,
    )


@pytest.fixture
def payment_service():
    return PaymentService(PaymentRepository(), OrderRepository())


@pytest.fixture
def place_order(session, cart_service, checkout_service, order_service, address):
    """
    Cart -> checkout session -> order for `user` in one call.

    `lines` is a list of (product, quantity); `insured` lists products with
    insurance enabled.
    """

    def _place(owner, lines, payment_method="cod", insured=(), notes=None):
        # Carts outlive orders; start each order from a fresh cart.
        if cart_service.read(session, owner.id).items:
            cart_service.clear(session, owner.id)
        for product, quantity in lines:
            cart_service.add_item(
                session, owner.id, CartItemCreate(product_id=product.id, quantity=quantity)
            )
        created = checkout_service.create(
            session,
            owner.id,
            CheckoutCreate(
                selected_product_ids=[p.id for p, _ in lines],
                insurance_enabled=[p.id for p in insured],
            ),
        )
        return order_service.create_order(
            session,
            owner,
            OrderCreate(
                checkout_session_id=created.session_id,
                address_id=address.id,
                payment_method=payment_method,
                notes=notes,
            ),
        )

    return _place


@pytest.fixture
def sign():
    def _sign(gateway_order_id: str, gateway_payment_id: str) -> str:
        return sign_payment(get_settings().RAZORPAY_KEY_SECRET, gateway_order_id, gateway_payment_id)

    return _sign


# ---- HTTP ----


@pytest.fixture
def client(session):
    def _get_session_override():
        yield session

    app.dependency_overrides[get_session] = _get_session_override
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(owner: User) -> dict[str, str]:
        settings = get_settings()
        token = jwt.encode(
            {
                "sub": str(owner.id),
                "email": owner.email,
                "exp": datetime.now(timezone.utc) + timedelta(hours=1),
            },
            settings.AUTH_JWT_SECRET,
            algorithm=settings.AUTH_JWT_ALG,
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers
