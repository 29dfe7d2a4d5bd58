import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from storefront.core.config import get_settings
from storefront.core.errors import (
    ConcurrencyConflictError,
    InvalidInputError,
    NoValidItemsError,
    NotFoundError,
    SelectionNotInCartError,
)
from storefront.models.catalog import Product
from storefront.models.checkout import CheckoutItem, CheckoutSession
from storefront.repositories.cart_repo import CartRepository
from storefront.repositories.checkout_repo import CheckoutRepository
from storefront.repositories.product_repo import ProductRepository
from storefront.schemas.cart import variant_from_columns
from storefront.schemas.checkout import (
    CheckoutCreate,
    CheckoutCreated,
    CheckoutItemRead,
    CheckoutRead,
    CheckoutUpdate,
)
from storefront.services.cart_service import product_summary
from storefront.services.pricing import PricedLine, compute_breakdown, line_insurance

logger = logging.getLogger(__name__)

# Concurrent creates for one user collide on the unique user_id; retry so
# the last writer wins.
CREATE_MAX_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_session_id() -> str:
    """16-character URL-safe random handle."""
    return secrets.token_urlsafe(12)


def priced_lines(
    items: Iterable[CheckoutItem],
    products: dict[uuid.UUID, Product],
) -> tuple[list[PricedLine], set[uuid.UUID]]:
    """
    Turn checkout items into pricing input using current catalog prices.

    Used by both the session read and order creation.
    """
    lines: list[PricedLine] = []
    insured: set[uuid.UUID] = set()
    for item in items:
        product = products[item.product_id]
        lines.append(
            PricedLine(
                product_id=item.product_id,
                original_price=product.price,
                final_price=product.final_price,
                quantity=item.quantity,
            )
        )
        if item.has_insurance:
            insured.add(item.product_id)
    return lines, insured


class CheckoutService:
    """
    Business logic for checkout sessions.

    Responsibilities:
      - snapshot a subset of the cart (quantities, variants, insurance flags)
      - keep at most one session per user
      - re-validate availability and re-price on every read
      - lazy expiry (expired sessions behave as missing and are purged)
    """

    def __init__(
        self,
        checkout_repo: CheckoutRepository,
        cart_repo: CartRepository,
        product_repo: ProductRepository,
    ):
        self.checkout_repo = checkout_repo
        self.cart_repo = cart_repo
        self.product_repo = product_repo

    # ---- public operations ----

    def create(
        self,
        session: Session,
        user_id: uuid.UUID,
        payload: CheckoutCreate,
    ) -> CheckoutCreated:
        """
        Start a checkout session from the selected cart products.

        Any previous session of the user is deleted in the same transaction.
        """
        selected = list(dict.fromkeys(payload.selected_product_ids))
        if not selected:
            raise InvalidInputError("Selected items are required")

        cart = self.cart_repo.get_cart(session, user_id)
        cart_items = self.cart_repo.list_items(session, cart.id) if cart else []
        if not cart_items:
            raise InvalidInputError("Cart is empty")

        in_cart = {it.product_id for it in cart_items}
        missing = [str(pid) for pid in selected if pid not in in_cart]
        if missing:
            raise SelectionNotInCartError(missing)

        insured = set(payload.insurance_enabled)
        settings = get_settings()

        for attempt in range(1, CREATE_MAX_ATTEMPTS + 1):
            now = utcnow()
            checkout = CheckoutSession(
                session_id=generate_session_id(),
                user_id=user_id,
                expires_at=now + timedelta(minutes=settings.CHECKOUT_SESSION_TTL_MINUTES),
                created_at=now,
            )
            items = [
                CheckoutItem(
                    checkout_id=checkout.id,
                    product_id=ci.product_id,
                    quantity=ci.quantity,
                    has_insurance=ci.product_id in insured,
                    variant_color=ci.variant_color,
                    variant_size=ci.variant_size,
                    variant_sku=ci.variant_sku,
                )
                for pid in selected
                for ci in cart_items
                if ci.product_id == pid
            ]

            try:
                self.checkout_repo.delete_for_user(session, user_id)
                self.checkout_repo.create(session, checkout, items)
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.warning(
                    "Checkout session create for user %s collided (attempt %d)",
                    user_id,
                    attempt,
                )
                continue

            logger.info(
                "Checkout session created: session=%s user=%s items=%d",
                checkout.session_id,
                user_id,
                len(items),
            )
            return CheckoutCreated(
                session_id=checkout.session_id,
                expires_at=checkout.expires_at,
            )

        raise ConcurrencyConflictError("Could not create checkout session, please retry")

    def get_active_session(
        self,
        session: Session,
        user_id: uuid.UUID,
        session_id: str | None = None,
    ) -> CheckoutSession:
        """
        Fetch a non-expired session (by id, or the user's current one).

        Expired sessions of the user are purged when nothing is found.
        """
        checkout = self.checkout_repo.get_active(session, user_id, utcnow(), session_id)
        if checkout is None:
            purged = self.checkout_repo.delete_expired(session, utcnow(), user_id)
            if purged:
                session.commit()
            raise NotFoundError("Checkout session", session_id)
        return checkout

    def load_valid_items(
        self,
        session: Session,
        checkout: CheckoutSession,
    ) -> tuple[list[CheckoutItem], dict[uuid.UUID, Product]]:
        """
        Drop items whose product is missing or out of stock.

        Deletes the whole session and raises NoValidItemsError when nothing
        is left. Changes are flushed, not committed.
        """
        items = self.checkout_repo.list_items(session, checkout.id)
        products = self.product_repo.get_many(session, (it.product_id for it in items))

        valid: list[CheckoutItem] = []
        invalid: list[CheckoutItem] = []
        for item in items:
            product = products.get(item.product_id)
            if product is not None and product.is_in_stock:
                valid.append(item)
            else:
                invalid.append(item)

        if not valid:
            self.checkout_repo.delete(session, checkout)
            raise NoValidItemsError(checkout.session_id)

        if invalid:
            logger.info(
                "Checkout session %s: dropped %d unavailable items",
                checkout.session_id,
                len(invalid),
            )
            self.checkout_repo.delete_items(session, invalid)

        return valid, products

    def read(
        self,
        session: Session,
        user_id: uuid.UUID,
        session_id: str | None = None,
    ) -> CheckoutRead:
        """
        Return the session with availability re-validated and the price
        breakdown recomputed.
        """
        checkout = self.get_active_session(session, user_id, session_id)
        try:
            items, products = self.load_valid_items(session, checkout)
        except NoValidItemsError:
            session.commit()
            raise
        session.commit()
        session.refresh(checkout)

        lines, insured = priced_lines(items, products)
        breakdown = compute_breakdown(lines, insured)

        item_reads = [
            CheckoutItemRead(
                product_id=item.product_id,
                quantity=item.quantity,
                has_insurance=item.has_insurance,
                variant=variant_from_columns(
                    item.variant_color, item.variant_size, item.variant_sku
                ),
                item_total=line.final_price * line.quantity,
                insurance_cost=float(line_insurance(line)) if item.has_insurance else 0.0,
                product=product_summary(products[item.product_id]),
            )
            for item, line in zip(items, lines)
        ]

        return CheckoutRead(
            session_id=checkout.session_id,
            items=item_reads,
            selected_product_ids=list(dict.fromkeys(it.product_id for it in items)),
            insurance_enabled=list(
                dict.fromkeys(it.product_id for it in items if it.has_insurance)
            ),
            selected_address_id=checkout.selected_address_id,
            selected_payment_method=checkout.selected_payment_method,
            selected_quantity=sum(it.quantity for it in items),
            price_breakdown=breakdown,
            expires_at=checkout.expires_at,
            created_at=checkout.created_at,
        )

    def update(
        self,
        session: Session,
        user_id: uuid.UUID,
        session_id: str,
        payload: CheckoutUpdate,
    ) -> CheckoutRead:
        """
        Partial update of address / payment method selection.
        """
        checkout = self.get_active_session(session, user_id, session_id)

        if payload.selected_address_id is not None:
            address = self.product_repo.get_address_for_user(
                session, user_id, payload.selected_address_id
            )
            if address is None:
                raise NotFoundError("Address", payload.selected_address_id)
            checkout.selected_address_id = payload.selected_address_id

        if payload.selected_payment_method is not None:
            checkout.selected_payment_method = payload.selected_payment_method

        session.add(checkout)
        session.commit()
        return self.read(session, user_id, session_id)

    def delete(
        self,
        session: Session,
        user_id: uuid.UUID,
        session_id: str | None = None,
    ) -> int:
        """
        Delete one session, or every session of the user when no id is given.
        """
        deleted = self.checkout_repo.delete_for_user(session, user_id, session_id)
        session.commit()
        return deleted

    def purge_expired(self, session: Session) -> int:
        """
        Sweep expired sessions of all users.
        """
        purged = self.checkout_repo.delete_expired(session, utcnow())
        session.commit()
        if purged:
            logger.info("Purged %d expired checkout sessions", purged)
        return purged
