import logging
import uuid

from sqlmodel import Session

from storefront.core.errors import InsufficientStockError, InvalidInputError, NotFoundError
from storefront.models.cart import Cart, CartItem
from storefront.models.catalog import Product
from storefront.repositories.cart_repo import CartRepository
from storefront.repositories.product_repo import ProductRepository
from storefront.schemas.cart import (
    CartItemCreate,
    CartItemRead,
    CartItemUpdate,
    CartProductRead,
    CartRead,
    ProductVariant,
    variant_from_columns,
)

logger = logging.getLogger(__name__)

NO_VARIANT: tuple[None, None, None] = (None, None, None)


def product_summary(product: Product) -> CartProductRead:
    return CartProductRead(
        id=product.id,
        name=product.name,
        final_price=product.final_price,
        original_price=product.price,
        discount_percent=product.discount_percent,
        image_url=product.image_url,
        stock_quantity=product.stock_quantity,
        is_in_stock=product.is_in_stock,
    )


class CartService:
    """
    Business logic for cart operations.

    Responsibilities:
      - one cart per user, created lazily on first add
      - merge repeated adds of the same (product, variant) into one line
      - soft stock check at add/update time (nothing is reserved here)
      - self-healing read: lines whose product vanished are dropped
    """

    def __init__(self, cart_repo: CartRepository, product_repo: ProductRepository):
        self.cart_repo = cart_repo
        self.product_repo = product_repo

    # ---- internal helpers ----

    def _get_valid_product(self, session: Session, product_id: uuid.UUID) -> Product:
        product = self.product_repo.get_by_id(session, product_id)
        if not product:
            raise NotFoundError("Product", product_id)
        if not product.is_active:
            raise InvalidInputError("Product is inactive", product_id=str(product_id))
        return product

    @staticmethod
    def _soft_stock_check(product: Product, quantity: int) -> None:
        if product.stock_quantity < quantity:
            raise InsufficientStockError(
                product.id, quantity, product.stock_quantity, name=product.name
            )

    def _require_cart(self, session: Session, user_id: uuid.UUID) -> Cart:
        cart = self.cart_repo.get_cart(session, user_id)
        if cart is None:
            raise NotFoundError("Cart")
        return cart

    def _matching_items(
        self,
        session: Session,
        cart: Cart,
        product_id: uuid.UUID,
        variant: ProductVariant | None,
    ) -> list[CartItem]:
        if variant is not None:
            item = self.cart_repo.find_item(session, cart.id, product_id, variant.key())
            return [item] if item else []
        return self.cart_repo.list_items_for_product(session, cart.id, product_id)

    # ---- public operations ----

    def read(self, session: Session, user_id: uuid.UUID) -> CartRead:
        """
        Return the cart with live product data joined in.

        Lines whose product no longer exists are removed from the cart.
        """
        cart = self.cart_repo.get_cart(session, user_id)
        if cart is None:
            return CartRead(items=[], item_count=0, total_quantity=0, subtotal=0.0)

        items = self.cart_repo.list_items(session, cart.id)
        products = self.product_repo.get_many(session, (it.product_id for it in items))

        item_reads: list[CartItemRead] = []
        dead: list[CartItem] = []
        total_qty = 0
        subtotal = 0.0

        for it in items:
            product = products.get(it.product_id)
            if product is None:
                dead.append(it)
                continue

            item_total = product.final_price * it.quantity
            total_qty += it.quantity
            subtotal += item_total
            item_reads.append(
                CartItemRead(
                    id=it.id,
                    product_id=it.product_id,
                    quantity=it.quantity,
                    variant=variant_from_columns(
                        it.variant_color, it.variant_size, it.variant_sku
                    ),
                    added_at=it.added_at,
                    item_total=item_total,
                    product=product_summary(product),
                )
            )

        if dead:
            logger.info(
                "Dropping %d cart lines with missing products for user %s",
                len(dead),
                user_id,
            )
            self.cart_repo.delete_items(session, cart, dead)

        return CartRead(
            items=item_reads,
            item_count=len(item_reads),
            total_quantity=total_qty,
            subtotal=subtotal,
        )

    def add_item(
        self,
        session: Session,
        user_id: uuid.UUID,
        payload: CartItemCreate,
    ) -> CartRead:
        """
        Add a product to the user's cart.

        Rules:
          - quantity must be > 0
          - product must exist and be active
          - an existing (product, variant) line has its quantity increased
          - quantity (after merge) is soft-checked against current stock
        """
        if payload.quantity <= 0:
            raise InvalidInputError("Quantity must be greater than 0")

        product = self._get_valid_product(session, payload.product_id)
        self._soft_stock_check(product, payload.quantity)

        variant = payload.variant if payload.variant and not payload.variant.is_empty() else None
        variant_key = variant.key() if variant else NO_VARIANT

        cart = self.cart_repo.get_or_create_cart(session, user_id)
        existing = self.cart_repo.find_item(session, cart.id, product.id, variant_key)

        if existing:
            new_qty = existing.quantity + payload.quantity
            self._soft_stock_check(product, new_qty)
            existing.quantity = new_qty
            self.cart_repo.update(session, cart, existing)
        else:
            color, size, sku = variant_key
            item = CartItem(
                cart_id=cart.id,
                product_id=product.id,
                quantity=payload.quantity,
                variant_color=color,
                variant_size=size,
                variant_sku=sku,
            )
            self.cart_repo.create(session, cart, item)

        return self.read(session, user_id)

    def update_quantity(
        self,
        session: Session,
        user_id: uuid.UUID,
        product_id: uuid.UUID,
        payload: CartItemUpdate,
    ) -> CartRead:
        """
        Replace the quantity of a cart line; 0 removes it.

        Without a variant the first line for the product is updated (or all
        of its lines removed when quantity is 0).
        """
        if payload.quantity < 0:
            raise InvalidInputError("Quantity cannot be negative")

        cart = self._require_cart(session, user_id)
        items = self._matching_items(session, cart, product_id, payload.variant)

        if payload.quantity == 0:
            if items:
                self.cart_repo.delete_items(session, cart, items)
            return self.read(session, user_id)

        product = self._get_valid_product(session, product_id)
        self._soft_stock_check(product, payload.quantity)

        if not items:
            raise NotFoundError("Cart item", product_id)

        item = items[0]
        item.quantity = payload.quantity
        self.cart_repo.update(session, cart, item)
        return self.read(session, user_id)

    def remove_item(
        self,
        session: Session,
        user_id: uuid.UUID,
        product_id: uuid.UUID,
        variant: ProductVariant | None = None,
    ) -> CartRead:
        """
        Remove a product from the cart and return the updated cart.
        """
        cart = self._require_cart(session, user_id)
        items = self._matching_items(session, cart, product_id, variant)
        if not items:
            raise NotFoundError("Cart item", product_id)

        self.cart_repo.delete_items(session, cart, items)
        return self.read(session, user_id)

    def clear(self, session: Session, user_id: uuid.UUID) -> CartRead:
        """
        Clear all items from the cart and return an empty cart.
        """
        cart = self._require_cart(session, user_id)
        self.cart_repo.clear(session, cart)
        return CartRead(items=[], item_count=0, total_quantity=0, subtotal=0.0)

    def check(
        self,
        session: Session,
        user_id: uuid.UUID,
        product_ids: list[uuid.UUID],
    ) -> list[uuid.UUID]:
        """
        Return which of `product_ids` are currently in the user's cart.
        """
        cart = self.cart_repo.get_cart(session, user_id)
        if cart is None:
            return []
        in_cart = {it.product_id for it in self.cart_repo.list_items(session, cart.id)}
        return [pid for pid in product_ids if pid in in_cart]
