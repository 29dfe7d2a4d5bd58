import uuid
from datetime import datetime, timezone

from sqlmodel import Session, select

from storefront.models.cart import Cart, CartItem


class CartRepository:

    # Cart header
    def get_cart(self, session: Session, user_id: uuid.UUID) -> Cart | None:
        stmt = select(Cart).where(Cart.user_id == user_id)
        return session.exec(stmt).first()

    def get_or_create_cart(self, session: Session, user_id: uuid.UUID) -> Cart:
        cart = self.get_cart(session, user_id)
        if cart is None:
            cart = Cart(user_id=user_id)
            session.add(cart)
            session.commit()
            session.refresh(cart)
        return cart

    def touch(self, session: Session, cart: Cart) -> None:
        cart.updated_at = datetime.now(timezone.utc)
        session.add(cart)

    # Items, in insertion order
    def list_items(self, session: Session, cart_id: uuid.UUID) -> list[CartItem]:
        stmt = (
            select(CartItem)
            .where(CartItem.cart_id == cart_id)
            .order_by(CartItem.added_at, CartItem.id)
        )
        return list(session.exec(stmt).all())

    def find_item(
        self,
        session: Session,
        cart_id: uuid.UUID,
        product_id: uuid.UUID,
        variant_key: tuple[str | None, str | None, str | None],
    ) -> CartItem | None:
        color, size, sku = variant_key
        stmt = select(CartItem).where(
            CartItem.cart_id == cart_id,
            CartItem.product_id == product_id,
            CartItem.variant_color == color,
            CartItem.variant_size == size,
            CartItem.variant_sku == sku,
        )
        return session.exec(stmt).first()

    def list_items_for_product(
        self, session: Session, cart_id: uuid.UUID, product_id: uuid.UUID
    ) -> list[CartItem]:
        stmt = (
            select(CartItem)
            .where(CartItem.cart_id == cart_id, CartItem.product_id == product_id)
            .order_by(CartItem.added_at, CartItem.id)
        )
        return list(session.exec(stmt).all())

    # CRUD
    def create(self, session: Session, cart: Cart, item: CartItem) -> CartItem:
        session.add(item)
        self.touch(session, cart)
        session.commit()
        session.refresh(item)
        return item

    def update(self, session: Session, cart: Cart, item: CartItem) -> CartItem:
        session.add(item)
        self.touch(session, cart)
        session.commit()
        session.refresh(item)
        return item

    def delete_items(self, session: Session, cart: Cart, items: list[CartItem]) -> None:
        for row in items:
            session.delete(row)
        self.touch(session, cart)
        session.commit()

    def clear(self, session: Session, cart: Cart) -> None:
        self.delete_items(session, cart, self.list_items(session, cart.id))
