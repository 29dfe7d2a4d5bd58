import uuid

from sqlalchemy import delete, func, update
from sqlmodel import Session, select

from storefront.models.order import Order, OrderItem


class OrderRepository:
    """
    Data access layer for orders and order_items.

    NOTE:
      - No commits here; order creation is a multi-step transaction.
        The service is responsible for calling session.commit().
    """

    # ---- Orders ----

    def _filtered(
        self,
        stmt,
        user_id: uuid.UUID | None,
        status: str | None,
        order_number: str | None,
    ):
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id)
        if status:
            stmt = stmt.where(Order.order_status == status)
        if order_number:
            stmt = stmt.where(Order.order_number.ilike(f"%{order_number}%"))
        return stmt

    def list_orders(
        self,
        session: Session,
        user_id: uuid.UUID | None = None,
        status: str | None = None,
        order_number: str | None = None,
        skip: int = 0,
        limit: int = 50,
    ) -> list[Order]:
        stmt = self._filtered(select(Order), user_id, status, order_number)
        stmt = stmt.order_by(Order.created_at.desc()).offset(skip).limit(limit)
        return list(session.exec(stmt).all())

    def count_orders(
        self,
        session: Session,
        user_id: uuid.UUID | None = None,
        status: str | None = None,
        order_number: str | None = None,
    ) -> int:
        stmt = self._filtered(
            select(func.count()).select_from(Order), user_id, status, order_number
        )
        return session.exec(stmt).one()

    def get_by_id(self, session: Session, order_id: uuid.UUID) -> Order | None:
        return session.get(Order, order_id)

    def get_for_user(
        self, session: Session, user_id: uuid.UUID, order_id: uuid.UUID
    ) -> Order | None:
        order = session.get(Order, order_id)
        if order is None or order.user_id != user_id:
            return None
        return order

    def get_by_number(
        self,
        session: Session,
        order_number: str,
        user_id: uuid.UUID | None = None,
    ) -> Order | None:
        stmt = select(Order).where(Order.order_number == order_number)
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id)
        return session.exec(stmt).first()

    def order_number_exists(self, session: Session, order_number: str) -> bool:
        stmt = select(Order.id).where(Order.order_number == order_number)
        return session.exec(stmt).first() is not None

    def create_order(self, session: Session, order: Order) -> Order:
        """
        Insert an Order without committing, but ensure id is populated.
        """
        session.add(order)
        session.flush()  # Assign PK
        return order

    def update_order(self, session: Session, order: Order) -> Order:
        session.add(order)
        session.flush()
        return order

    def transition_status(
        self,
        session: Session,
        order_id: uuid.UUID,
        from_statuses: set[str],
        values: dict,
        payment_status: str | None = None,
    ) -> bool:
        """
        Conditional status write: only applies while the order is still in
        one of `from_statuses` (and, if given, still has `payment_status`).
        Returns False when another writer got there first.
        """
        conditions = [Order.id == order_id, Order.order_status.in_(from_statuses)]
        if payment_status is not None:
            conditions.append(Order.payment_status == payment_status)
        stmt = (
            update(Order)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = session.exec(stmt)  # type: ignore[call-overload]
        return result.rowcount == 1

    def delete_order(self, session: Session, order: Order) -> None:
        session.exec(delete(OrderItem).where(OrderItem.order_id == order.id))  # type: ignore[call-overload]
        session.delete(order)
        session.flush()

    # ---- Order items ----

    def list_items_for_order(
        self,
        session: Session,
        order_id: uuid.UUID,
    ) -> list[OrderItem]:
        stmt = (
            select(OrderItem)
            .where(OrderItem.order_id == order_id)
            .order_by(OrderItem.id)
        )
        return list(session.exec(stmt).all())

    def create_items(
        self,
        session: Session,
        items: list[OrderItem],
    ) -> list[OrderItem]:
        session.add_all(items)
        session.flush()
        return items
