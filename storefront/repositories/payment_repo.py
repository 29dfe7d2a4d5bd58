import uuid

from sqlalchemy import update
from sqlmodel import Session, select

from storefront.models.payment import Payment


class PaymentRepository:
    """
    Data access layer for payments. No commits here.
    """

    def get_by_payment_id(
        self,
        session: Session,
        payment_id: str,
        user_id: uuid.UUID | None = None,
    ) -> Payment | None:
        stmt = select(Payment).where(Payment.payment_id == payment_id)
        if user_id is not None:
            stmt = stmt.where(Payment.user_id == user_id)
        return session.exec(stmt).first()

    def get_by_order_id(self, session: Session, order_id: uuid.UUID) -> Payment | None:
        stmt = select(Payment).where(Payment.order_id == order_id)
        return session.exec(stmt).first()

    def create(self, session: Session, payment: Payment) -> Payment:
        session.add(payment)
        session.flush()
        return payment

    def update(self, session: Session, payment: Payment) -> Payment:
        session.add(payment)
        session.flush()
        return payment

    def transition_status(
        self,
        session: Session,
        payment_pk: uuid.UUID,
        from_statuses: set[str],
        values: dict,
    ) -> bool:
        """
        Conditional status write, see OrderRepository.transition_status.
        """
        stmt = (
            update(Payment)
            .where(Payment.id == payment_pk, Payment.status.in_(from_statuses))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = session.exec(stmt)  # type: ignore[call-overload]
        return result.rowcount == 1

    def delete(self, session: Session, payment: Payment) -> None:
        session.delete(payment)
        session.flush()
