import uuid
from datetime import datetime

from sqlalchemy import delete
from sqlmodel import Session, select

from storefront.models.checkout import CheckoutItem, CheckoutSession


class CheckoutRepository:
    """
    Data access layer for checkout_sessions and checkout_items.

    NOTE:
      - No commits here; the service owns the transaction.
      - Expiry is always evaluated in SQL against the caller's `now`.
    """

    def get_active(
        self,
        session: Session,
        user_id: uuid.UUID,
        now: datetime,
        session_id: str | None = None,
    ) -> CheckoutSession | None:
        stmt = select(CheckoutSession).where(
            CheckoutSession.user_id == user_id,
            CheckoutSession.expires_at > now,
        )
        if session_id is not None:
            stmt = stmt.where(CheckoutSession.session_id == session_id)
        stmt = stmt.order_by(CheckoutSession.created_at.desc())
        return session.exec(stmt).first()

    def list_items(self, session: Session, checkout_id: uuid.UUID) -> list[CheckoutItem]:
        stmt = select(CheckoutItem).where(CheckoutItem.checkout_id == checkout_id)
        return list(session.exec(stmt).all())

    def create(
        self,
        session: Session,
        checkout: CheckoutSession,
        items: list[CheckoutItem],
    ) -> CheckoutSession:
        session.add(checkout)
        session.flush()  # Assign PK before items reference it
        for item in items:
            item.checkout_id = checkout.id
        session.add_all(items)
        session.flush()
        return checkout

    def delete(self, session: Session, checkout: CheckoutSession) -> None:
        session.exec(delete(CheckoutItem).where(CheckoutItem.checkout_id == checkout.id))
        session.delete(checkout)
        session.flush()

    def claim(self, session: Session, checkout: CheckoutSession) -> bool:
        """
        Delete the session and its items with a conditional DELETE.

        Returns False when the row was already gone (another request
        consumed it); only one caller can ever see True for a session.
        """
        session.exec(  # type: ignore[call-overload]
            delete(CheckoutItem)
            .where(CheckoutItem.checkout_id == checkout.id)
            .execution_options(synchronize_session=False)
        )
        result = session.exec(  # type: ignore[call-overload]
            delete(CheckoutSession)
            .where(CheckoutSession.id == checkout.id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def delete_items(self, session: Session, items: list[CheckoutItem]) -> None:
        for item in items:
            session.delete(item)
        session.flush()

    def delete_for_user(
        self,
        session: Session,
        user_id: uuid.UUID,
        session_id: str | None = None,
    ) -> int:
        stmt = select(CheckoutSession).where(CheckoutSession.user_id == user_id)
        if session_id is not None:
            stmt = stmt.where(CheckoutSession.session_id == session_id)
        rows = session.exec(stmt).all()
        for row in rows:
            self.delete(session, row)
        return len(rows)

    def delete_expired(
        self,
        session: Session,
        now: datetime,
        user_id: uuid.UUID | None = None,
    ) -> int:
        stmt = select(CheckoutSession).where(CheckoutSession.expires_at <= now)
        if user_id is not None:
            stmt = stmt.where(CheckoutSession.user_id == user_id)
        rows = session.exec(stmt).all()
        for row in rows:
            self.delete(session, row)
        return len(rows)
