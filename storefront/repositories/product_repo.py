import uuid
from typing import Iterable

from sqlmodel import Session, select

from storefront.models.catalog import Address, Product


class ProductRepository:
    """
    Read access to the catalog and the address book.

    - Stock columns are never written here; see InventoryService.
    - No FastAPI, no business logic.
    """

    # ----- Products -----

    def get_by_id(self, session: Session, product_id: uuid.UUID) -> Product | None:
        return session.get(Product, product_id)

    def get_many(
        self,
        session: Session,
        product_ids: Iterable[uuid.UUID],
    ) -> dict[uuid.UUID, Product]:
        ids = list(set(product_ids))
        if not ids:
            return {}
        stmt = select(Product).where(Product.id.in_(ids))
        return {p.id: p for p in session.exec(stmt).all()}

    # ----- Address book -----

    def get_address_for_user(
        self,
        session: Session,
        user_id: uuid.UUID,
        address_id: uuid.UUID,
    ) -> Address | None:
        stmt = select(Address).where(
            Address.id == address_id, Address.user_id == user_id
        )
        return session.exec(stmt).first()
