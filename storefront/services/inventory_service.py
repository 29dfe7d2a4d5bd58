import logging
import uuid

from sqlalchemy import update
from sqlmodel import Session

from storefront.core.errors import InsufficientStockError, InvalidInputError, NotFoundError
from storefront.models.catalog import Product

logger = logging.getLogger(__name__)


class InventoryService:
    """
    The only writer of Product.stock_quantity / sold_count outside catalog
    management.

    Both operations are a single conditional UPDATE and never commit: they
    join the caller's transaction, so a failed order creation rolls them
    back together with everything else.
    """

    def reserve(self, session: Session, product_id: uuid.UUID, quantity: int) -> None:
        """
        Decrement stock and increment sold count, only if stock >= quantity
        at the moment of the write.

        Raises:
            InsufficientStockError: stock could not cover `quantity`.
            NotFoundError: the product does not exist.
        """
        self._check_quantity(quantity)

        stmt = (
            update(Product)
            .where(Product.id == product_id, Product.stock_quantity >= quantity)
            .values(
                stock_quantity=Product.stock_quantity - quantity,
                sold_count=Product.sold_count + quantity,
            )
            .execution_options(synchronize_session=False)
        )
        result = session.exec(stmt)  # type: ignore[call-overload]
        if result.rowcount == 1:
            return

        product = session.get(Product, product_id)
        if product is None:
            raise NotFoundError("Product", product_id)
        session.refresh(product)
        logger.info(
            "Reservation refused for product %s: requested %s, available %s",
            product_id,
            quantity,
            product.stock_quantity,
        )
        raise InsufficientStockError(
            product_id, quantity, product.stock_quantity, name=product.name
        )

    def release(self, session: Session, product_id: uuid.UUID, quantity: int) -> None:
        """
        Return `quantity` units to stock and take them off the sold count.

        A missing product is logged and skipped so cancellation of an order
        whose product was later removed from the catalog still succeeds.
        """
        self._check_quantity(quantity)

        stmt = (
            update(Product)
            .where(Product.id == product_id)
            .values(
                stock_quantity=Product.stock_quantity + quantity,
                sold_count=Product.sold_count - quantity,
            )
            .execution_options(synchronize_session=False)
        )
        result = session.exec(stmt)  # type: ignore[call-overload]
        if result.rowcount == 0:
            logger.warning("Release skipped, product %s no longer exists", product_id)

    @staticmethod
    def _check_quantity(quantity: int) -> None:
        if quantity <= 0:
            raise InvalidInputError("Quantity must be greater than 0")
