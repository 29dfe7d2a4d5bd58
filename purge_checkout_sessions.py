# purge_checkout_sessions.py
import logging

from sqlmodel import Session

from storefront.database import engine
from storefront.repositories.cart_repo import CartRepository
from storefront.repositories.checkout_repo import CheckoutRepository
from storefront.repositories.product_repo import ProductRepository
from storefront.services.checkout_service import CheckoutService

logging.basicConfig(level=logging.INFO)


def main():
    print("Purging expired checkout sessions...")

    service = CheckoutService(CheckoutRepository(), CartRepository(), ProductRepository())
    with Session(engine) as session:
        purged = service.purge_expired(session)

    print(f"Done: {purged} expired session(s) removed.")


if __name__ == "__main__":
    main()
