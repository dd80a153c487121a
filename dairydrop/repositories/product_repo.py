# dairydrop/repositories/product_repo.py

import uuid

from sqlmodel import Session

from dairydrop.models.product import Product


class ProductRepository:
    """
    Catalog lookups used by checkout.
    """

    def get_by_id(self, session: Session, product_id: uuid.UUID) -> Product | None:
        return session.get(Product, product_id)
