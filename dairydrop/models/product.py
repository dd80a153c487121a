# dairydrop/models/product.py

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import SQLModel, Field


class Product(SQLModel, table=True):
    """
    Catalog entry as seen by checkout.

    Checkout copies these fields into each order line item's
    product_snapshot, so later catalog edits never change past orders.
    """

    __tablename__ = "products"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    name: str = Field(max_length=150, index=True)

    sku: str = Field(max_length=64, unique=True, index=True)

    brand: str = Field(max_length=100)

    price: Decimal = Field(
        gt=0,
        max_digits=10,
        decimal_places=2,
        description="List price before discount",
    )

    # percentage | fixed | None
    discount_type: str | None = Field(default=None, max_length=20)
    discount_value: Decimal | None = Field(
        default=None,
        max_digits=10,
        decimal_places=2,
    )

    weight_value: Decimal = Field(max_digits=10, decimal_places=3)

    # g | kg | ml | L | piece
    weight_unit: str = Field(max_length=10)

    category: str = Field(max_length=100, index=True)

    stock_on_hand: int = Field(
        default=0,
        ge=0,
        description="How many units currently in stock",
    )

    is_active: bool = Field(default=True, index=True)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
