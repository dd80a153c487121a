# dairydrop/models/order.py

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DeliveryStatus(str, Enum):
    AWAITING_PROCESSING = "awaiting_processing"
    PROCESSING = "processing"
    PACKING = "packing"
    PACKED = "packed"
    HANDED_TO_COURIER = "handed_to_courier"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class PaymentMethod(str, Enum):
    COD = "cod"


class OrderRefundStatus(str, Enum):
    NONE = "none"
    PARTIAL = "partial"
    FULL = "full"


class Order(SQLModel, table=True):
    """
    One customer purchase.

    Two independent state machines live on this row:
      - status: the commercial lifecycle (pending -> ... -> completed)
      - delivery_status: physical fulfilment, unset until the order is
        confirmed

    refund_status is derived from the order's refunds and recomputed on
    every refund status change.

    version guards every status write: updates are applied with
    `WHERE version = <seen version>` so concurrent admin actions fail
    with 409 instead of overwriting each other.
    """

    __tablename__ = "orders"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    order_number: int = Field(
        unique=True,
        index=True,
        description="Sequential number, displayed as #000042",
    )

    user_id: uuid.UUID = Field(
        foreign_key="users.id",
        index=True,
    )

    status: OrderStatus = Field(default=OrderStatus.PENDING, index=True)

    delivery_status: DeliveryStatus | None = Field(default=None, index=True)

    refund_status: OrderRefundStatus = Field(default=OrderRefundStatus.NONE)

    # Payment (cash on delivery)
    payment_method: PaymentMethod = Field(default=PaymentMethod.COD)
    payment_status: PaymentStatus = Field(default=PaymentStatus.PENDING)
    paid_at: datetime | None = None
    amount_paid: Decimal | None = Field(
        default=None,
        max_digits=10,
        decimal_places=2,
    )
    collected_by: str | None = Field(default=None, max_length=100)

    # Totals
    subtotal: Decimal = Field(max_digits=10, decimal_places=2)
    delivery_charge: Decimal = Field(
        default=Decimal("0.00"),
        max_digits=10,
        decimal_places=2,
    )
    tax_amount: Decimal = Field(
        default=Decimal("0.00"),
        max_digits=10,
        decimal_places=2,
    )
    total_amount: Decimal = Field(max_digits=10, decimal_places=2)

    delivery_address: dict[str, Any] = Field(
        sa_column=Column(JSON, nullable=False),
        description="Address snapshot taken at checkout",
    )

    customer_note: str | None = None
    admin_note: str | None = None

    delivered_at: datetime | None = None

    # customer | admin
    cancelled_by: str | None = Field(default=None, max_length=50)
    cancellation_reason: str | None = None

    version: int = Field(default=1)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        index=True,
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class OrderLineItem(SQLModel, table=True):
    """
    One product/quantity entry within an order.

    product_snapshot freezes name, sku, price, discount, brand, weight and
    category at checkout time; rows are never updated afterwards.
    """

    __tablename__ = "order_line_items"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    order_id: uuid.UUID = Field(
        foreign_key="orders.id",
        index=True,
    )

    product_id: uuid.UUID = Field(
        foreign_key="products.id",
        index=True,
    )

    product_snapshot: dict[str, Any] = Field(
        sa_column=Column(JSON, nullable=False),
    )

    # Discounted price per unit at time of order
    unit_price: Decimal = Field(max_digits=10, decimal_places=2)

    quantity: int = Field(gt=0)

    total_price: Decimal = Field(max_digits=10, decimal_places=2)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class OrderDeliveryHistory(SQLModel, table=True):
    """
    Append-only audit trail of delivery status changes.
    """

    __tablename__ = "order_delivery_history"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    order_id: uuid.UUID = Field(
        foreign_key="orders.id",
        index=True,
    )

    status: DeliveryStatus = Field(index=True)

    delivery_person_name: str | None = Field(default=None, max_length=100)
    delivery_person_phone: str | None = Field(default=None, max_length=20)
    location: str | None = Field(default=None, max_length=100)
    notes: str | None = None

    # Id of the admin who made the change
    updated_by: str = Field(max_length=100)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        index=True,
    )
