# dairydrop/models/refund.py

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


class RefundStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundReason(str, Enum):
    SPOILED = "spoiled"
    DAMAGED = "damaged"
    WRONG_ITEM = "wrong_item"
    NOT_DELIVERED = "not_delivered"
    MISSING_ITEMS = "missing_items"


class RefundMethod(str, Enum):
    ORIGINAL_METHOD = "original_method"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_WALLET = "mobile_wallet"
    DIGITAL_WALLET = "digital_wallet"
    STORE_CREDIT = "store_credit"
    CASH = "cash"


class RefundPaymentStatus(str, Enum):
    AWAITING = "awaiting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Refund(SQLModel, table=True):
    """
    A customer's request to reverse part or all of a completed order.

    refunded_items:
      - None => full-order refund
      - list of {order_line_item_id, quantity, unit_price, total_price}
        => partial refund; prices are snapshots taken from the line items

    Prices inside refunded_items are stored as strings so the JSON column
    keeps exact decimal values.
    """

    __tablename__ = "refunds"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    order_id: uuid.UUID = Field(foreign_key="orders.id", index=True)

    customer_id: uuid.UUID = Field(foreign_key="users.id", index=True)

    processed_by_id: uuid.UUID | None = Field(
        default=None,
        foreign_key="users.id",
    )

    status: RefundStatus = Field(default=RefundStatus.PENDING, index=True)

    reason: RefundReason

    customer_note: str | None = None
    admin_note: str | None = None

    amount: Decimal = Field(max_digits=10, decimal_places=2)

    currency: str = Field(default="PKR", max_length=3)

    refunded_items: list[dict[str, Any]] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )

    # Refund payout
    payment_method: RefundMethod = Field(default=RefundMethod.ORIGINAL_METHOD)
    payment_status: RefundPaymentStatus = Field(
        default=RefundPaymentStatus.AWAITING,
    )
    amount_paid: Decimal | None = Field(
        default=None,
        max_digits=10,
        decimal_places=2,
    )
    transaction_id: str | None = Field(default=None, max_length=255)
    provider: str | None = Field(default=None, max_length=50)
    paid_at: datetime | None = None
    failure_reason: str | None = None

    evidence_urls: list[str] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )

    version: int = Field(default=1)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        index=True,
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    processed_at: datetime | None = None


class RefundHistory(SQLModel, table=True):
    """
    Append-only log of refund status transitions.

    The first row of every refund is pending -> pending ("requested").
    """

    __tablename__ = "refund_history"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    refund_id: uuid.UUID = Field(foreign_key="refunds.id", index=True)

    from_status: RefundStatus
    to_status: RefundStatus

    notes: str | None = None

    # customer | admin
    changed_by: str = Field(max_length=50)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        index=True,
    )
