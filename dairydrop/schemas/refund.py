# dairydrop/schemas/refund.py

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import ConfigDict, field_validator
from sqlmodel import SQLModel, Field

from dairydrop.models.refund import (
    RefundMethod,
    RefundPaymentStatus,
    RefundReason,
    RefundStatus,
)

# Statuses an admin may request; pending is only ever set at creation.
AdminRefundStatus = Literal["approved", "rejected", "completed", "failed"]


class RefundItemRequest(SQLModel):
    model_config = ConfigDict(extra="forbid")

    order_line_item_id: uuid.UUID
    quantity: int = Field(ge=1)


class RefundCreate(SQLModel):
    """
    Customer refund request.

    refunded_items omitted => refund the whole order.
    """

    model_config = ConfigDict(extra="forbid")

    order_id: uuid.UUID
    reason: RefundReason
    customer_note: str | None = Field(default=None, max_length=1000)
    refunded_items: list[RefundItemRequest] | None = None
    preferred_refund_method: RefundMethod | None = None
    currency: str | None = None

    @field_validator("refunded_items")
    @classmethod
    def at_least_one_item(
        cls, v: list[RefundItemRequest] | None
    ) -> list[RefundItemRequest] | None:
        if v is not None and len(v) == 0:
            raise ValueError("At least one item is required for partial refund")
        return v

    @field_validator("currency")
    @classmethod
    def iso_currency(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip().upper()
        if len(v) != 3 or not v.isalpha():
            raise ValueError("Currency must be a 3-letter ISO 4217 code (e.g., PKR, USD)")
        return v

    @field_validator("customer_note")
    @classmethod
    def normalize_note(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        return v or None


class RefundItemRead(SQLModel):
    order_line_item_id: uuid.UUID
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class RefundEligibility(SQLModel):
    """
    Outcome of the refund eligibility rules.

    already_refunded_quantities maps order line item id -> quantity already
    covered by active (pending / approved / completed) refunds.
    """

    eligible: bool
    message: str | None = None
    allowed_reasons: list[RefundReason] | None = None
    already_refunded_quantities: dict[str, int] | None = None


class RefundRead(SQLModel):
    id: uuid.UUID
    order_id: uuid.UUID
    customer_id: uuid.UUID
    processed_by_id: uuid.UUID | None
    status: RefundStatus
    reason: RefundReason
    customer_note: str | None
    admin_note: str | None
    amount: Decimal
    currency: str
    refunded_items: list[RefundItemRead] | None
    payment_method: RefundMethod
    payment_status: RefundPaymentStatus
    amount_paid: Decimal | None
    transaction_id: str | None
    provider: str | None
    paid_at: datetime | None
    failure_reason: str | None
    evidence_urls: list[str] | None
    version: int
    created_at: datetime
    updated_at: datetime
    processed_at: datetime | None


class RefundHistoryRead(SQLModel):
    id: uuid.UUID
    refund_id: uuid.UUID
    from_status: RefundStatus
    to_status: RefundStatus
    notes: str | None
    changed_by: str
    created_at: datetime


class RefundWithHistoryRead(RefundRead):
    history: list[RefundHistoryRead]


class RefundStatusUpdate(SQLModel):
    """
    Admin payload to move a refund through its lifecycle.
    """

    model_config = ConfigDict(extra="forbid")

    status: AdminRefundStatus
    admin_note: str | None = Field(default=None, max_length=1000)


class RefundPaymentUpdate(SQLModel):
    """
    Admin payload describing the refund payout.
    """

    model_config = ConfigDict(extra="forbid")

    status: RefundPaymentStatus
    method: RefundMethod | None = None
    amount_paid: Decimal | None = Field(default=None, gt=0, max_digits=10, decimal_places=2)
    transaction_id: str | None = Field(default=None, max_length=255)
    provider: str | None = Field(default=None, max_length=50)
    failure_reason: str | None = Field(default=None, max_length=500)


class EvidenceUploadRead(SQLModel):
    evidence_urls: list[str]
