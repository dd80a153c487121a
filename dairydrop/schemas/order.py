# dairydrop/schemas/order.py

import re
import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import ConfigDict, computed_field, field_validator
from sqlmodel import SQLModel, Field

from dairydrop.models.order import (
    DeliveryStatus,
    OrderRefundStatus,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from dairydrop.services.order_rules import format_order_number

PHONE_PATTERN = r"^[0-9+\-\s()]{10,15}$"


def _strip_optional(v: str | None) -> str | None:
    if v is None:
        return v
    v = v.strip()
    return v or None


def _validate_phone(v: str) -> str:
    v = v.strip()
    if not re.fullmatch(PHONE_PATTERN, v):
        raise ValueError("Phone number must be 10-15 digits")
    return v


class DeliveryAddress(SQLModel):
    """
    Address snapshot stored on the order at checkout.
    """

    model_config = ConfigDict(extra="forbid")

    full_name: str = Field(min_length=2, max_length=100)
    phone: str
    address_line1: str = Field(min_length=5, max_length=255)
    address_line2: str | None = Field(default=None, max_length=255)
    city: str = Field(min_length=2, max_length=100)
    state: str = Field(min_length=2, max_length=100)
    postal_code: str = Field(min_length=3, max_length=20)
    country: str = Field(min_length=2, max_length=100)
    instructions: str | None = Field(default=None, max_length=500)

    @field_validator("full_name", "address_line1", "city", "state", "postal_code", "country")
    @classmethod
    def not_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("field cannot be empty")
        return v

    @field_validator("address_line2", "instructions")
    @classmethod
    def normalize_optional(cls, v: str | None) -> str | None:
        return _strip_optional(v)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        return _validate_phone(v)


class OrderItemRequest(SQLModel):
    model_config = ConfigDict(extra="forbid")

    product_id: uuid.UUID
    quantity: int = Field(ge=1, le=100)


class OrderCreate(SQLModel):
    """
    Checkout payload.

    Backend derives:
      - user_id from token
      - order_number, status='pending', payment cod/pending
      - prices and totals from the current catalog
    """

    model_config = ConfigDict(extra="forbid")

    delivery_address: DeliveryAddress
    customer_note: str | None = Field(default=None, max_length=1000)
    items: list[OrderItemRequest]

    @field_validator("items")
    @classmethod
    def validate_items(cls, v: list[OrderItemRequest]) -> list[OrderItemRequest]:
        if not v:
            raise ValueError("At least one item is required")
        product_ids = [item.product_id for item in v]
        if len(set(product_ids)) != len(product_ids):
            raise ValueError("Each product may appear only once")
        return v

    @field_validator("customer_note")
    @classmethod
    def normalize_note(cls, v: str | None) -> str | None:
        return _strip_optional(v)


class OrderRead(SQLModel):
    """
    Lightweight representation of an order (without items).
    """

    id: uuid.UUID
    order_number: int
    user_id: uuid.UUID
    status: OrderStatus
    delivery_status: DeliveryStatus | None
    refund_status: OrderRefundStatus
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    paid_at: datetime | None
    amount_paid: Decimal | None
    subtotal: Decimal
    delivery_charge: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    delivery_address: DeliveryAddress
    customer_note: str | None
    admin_note: str | None
    delivered_at: datetime | None
    cancelled_by: str | None
    cancellation_reason: str | None
    version: int
    created_at: datetime
    updated_at: datetime

    @computed_field
    @property
    def display_number(self) -> str:
        return format_order_number(self.order_number)


class OrderLineItemRead(SQLModel):
    id: uuid.UUID
    order_id: uuid.UUID
    product_id: uuid.UUID
    product_snapshot: dict
    unit_price: Decimal
    quantity: int
    total_price: Decimal


class DeliveryHistoryRead(SQLModel):
    id: uuid.UUID
    order_id: uuid.UUID
    status: DeliveryStatus
    delivery_person_name: str | None
    delivery_person_phone: str | None
    location: str | None
    notes: str | None
    updated_by: str
    created_at: datetime


class OrderWithItemsRead(OrderRead):
    """
    Full order view including line items and delivery timeline.
    """

    items: list[OrderLineItemRead]
    delivery_history: list[DeliveryHistoryRead]


class OrderStatusUpdate(SQLModel):
    """
    Admin payload to change order status.
    """

    model_config = ConfigDict(extra="forbid")

    status: OrderStatus
    notes: str | None = Field(default=None, max_length=500)


class DeliveryStatusUpdate(SQLModel):
    """
    Admin payload to move the delivery state machine forward.
    """

    model_config = ConfigDict(extra="forbid")

    status: DeliveryStatus
    delivery_person_name: str | None = Field(default=None, min_length=2, max_length=100)
    delivery_person_phone: str | None = None
    location: str | None = Field(default=None, max_length=100)
    notes: str | None = Field(default=None, max_length=500)

    @field_validator("delivery_person_phone")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _validate_phone(v)


class PaymentUpdate(SQLModel):
    model_config = ConfigDict(extra="forbid")

    status: PaymentStatus
    amount_paid: Decimal | None = Field(default=None, gt=0, max_digits=10, decimal_places=2)
    collected_by: str | None = Field(default=None, min_length=2, max_length=100)


class OrderCancel(SQLModel):
    """
    Customer cancellation payload.
    """

    model_config = ConfigDict(extra="forbid")

    reason: str = Field(min_length=5, max_length=500)

    @field_validator("reason")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 5:
            raise ValueError("reason must be at least 5 characters")
        return v


class AdminOrderCancel(SQLModel):
    model_config = ConfigDict(extra="forbid")

    reason: str | None = Field(default=None, max_length=500)

    @field_validator("reason")
    @classmethod
    def normalize_reason(cls, v: str | None) -> str | None:
        return _strip_optional(v)


class OrderReopen(SQLModel):
    model_config = ConfigDict(extra="forbid")

    notes: str | None = Field(default=None, max_length=500)


class OrderCancelResult(SQLModel):
    """
    Cancellation outcome; warning is set for late (processing) cancellations.
    """

    order: OrderRead
    warning: str | None = None


class OrderTracking(SQLModel):
    order_number: str
    status: OrderStatus
    delivery_status: DeliveryStatus | None
    current_location: str | None
    timeline: list[DeliveryHistoryRead]
