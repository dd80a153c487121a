# dairydrop/models/notification.py

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlmodel import SQLModel, Field


class NotificationKind(str, Enum):
    ORDER_STATUS = "order_status"
    DELIVERY_STATUS = "delivery_status"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class Notification(SQLModel, table=True):
    """
    Outbox row for a customer email.

    Written in the same transaction as the order change it describes,
    then delivered by NotificationService.dispatch_pending.
    """

    __tablename__ = "notifications"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    order_id: uuid.UUID = Field(foreign_key="orders.id", index=True)

    kind: NotificationKind

    recipient_email: str
    customer_name: str

    # Display form, e.g. "#000042"
    order_number: str = Field(max_length=20)

    new_status: str = Field(max_length=50)

    amount: Decimal | None = Field(default=None, max_digits=10, decimal_places=2)

    reason: str | None = None
    warning: str | None = None

    status: NotificationStatus = Field(
        default=NotificationStatus.PENDING,
        index=True,
    )
    attempts: int = Field(default=0)
    last_error: str | None = None

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        index=True,
    )
    sent_at: datetime | None = None
