# dairydrop/schemas/notification.py

import uuid
from datetime import datetime

from pydantic import EmailStr
from sqlmodel import SQLModel

from dairydrop.models.notification import NotificationKind, NotificationStatus


class NotificationRead(SQLModel):
    id: uuid.UUID
    order_id: uuid.UUID
    kind: NotificationKind
    recipient_email: EmailStr
    order_number: str
    new_status: str
    status: NotificationStatus
    attempts: int
    last_error: str | None
    created_at: datetime
    sent_at: datetime | None


class DispatchSummary(SQLModel):
    """
    Result of one outbox dispatch run.
    """

    attempted: int
    sent: int
    failed: int
