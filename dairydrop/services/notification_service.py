# dairydrop/services/notification_service.py

import logging
from datetime import datetime, timezone
from html import escape

from sqlmodel import Session

from dairydrop import database
from dairydrop.core.config import get_settings
from dairydrop.core.email_client import send_email
from dairydrop.models.notification import Notification, NotificationKind, NotificationStatus
from dairydrop.models.order import Order
from dairydrop.models.user import User
from dairydrop.repositories.notification_repo import NotificationRepository
from dairydrop.schemas.notification import DispatchSummary
from dairydrop.services.order_rules import format_order_number

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500

_SUBJECT_PREFIX = {
    NotificationKind.ORDER_STATUS: "Order",
    NotificationKind.DELIVERY_STATUS: "Delivery update for order",
}


def _humanize(status: str) -> str:
    return status.replace("_", " ")


def render_notification(notification: Notification) -> tuple[str, str, str]:
    """
    Build (subject, text_body, html_body) for an outbox row.
    """
    status_text = _humanize(notification.new_status)
    prefix = _SUBJECT_PREFIX[notification.kind]
    subject = f"[Dairy Drop] {prefix} {notification.order_number}: {status_text}"

    lines = [
        f"Hi {notification.customer_name},",
        "",
        f"Your order {notification.order_number} is now {status_text}.",
    ]
    if notification.amount is not None:
        lines.append(f"Order total: {notification.amount}")
    if notification.reason:
        lines.append(f"Reason: {notification.reason}")
    if notification.warning:
        lines.append(f"Please note: {notification.warning}")
    lines += ["", "Thank you for shopping with Dairy Drop."]
    text_body = "\n".join(lines)

    html_body = "".join(f"<p>{escape(line)}</p>" for line in lines if line)
    return subject, text_body, html_body


class NotificationService:
    """
    Transactional outbox for customer emails.

    Responsibilities:
      - enqueue a pending row inside the caller's transaction
      - deliver pending/failed rows through the SMTP adapter
      - record the outcome (sent / failed + error) on each row
    """

    def __init__(self, repo: NotificationRepository):
        self.repo = repo

    def enqueue_order_update(
        self,
        session: Session,
        order: Order,
        kind: NotificationKind,
        new_status: str,
        reason: str | None = None,
        warning: str | None = None,
    ) -> Notification:
        """
        Stage a notification for `order`'s customer. Does not commit.
        """
        customer = session.get(User, order.user_id)
        notification = Notification(
            order_id=order.id,
            kind=kind,
            recipient_email=customer.email,
            customer_name=customer.name,
            order_number=format_order_number(order.order_number),
            new_status=getattr(new_status, "value", new_status),
            amount=order.total_amount,
            reason=reason,
            warning=warning,
        )
        return self.repo.add(session, notification)

    def list_notifications(
        self,
        session: Session,
        skip: int = 0,
        limit: int = 50,
        status: NotificationStatus | None = None,
    ) -> list[Notification]:
        return self.repo.list_recent(session, skip=skip, limit=limit, status=status)

    def dispatch_pending(self, session: Session, limit: int = 50) -> DispatchSummary:
        """
        Try to send every dispatchable row once.

        Each row is claimed (moved to SENDING) before it is sent, so rows
        picked up by a concurrent dispatcher are skipped. A failed render or
        send is logged and recorded on the row; it is retried on the next run
        until NOTIFICATION_MAX_ATTEMPTS is reached.
        """
        max_attempts = get_settings().NOTIFICATION_MAX_ATTEMPTS
        rows = self.repo.list_dispatchable(session, max_attempts=max_attempts, limit=limit)
        # Read before the first claim commits and expires the rows.
        seen = [(n, n.id, n.status, n.attempts) for n in rows]

        attempted = 0
        sent = 0
        failed = 0
        for notification, notification_id, seen_status, seen_attempts in seen:
            if not self.repo.claim(session, notification_id, seen_status, seen_attempts):
                logger.info("Notification %s already claimed, skipping", notification_id)
                continue

            attempted += 1
            try:
                subject, text_body, html_body = render_notification(notification)
                send_email(notification.recipient_email, subject, text_body, html_body)
            except Exception as exc:
                failed += 1
                notification.status = NotificationStatus.FAILED
                notification.last_error = str(exc)[:MAX_ERROR_LENGTH]
                logger.warning(
                    "Notification %s for order %s failed (attempt %d/%d): %s",
                    notification.id,
                    notification.order_number,
                    notification.attempts,
                    max_attempts,
                    exc,
                )
            else:
                sent += 1
                notification.status = NotificationStatus.SENT
                notification.sent_at = datetime.now(timezone.utc)
                notification.last_error = None
            self.repo.update(session, notification)

        return DispatchSummary(attempted=attempted, sent=sent, failed=failed)


def dispatch_pending_in_background(limit: int = 50) -> None:
    """
    BackgroundTasks entry point: runs after the response with its own session.
    """
    service = NotificationService(NotificationRepository())
    with Session(database.engine) as session:
        summary = service.dispatch_pending(session, limit=limit)
    if summary.attempted:
        logger.info(
            "Notification dispatch: %d attempted, %d sent, %d failed",
            summary.attempted,
            summary.sent,
            summary.failed,
        )
