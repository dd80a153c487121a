# dairydrop/repositories/notification_repo.py

import uuid

from sqlalchemy import update
from sqlmodel import Session, select

from dairydrop.models.notification import Notification, NotificationStatus


class NotificationRepository:
    """
    Outbox storage. add() never commits: rows must land in the same
    transaction as the order change they describe.
    """

    def add(self, session: Session, notification: Notification) -> Notification:
        session.add(notification)
        session.flush()
        return notification

    def get_by_id(self, session: Session, notification_id: uuid.UUID) -> Notification | None:
        return session.get(Notification, notification_id)

    def list_recent(
        self,
        session: Session,
        skip: int = 0,
        limit: int = 50,
        status: NotificationStatus | None = None,
    ) -> list[Notification]:
        stmt = select(Notification)
        if status is not None:
            stmt = stmt.where(Notification.status == status)
        stmt = stmt.order_by(Notification.created_at.desc()).offset(skip).limit(limit)
        return list(session.exec(stmt).all())

    def list_dispatchable(
        self,
        session: Session,
        max_attempts: int,
        limit: int = 50,
    ) -> list[Notification]:
        """
        Pending rows plus failed rows that still have attempts left, oldest first.
        """
        stmt = (
            select(Notification)
            .where(
                Notification.status.in_(
                    [NotificationStatus.PENDING, NotificationStatus.FAILED]
                ),
                Notification.attempts < max_attempts,
            )
            .order_by(Notification.created_at)
            .limit(limit)
        )
        return list(session.exec(stmt).all())

    def claim(
        self,
        session: Session,
        notification_id: uuid.UUID,
        seen_status: NotificationStatus,
        seen_attempts: int,
    ) -> bool:
        """
        Move a row to SENDING and count the attempt, but only if it is still
        in the state this dispatcher read. Commits so other dispatchers skip it.

        Returns False when another dispatcher claimed the row first.
        """
        stmt = (
            update(Notification)
            .where(Notification.id == notification_id)
            .where(Notification.status == seen_status)
            .where(Notification.attempts == seen_attempts)
            .values(status=NotificationStatus.SENDING, attempts=seen_attempts + 1)
        )
        result = session.connection().execute(stmt)
        session.commit()
        return result.rowcount == 1

    def update(self, session: Session, notification: Notification) -> Notification:
        session.add(notification)
        session.commit()
        session.refresh(notification)
        return notification
