# dairydrop/routers/notifications.py

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from dairydrop.core.auth import require_admin
from dairydrop.database import get_session
from dairydrop.models.notification import NotificationStatus
from dairydrop.repositories.notification_repo import NotificationRepository
from dairydrop.schemas.notification import DispatchSummary, NotificationRead
from dairydrop.services.notification_service import NotificationService

router = APIRouter(
    prefix="/admin/notifications",
    tags=["Admin Notifications"],
    dependencies=[Depends(require_admin)],
)

service = NotificationService(NotificationRepository())


@router.get("", response_model=list[NotificationRead])
def list_notifications(
    session: Session = Depends(get_session),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    status_filter: NotificationStatus | None = Query(default=None, alias="status"),
):
    """
    Customer email outbox, newest first.
    """
    return service.list_notifications(session, skip=skip, limit=limit, status=status_filter)


@router.post("/dispatch", response_model=DispatchSummary)
def dispatch_notifications(
    session: Session = Depends(get_session),
    limit: int = Query(default=50, ge=1, le=500),
):
    """
    Send pending notifications and retry failed ones that have attempts left.
    """
    return service.dispatch_pending(session, limit=limit)
