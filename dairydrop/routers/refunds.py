# dairydrop/routers/refunds.py

import uuid

from fastapi import (
    APIRouter,
    Depends,
    File,
    HTTPException,
    Query,
    UploadFile,
    status,
)
from sqlmodel import Session

from dairydrop.core.auth import require_admin, require_customer
from dairydrop.database import get_session
from dairydrop.models.refund import RefundStatus
from dairydrop.models.user import User
from dairydrop.repositories.order_repo import OrderRepository
from dairydrop.repositories.refund_repo import RefundRepository
from dairydrop.schemas.refund import (
    EvidenceUploadRead,
    RefundCreate,
    RefundEligibility,
    RefundPaymentUpdate,
    RefundRead,
    RefundStatusUpdate,
    RefundWithHistoryRead,
)
from dairydrop.services.refund_service import RefundService

router = APIRouter(prefix="/refunds", tags=["Refunds"])

service = RefundService(RefundRepository(), OrderRepository())


# -------- Customer endpoints --------


@router.get(
    "/eligibility/{order_id}",
    response_model=RefundEligibility,
)
def check_eligibility(
    order_id: uuid.UUID,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_customer),
):
    """
    Whether the order can be refunded right now, which reasons apply and
    how much of each line item is already covered by other refunds.
    """
    return service.check_eligibility(session, current_user.id, order_id)


@router.post(
    "",
    response_model=RefundWithHistoryRead,
    status_code=status.HTTP_201_CREATED,
)
def create_refund(
    payload: RefundCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_customer),
):
    """
    Request a refund. Omit refunded_items to refund the whole order.
    """
    return service.create_refund(session, current_user, payload)


@router.post(
    "/{refund_id}/evidence",
    response_model=EvidenceUploadRead,
    status_code=status.HTTP_201_CREATED,
    summary="Upload up to 3 evidence photos for a pending refund",
)
def upload_evidence(
    refund_id: uuid.UUID,
    files: list[UploadFile] = File(...),
    session: Session = Depends(get_session),
    current_user: User = Depends(require_customer),
):
    """
    - Accepts JPEG, PNG, WEBP (max 5MB each).
    - At most 3 photos per refund in total.
    """
    payload: list[tuple[str, bytes]] = []
    for f in files:
        if not f.content_type:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Missing content-type for one of the uploaded files",
            )
        payload.append((f.content_type, f.file.read()))

    return service.upload_evidence(session, current_user.id, refund_id, payload)


@router.get(
    "/me",
    response_model=list[RefundRead],
)
def list_my_refunds(
    session: Session = Depends(get_session),
    current_user: User = Depends(require_customer),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=10, ge=1, le=100),
    status_filter: RefundStatus | None = Query(default=None, alias="status"),
):
    return service.list_user_refunds(
        session, current_user.id, skip=skip, limit=limit, refund_status=status_filter
    )


@router.get(
    "/me/{refund_id}",
    response_model=RefundWithHistoryRead,
)
def get_my_refund(
    refund_id: uuid.UUID,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_customer),
):
    return service.get_user_refund(session, current_user.id, refund_id)


# -------- Admin endpoints --------


@router.get(
    "",
    response_model=list[RefundRead],
    dependencies=[Depends(require_admin)],
)
def list_all_refunds(
    session: Session = Depends(get_session),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    status_filter: RefundStatus | None = Query(default=None, alias="status"),
):
    return service.list_all_refunds(session, skip=skip, limit=limit, refund_status=status_filter)


@router.get(
    "/{refund_id}",
    response_model=RefundWithHistoryRead,
    dependencies=[Depends(require_admin)],
)
def get_refund_admin(
    refund_id: uuid.UUID,
    session: Session = Depends(get_session),
):
    return service.get_refund_admin(session, refund_id)


@router.patch(
    "/{refund_id}/status",
    response_model=RefundWithHistoryRead,
)
def update_refund_status(
    refund_id: uuid.UUID,
    payload: RefundStatusUpdate,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    """
    Process a refund (admin only).

      pending  -> approved, rejected
      approved -> completed, failed
      failed   -> approved
    """
    return service.update_status(session, admin, refund_id, payload)


@router.patch(
    "/{refund_id}/payment",
    response_model=RefundWithHistoryRead,
)
def update_refund_payment(
    refund_id: uuid.UUID,
    payload: RefundPaymentUpdate,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return service.update_payment(session, admin, refund_id, payload)
