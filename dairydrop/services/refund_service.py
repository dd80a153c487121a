# dairydrop/services/refund_service.py

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable

from fastapi import HTTPException, status
from sqlmodel import Session

from dairydrop.core.config import get_settings
from dairydrop.core.storage_utils import (
    delete_from_storage,
    generate_filename,
    upload_to_storage,
)
from dairydrop.models.order import Order
from dairydrop.models.refund import (
    Refund,
    RefundHistory,
    RefundMethod,
    RefundPaymentStatus,
    RefundStatus,
)
from dairydrop.models.user import User
from dairydrop.repositories.order_repo import OrderRepository
from dairydrop.repositories.refund_repo import RefundRepository
from dairydrop.schemas.refund import (
    EvidenceUploadRead,
    RefundCreate,
    RefundEligibility,
    RefundHistoryRead,
    RefundItemRead,
    RefundPaymentUpdate,
    RefundRead,
    RefundStatusUpdate,
    RefundWithHistoryRead,
)
from dairydrop.services.refund_rules import (
    can_customer_request_refund,
    check_refund_capacity,
    compute_order_refund_status,
    is_valid_refund_reason,
    is_valid_refund_status_transition,
)

logger = logging.getLogger(__name__)

# --- Evidence config ---

MAX_EVIDENCE_FILES = 3

MAX_EVIDENCE_BYTES = 5 * 1024 * 1024  # 5MB per photo

ALLOWED_EVIDENCE_CONTENT_TYPES: dict[str, str] = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}

# Setting one of these stamps processed_at.
PROCESSING_DECISIONS = frozenset(
    {RefundStatus.APPROVED, RefundStatus.REJECTED, RefundStatus.COMPLETED}
)

STALE_REFUND_MESSAGE = "This refund was updated by someone else. Reload it and try again."

STALE_ORDER_MESSAGE = "The order was updated by someone else. Reload it and try again."


class RefundService:
    """
    Business logic for refunds.

    Responsibilities:
      - eligibility (order state, refund window, remaining quantities)
      - price snapshots and amount for new requests
      - evidence photo upload to Supabase Storage
      - admin status/payment processing with an audit trail
      - keeping order.refund_status in sync
    """

    def __init__(self, refund_repo: RefundRepository, order_repo: OrderRepository):
        self.refund_repo = refund_repo
        self.order_repo = order_repo

    # ----- Helpers -----

    def _get_customer_order_or_404(
        self,
        session: Session,
        customer_id: uuid.UUID,
        order_id: uuid.UUID,
    ) -> Order:
        order = self.order_repo.get_for_user(session, order_id, customer_id)
        if not order:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Order not found",
            )
        return order

    def _get_refund_or_404(self, session: Session, refund_id: uuid.UUID) -> Refund:
        refund = self.refund_repo.get_by_id(session, refund_id)
        if not refund:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Refund not found",
            )
        return refund

    def _get_customer_refund_or_404(
        self,
        session: Session,
        customer_id: uuid.UUID,
        refund_id: uuid.UUID,
    ) -> Refund:
        refund = self.refund_repo.get_for_customer(session, refund_id, customer_id)
        if not refund:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Refund not found",
            )
        return refund

    def _eligibility_for(self, session: Session, order: Order) -> RefundEligibility:
        return can_customer_request_refund(
            order.status,
            order.delivery_status,
            order.delivered_at,
            self.refund_repo.list_for_order(session, order.id),
            self.order_repo.list_items_for_order(session, order.id),
            window_days=get_settings().REFUND_WINDOW_DAYS,
        )

    def _apply(self, session: Session, refund: Refund, **changes: Any) -> None:
        refund_id, seen_version = refund.id, refund.version
        if not self.refund_repo.apply_changes(session, refund, **changes):
            session.rollback()
            logger.warning(
                "Stale write rejected for refund %s (version %d)",
                refund_id,
                seen_version,
            )
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=STALE_REFUND_MESSAGE,
            )

    def _apply_order(self, session: Session, order: Order, **changes: Any) -> None:
        order_id, seen_version = order.id, order.version
        if not self.order_repo.apply_changes(session, order, **changes):
            session.rollback()
            logger.warning(
                "Stale write rejected for order %s (version %d)",
                order_id,
                seen_version,
            )
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=STALE_ORDER_MESSAGE,
            )

    def _with_history(self, session: Session, refund: Refund) -> RefundWithHistoryRead:
        base = RefundRead.model_validate(refund)
        history = self.refund_repo.list_history(session, refund.id)
        return RefundWithHistoryRead(
            **base.model_dump(),
            history=[RefundHistoryRead.model_validate(h) for h in history],
        )

    @staticmethod
    def _validate_and_get_ext(content_type: str, file_bytes: bytes) -> str:
        if content_type not in ALLOWED_EVIDENCE_CONTENT_TYPES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Unsupported image type. Allowed: JPEG, PNG, WEBP.",
            )

        if len(file_bytes) > MAX_EVIDENCE_BYTES:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail="Image too large (max 5MB).",
            )

        return ALLOWED_EVIDENCE_CONTENT_TYPES[content_type]

    def _sync_order_refund_status(self, session: Session, order_id: uuid.UUID) -> None:
        """
        Recompute order.refund_status from all of the order's refunds.
        """
        order = self.order_repo.get_by_id(session, order_id)
        refunds = self.refund_repo.list_for_order(session, order_id)
        line_items = self.order_repo.list_items_for_order(session, order_id)

        new_status = compute_order_refund_status(refunds, line_items)
        if new_status == order.refund_status:
            return

        previous = order.refund_status
        self._apply_order(session, order, refund_status=new_status)
        logger.info(
            "Order %s refund status %s -> %s",
            order_id,
            previous.value,
            new_status.value,
        )

    # ----- Customer -----

    def check_eligibility(
        self,
        session: Session,
        customer_id: uuid.UUID,
        order_id: uuid.UUID,
    ) -> RefundEligibility:
        order = self._get_customer_order_or_404(session, customer_id, order_id)
        return self._eligibility_for(session, order)

    def create_refund(
        self,
        session: Session,
        customer: User,
        payload: RefundCreate,
    ) -> RefundWithHistoryRead:
        """
        Open a refund request.

        Steps:
          1. Load the customer's order (404 otherwise).
          2. Run eligibility; 400 with its message when refused.
          3. Check the reason against the delivery outcome.
          4. For partial refunds, check quantities against what is left
             and snapshot unit prices from the line items.
          5. Bump the order's version so that a concurrent request checked
             against the same refunds gets 409 instead of overdrawing.
          6. Insert the refund plus its first history row, then commit.
        """
        settings = get_settings()

        # 1) Order
        order = self._get_customer_order_or_404(session, customer.id, payload.order_id)

        # 2) Eligibility
        eligibility = self._eligibility_for(session, order)
        if not eligibility.eligible:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=eligibility.message,
            )

        # 3) Reason
        reason_error = is_valid_refund_reason(order.delivery_status, payload.reason)
        if reason_error:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=reason_error,
            )

        # 4) Items and amount
        line_items = self.order_repo.list_items_for_order(session, order.id)
        refunded_items: list[dict[str, Any]] | None = None
        amount = order.total_amount

        if payload.refunded_items:
            capacity_error = check_refund_capacity(
                [(ri.order_line_item_id, ri.quantity) for ri in payload.refunded_items],
                line_items,
                eligibility.already_refunded_quantities or {},
            )
            if capacity_error:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=capacity_error,
                )

            by_id = {li.id: li for li in line_items}
            snapshots = [
                RefundItemRead(
                    order_line_item_id=ri.order_line_item_id,
                    quantity=ri.quantity,
                    unit_price=by_id[ri.order_line_item_id].unit_price,
                    total_price=by_id[ri.order_line_item_id].unit_price * ri.quantity,
                )
                for ri in payload.refunded_items
            ]
            amount = sum((s.total_price for s in snapshots), Decimal("0"))
            refunded_items = [s.model_dump(mode="json") for s in snapshots]

        # 5) Claim the order
        self._apply_order(session, order)

        # 6) Persist
        refund = Refund(
            order_id=order.id,
            customer_id=customer.id,
            status=RefundStatus.PENDING,
            reason=payload.reason,
            customer_note=payload.customer_note,
            amount=amount,
            currency=payload.currency or settings.DEFAULT_CURRENCY,
            refunded_items=refunded_items,
            payment_method=payload.preferred_refund_method or RefundMethod.ORIGINAL_METHOD,
            payment_status=RefundPaymentStatus.AWAITING,
        )
        refund = self.refund_repo.create_refund(session, refund)
        self.refund_repo.add_history(
            session,
            RefundHistory(
                refund_id=refund.id,
                from_status=RefundStatus.PENDING,
                to_status=RefundStatus.PENDING,
                notes="Refund requested by customer",
                changed_by="customer",
            ),
        )
        session.commit()
        session.refresh(refund)

        logger.info(
            "Refund %s requested by customer %s for order %s (%s %s, reason %s)",
            refund.id,
            customer.id,
            order.id,
            refund.amount,
            refund.currency,
            refund.reason.value,
        )
        return self._with_history(session, refund)

    def upload_evidence(
        self,
        session: Session,
        customer_id: uuid.UUID,
        refund_id: uuid.UUID,
        files: Iterable[tuple[str, bytes]],
    ) -> EvidenceUploadRead:
        """
        Attach evidence photos to a pending refund.

        Args:
            files: iterable of (content_type, file_bytes)

        Every file is validated before anything is uploaded. Objects are
        stored under refunds/<refund_id>/<uuid>.<ext>.
        """
        files = list(files)
        if not files:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="No evidence images provided",
            )

        refund = self._get_customer_refund_or_404(session, customer_id, refund_id)
        if refund.status != RefundStatus.PENDING:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Evidence can only be uploaded for pending refunds",
            )

        existing = list(refund.evidence_urls or [])
        if len(existing) + len(files) > MAX_EVIDENCE_FILES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=(
                    f"Maximum {MAX_EVIDENCE_FILES} evidence photos allowed. "
                    f"You already have {len(existing)}."
                ),
            )

        validated = [
            (content_type, file_bytes, self._validate_and_get_ext(content_type, file_bytes))
            for content_type, file_bytes in files
        ]

        paths: list[str] = []
        urls: list[str] = []
        for content_type, file_bytes, ext in validated:
            path = f"refunds/{refund.id}/{generate_filename(ext)}"
            urls.append(upload_to_storage(path, file_bytes, content_type))
            paths.append(path)

        try:
            self._apply(session, refund, evidence_urls=existing + urls)
        except HTTPException:
            # Nothing references these objects now.
            delete_from_storage(paths)
            raise
        session.commit()
        session.refresh(refund)

        logger.info("Refund %s: %d evidence photo(s) uploaded", refund.id, len(urls))
        return EvidenceUploadRead(evidence_urls=refund.evidence_urls or [])

    def list_user_refunds(
        self,
        session: Session,
        customer_id: uuid.UUID,
        skip: int = 0,
        limit: int = 10,
        refund_status: RefundStatus | None = None,
    ) -> list[RefundRead]:
        refunds = self.refund_repo.list_for_customer(
            session, customer_id, skip=skip, limit=limit, status=refund_status
        )
        return [RefundRead.model_validate(r) for r in refunds]

    def get_user_refund(
        self,
        session: Session,
        customer_id: uuid.UUID,
        refund_id: uuid.UUID,
    ) -> RefundWithHistoryRead:
        refund = self._get_customer_refund_or_404(session, customer_id, refund_id)
        return self._with_history(session, refund)

    # ----- Admin -----

    def list_all_refunds(
        self,
        session: Session,
        skip: int = 0,
        limit: int = 50,
        refund_status: RefundStatus | None = None,
    ) -> list[RefundRead]:
        refunds = self.refund_repo.list_all(session, skip=skip, limit=limit, status=refund_status)
        return [RefundRead.model_validate(r) for r in refunds]

    def get_refund_admin(self, session: Session, refund_id: uuid.UUID) -> RefundWithHistoryRead:
        refund = self._get_refund_or_404(session, refund_id)
        return self._with_history(session, refund)

    def update_status(
        self,
        session: Session,
        admin: User,
        refund_id: uuid.UUID,
        payload: RefundStatusUpdate,
    ) -> RefundWithHistoryRead:
        """
        Admin refund decision.

          pending  -> approved, rejected
          approved -> completed, failed
          failed   -> approved

        Records who processed it, appends history and recomputes the
        order's refund_status.
        """
        refund = self._get_refund_or_404(session, refund_id)
        previous = refund.status
        new = RefundStatus(payload.status)

        if not is_valid_refund_status_transition(previous, new):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status transition: {previous.value} cannot be changed to {new.value}.",
            )

        changes: dict[str, Any] = {"status": new, "processed_by_id": admin.id}
        if payload.admin_note:
            changes["admin_note"] = payload.admin_note
        if new in PROCESSING_DECISIONS:
            changes["processed_at"] = datetime.now(timezone.utc)

        self._apply(session, refund, **changes)
        self._sync_order_refund_status(session, refund.order_id)
        self.refund_repo.add_history(
            session,
            RefundHistory(
                refund_id=refund.id,
                from_status=previous,
                to_status=new,
                notes=payload.admin_note,
                changed_by="admin",
            ),
        )
        session.commit()
        session.refresh(refund)

        logger.info(
            "Refund %s status %s -> %s by admin %s",
            refund.id,
            previous.value,
            new.value,
            admin.id,
        )
        return self._with_history(session, refund)

    def update_payment(
        self,
        session: Session,
        admin: User,
        refund_id: uuid.UUID,
        payload: RefundPaymentUpdate,
    ) -> RefundWithHistoryRead:
        """
        Record refund payout progress (approved or completed refunds only).

        Only fields present in the payload are changed; a completed payout
        stamps paid_at.
        """
        refund = self._get_refund_or_404(session, refund_id)

        if refund.status not in (RefundStatus.APPROVED, RefundStatus.COMPLETED):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Refund payment can only be updated for approved or completed refunds.",
            )

        previous_payment = refund.payment_status
        changes: dict[str, Any] = {"payment_status": payload.status}
        if payload.method is not None:
            changes["payment_method"] = payload.method
        if payload.amount_paid is not None:
            changes["amount_paid"] = payload.amount_paid
        if payload.transaction_id is not None:
            changes["transaction_id"] = payload.transaction_id
        if payload.provider is not None:
            changes["provider"] = payload.provider
        if payload.failure_reason is not None:
            changes["failure_reason"] = payload.failure_reason
        if payload.status == RefundPaymentStatus.COMPLETED:
            changes["paid_at"] = datetime.now(timezone.utc)

        current_status = refund.status
        self._apply(session, refund, **changes)
        self.refund_repo.add_history(
            session,
            RefundHistory(
                refund_id=refund.id,
                from_status=current_status,
                to_status=current_status,
                notes=f"Payment status: {previous_payment.value} → {payload.status.value}",
                changed_by="admin",
            ),
        )
        session.commit()
        session.refresh(refund)

        logger.info(
            "Refund %s payment %s -> %s by admin %s",
            refund.id,
            previous_payment.value,
            payload.status.value,
            admin.id,
        )
        return self._with_history(session, refund)
