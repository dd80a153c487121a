# dairydrop/repositories/refund_repo.py

import uuid
from typing import Any

from sqlmodel import Session, select

from dairydrop.models.refund import Refund, RefundHistory, RefundStatus
from dairydrop.repositories.versioning import compare_and_set


class RefundRepository:
    """
    Data access layer for refunds and refund_history.

    Like OrderRepository, nothing here commits.
    """

    def list_for_order(self, session: Session, order_id: uuid.UUID) -> list[Refund]:
        stmt = select(Refund).where(Refund.order_id == order_id)
        return list(session.exec(stmt).all())

    def list_for_customer(
        self,
        session: Session,
        customer_id: uuid.UUID,
        skip: int = 0,
        limit: int = 10,
        status: RefundStatus | None = None,
    ) -> list[Refund]:
        stmt = select(Refund).where(Refund.customer_id == customer_id)
        if status is not None:
            stmt = stmt.where(Refund.status == status)
        stmt = stmt.order_by(Refund.created_at.desc()).offset(skip).limit(limit)
        return list(session.exec(stmt).all())

    def list_all(
        self,
        session: Session,
        skip: int = 0,
        limit: int = 50,
        status: RefundStatus | None = None,
    ) -> list[Refund]:
        stmt = select(Refund)
        if status is not None:
            stmt = stmt.where(Refund.status == status)
        stmt = stmt.order_by(Refund.created_at.desc()).offset(skip).limit(limit)
        return list(session.exec(stmt).all())

    def get_by_id(self, session: Session, refund_id: uuid.UUID) -> Refund | None:
        return session.get(Refund, refund_id)

    def get_for_customer(
        self,
        session: Session,
        refund_id: uuid.UUID,
        customer_id: uuid.UUID,
    ) -> Refund | None:
        stmt = select(Refund).where(Refund.id == refund_id, Refund.customer_id == customer_id)
        return session.exec(stmt).first()

    def create_refund(self, session: Session, refund: Refund) -> Refund:
        session.add(refund)
        session.flush()
        session.refresh(refund)
        return refund

    def apply_changes(self, session: Session, refund: Refund, **changes: Any) -> bool:
        return compare_and_set(session, refund, **changes)

    # ---- History ----

    def add_history(self, session: Session, entry: RefundHistory) -> RefundHistory:
        session.add(entry)
        session.flush()
        return entry

    def list_history(self, session: Session, refund_id: uuid.UUID) -> list[RefundHistory]:
        stmt = (
            select(RefundHistory)
            .where(RefundHistory.refund_id == refund_id)
            .order_by(RefundHistory.created_at.desc())
        )
        return list(session.exec(stmt).all())
