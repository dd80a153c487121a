# dairydrop/repositories/order_repo.py

import uuid
from typing import Any

from sqlalchemy import func
from sqlmodel import Session, select

from dairydrop.models.order import Order, OrderDeliveryHistory, OrderLineItem, OrderStatus
from dairydrop.repositories.versioning import compare_and_set


class OrderRepository:
    """
    Data access layer for orders, line items and delivery history.

    NOTE:
      - No commits here; order writes are multi-step transactions.
        The service is responsible for calling session.commit().
    """

    # ---- Orders ----

    def list_for_user(
        self,
        session: Session,
        user_id: uuid.UUID,
        skip: int = 0,
        limit: int = 20,
        status: OrderStatus | None = None,
    ) -> list[Order]:
        stmt = select(Order).where(Order.user_id == user_id)
        if status is not None:
            stmt = stmt.where(Order.status == status)
        stmt = stmt.order_by(Order.created_at.desc()).offset(skip).limit(limit)
        return list(session.exec(stmt).all())

    def list_all(
        self,
        session: Session,
        skip: int = 0,
        limit: int = 50,
        status: OrderStatus | None = None,
        user_id: uuid.UUID | None = None,
    ) -> list[Order]:
        stmt = select(Order)
        if status is not None:
            stmt = stmt.where(Order.status == status)
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id)
        stmt = stmt.order_by(Order.created_at.desc()).offset(skip).limit(limit)
        return list(session.exec(stmt).all())

    def get_by_id(self, session: Session, order_id: uuid.UUID) -> Order | None:
        return session.get(Order, order_id)

    def get_for_user(
        self,
        session: Session,
        order_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> Order | None:
        stmt = select(Order).where(Order.id == order_id, Order.user_id == user_id)
        return session.exec(stmt).first()

    def max_order_number(self, session: Session) -> int:
        value = session.exec(select(func.max(Order.order_number))).one()
        return int(value or 0)

    def generate_order_number(self, session: Session) -> int:
        """
        MAX(order_number) + 1, or 1 for the first order.

        Two concurrent checkouts can compute the same number; the unique
        index on order_number rejects the second insert and checkout retries.
        """
        return self.max_order_number(session) + 1

    def create_order(self, session: Session, order: Order) -> Order:
        """
        Insert an Order without committing, but ensure id is populated.
        """
        session.add(order)
        session.flush()
        session.refresh(order)
        return order

    def apply_changes(self, session: Session, order: Order, **changes: Any) -> bool:
        """
        Version-checked update; False means the order changed underneath us.
        """
        return compare_and_set(session, order, **changes)

    # ---- Line items ----

    def list_items_for_order(
        self,
        session: Session,
        order_id: uuid.UUID,
    ) -> list[OrderLineItem]:
        stmt = (
            select(OrderLineItem)
            .where(OrderLineItem.order_id == order_id)
            .order_by(OrderLineItem.created_at)
        )
        return list(session.exec(stmt).all())

    def create_items(
        self,
        session: Session,
        items: list[OrderLineItem],
    ) -> list[OrderLineItem]:
        session.add_all(items)
        session.flush()
        for item in items:
            session.refresh(item)
        return items

    # ---- Delivery history ----

    def list_delivery_history(
        self,
        session: Session,
        order_id: uuid.UUID,
    ) -> list[OrderDeliveryHistory]:
        stmt = (
            select(OrderDeliveryHistory)
            .where(OrderDeliveryHistory.order_id == order_id)
            .order_by(OrderDeliveryHistory.created_at)
        )
        return list(session.exec(stmt).all())

    def add_delivery_history(
        self,
        session: Session,
        entry: OrderDeliveryHistory,
    ) -> OrderDeliveryHistory:
        session.add(entry)
        session.flush()
        return entry
