# dairydrop/services/order_service.py

import logging
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from dairydrop.core.config import get_settings
from dairydrop.models.notification import NotificationKind
from dairydrop.models.order import (
    DeliveryStatus,
    Order,
    OrderDeliveryHistory,
    OrderLineItem,
    OrderStatus,
    PaymentStatus,
)
from dairydrop.models.product import Product
from dairydrop.models.user import User
from dairydrop.repositories.order_repo import OrderRepository
from dairydrop.repositories.product_repo import ProductRepository
from dairydrop.schemas.order import (
    AdminOrderCancel,
    DeliveryHistoryRead,
    DeliveryStatusUpdate,
    OrderCancel,
    OrderCancelResult,
    OrderCreate,
    OrderLineItemRead,
    OrderRead,
    OrderReopen,
    OrderStatusUpdate,
    OrderTracking,
    OrderWithItemsRead,
    PaymentUpdate,
)
from dairydrop.services.notification_service import NotificationService
from dairydrop.services.order_rules import (
    can_admin_reverse_cancelled_order,
    can_customer_cancel_order,
    format_order_number,
    get_friendly_delivery_status_error,
    is_valid_delivery_status_transition,
    is_valid_status_transition,
    validate_order_status_transition,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

STALE_ORDER_MESSAGE = "This order was updated by someone else. Reload it and try again."


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _discounted_price(product: Product) -> Decimal:
    """
    Unit price after the product's discount, never below zero.

    discount_type:
      - "percentage": discount_value is a percent of price
      - "fixed": discount_value is subtracted from price
    """
    price = Decimal(product.price)
    value = product.discount_value or Decimal("0")

    if product.discount_type == "percentage":
        price = price * (Decimal("100") - value) / Decimal("100")
    elif product.discount_type == "fixed":
        price = price - value

    return _money(max(price, Decimal("0")))


def _product_snapshot(product: Product, taken_at: datetime) -> dict[str, Any]:
    discount = None
    if product.discount_type:
        discount = {
            "type": product.discount_type,
            "value": str(product.discount_value or Decimal("0")),
        }
    return {
        "name": product.name,
        "sku": product.sku,
        "price": str(product.price),
        "discount": discount,
        "brand": product.brand,
        "weight": {"value": str(product.weight_value), "unit": product.weight_unit},
        "category": product.category,
        "snapshot_timestamp": taken_at.isoformat(),
    }


class OrderService:
    """
    Business logic for orders.

    Responsibilities:
      - Checkout: validate items, snapshot products, price, deduct stock
      - Allocate sequential order numbers (retrying on collision)
      - Drive the order and delivery state machines
      - Record COD payment collection
      - Stage customer notifications in the same transaction
    """

    def __init__(
        self,
        order_repo: OrderRepository,
        product_repo: ProductRepository,
        notification_service: NotificationService,
    ):
        self.order_repo = order_repo
        self.product_repo = product_repo
        self.notification_service = notification_service

    # -------- Checkout --------

    def create_order(
        self,
        session: Session,
        user_id: uuid.UUID,
        payload: OrderCreate,
    ) -> OrderWithItemsRead:
        """
        Place an order for `user_id`.

        The whole checkout runs again when the order number collides with a
        concurrent checkout (unique index violation), up to
        ORDER_NUMBER_MAX_ATTEMPTS times; after that the caller gets 409.
        """
        max_attempts = get_settings().ORDER_NUMBER_MAX_ATTEMPTS

        for attempt in range(1, max_attempts + 1):
            try:
                order, items = self._checkout_once(session, user_id, payload)
            except IntegrityError:
                session.rollback()
                logger.warning(
                    "Order number collision at checkout (attempt %d/%d)",
                    attempt,
                    max_attempts,
                )
                continue

            logger.info(
                "Order %s placed by user %s (%d items, total %s)",
                format_order_number(order.order_number),
                user_id,
                len(items),
                order.total_amount,
            )
            return self._build_order_with_items_dto(order, items, [])

        logger.error("Could not allocate an order number after %d attempts", max_attempts)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Could not allocate an order number. Please try again.",
        )

    def _checkout_once(
        self,
        session: Session,
        user_id: uuid.UUID,
        payload: OrderCreate,
    ) -> tuple[Order, list[OrderLineItem]]:
        """
        Steps:
          1. For each requested item:
             - Ensure product exists & is active.
             - Ensure quantity <= stock_on_hand.
             - Ensure discounted price > 0.
          2. Compute subtotal, tax and delivery charge.
          3. Create Order row (status='pending', number = MAX + 1).
          4. Create line items with product snapshots.
          5. Deduct product stock_on_hand.
          6. Commit.
        """
        settings = get_settings()
        now = datetime.now(timezone.utc)

        # 1) Validate each item vs product
        errors: list[dict[str, str]] = []
        priced: list[tuple[Product, int, Decimal]] = []

        for item in payload.items:
            product = self.product_repo.get_by_id(session, item.product_id)

            if not product:
                errors.append({"product_id": str(item.product_id), "reason": "Product not found"})
                continue

            if not product.is_active:
                errors.append({"product_id": str(item.product_id), "reason": "Product is inactive"})
                continue

            if item.quantity > product.stock_on_hand:
                errors.append(
                    {
                        "product_id": str(item.product_id),
                        "reason": f"Insufficient stock (have {product.stock_on_hand}, requested {item.quantity})",
                    }
                )
                continue

            unit_price = _discounted_price(product)
            if unit_price <= 0:
                errors.append({"product_id": str(item.product_id), "reason": "Invalid price"})
                continue

            priced.append((product, item.quantity, unit_price))

        if errors:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"message": "Order validation failed", "items": errors},
            )

        # 2) Totals
        subtotal = sum((unit_price * qty for _, qty, unit_price in priced), Decimal("0"))
        tax_amount = _money(subtotal * settings.TAX_RATE)
        delivery_charge = _money(settings.DELIVERY_CHARGE)
        total_amount = subtotal + tax_amount + delivery_charge

        # 3) Order row; a duplicate number surfaces here as IntegrityError
        order = Order(
            order_number=self.order_repo.generate_order_number(session),
            user_id=user_id,
            status=OrderStatus.PENDING,
            subtotal=subtotal,
            delivery_charge=delivery_charge,
            tax_amount=tax_amount,
            total_amount=total_amount,
            delivery_address=payload.delivery_address.model_dump(),
            customer_note=payload.customer_note,
        )
        order = self.order_repo.create_order(session, order)

        # 4) Line items
        items = [
            OrderLineItem(
                order_id=order.id,
                product_id=product.id,
                product_snapshot=_product_snapshot(product, now),
                unit_price=unit_price,
                quantity=qty,
                total_price=unit_price * qty,
            )
            for product, qty, unit_price in priced
        ]
        items = self.order_repo.create_items(session, items)

        # 5) Stock
        for product, qty, _ in priced:
            product.stock_on_hand -= qty
            session.add(product)

        # 6) Commit
        session.commit()
        session.refresh(order)
        for item in items:
            session.refresh(item)
        return order, items

    # -------- Customer operations --------

    def list_user_orders(
        self,
        session: Session,
        user_id: uuid.UUID,
        skip: int = 0,
        limit: int = 20,
        order_status: OrderStatus | None = None,
    ) -> list[OrderRead]:
        orders = self.order_repo.list_for_user(
            session, user_id, skip=skip, limit=limit, status=order_status
        )
        return [OrderRead.model_validate(o) for o in orders]

    def get_user_order(
        self,
        session: Session,
        user_id: uuid.UUID,
        order_id: uuid.UUID,
    ) -> OrderWithItemsRead:
        """
        404 if the order does not exist or belongs to someone else.
        """
        order = self._get_user_order_or_404(session, user_id, order_id)
        return self._load_order_with_items(session, order)

    def cancel_user_order(
        self,
        session: Session,
        user: User,
        order_id: uuid.UUID,
        payload: OrderCancel,
    ) -> OrderCancelResult:
        """
        Customer cancellation.

        pending/confirmed cancel freely; processing cancels with a fee
        warning; anything later is refused.
        """
        order = self._get_user_order_or_404(session, user.id, order_id)

        check = can_customer_cancel_order(order.status)
        if not check.allowed:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=check.message,
            )
        self._ensure_status_transition(order, OrderStatus.CANCELLED)

        previous = order.status
        self._apply(
            session,
            order,
            status=OrderStatus.CANCELLED,
            cancelled_by="customer",
            cancellation_reason=payload.reason,
        )
        self.notification_service.enqueue_order_update(
            session,
            order,
            NotificationKind.ORDER_STATUS,
            OrderStatus.CANCELLED,
            reason=payload.reason,
            warning=check.warning,
        )
        session.commit()
        session.refresh(order)

        logger.info(
            "Order %s cancelled by customer %s (was %s)",
            format_order_number(order.order_number),
            user.id,
            previous.value,
        )
        return OrderCancelResult(order=OrderRead.model_validate(order), warning=check.warning)

    def get_user_tracking(
        self,
        session: Session,
        user_id: uuid.UUID,
        order_id: uuid.UUID,
    ) -> OrderTracking:
        order = self._get_user_order_or_404(session, user_id, order_id)
        history = self.order_repo.list_delivery_history(session, order.id)

        current_location = history[-1].location if history else None
        return OrderTracking(
            order_number=format_order_number(order.order_number),
            status=order.status,
            delivery_status=order.delivery_status,
            current_location=current_location,
            timeline=[DeliveryHistoryRead.model_validate(h) for h in history],
        )

    # -------- Admin operations --------

    def list_all_orders(
        self,
        session: Session,
        skip: int = 0,
        limit: int = 50,
        order_status: OrderStatus | None = None,
        user_id: uuid.UUID | None = None,
    ) -> list[OrderRead]:
        orders = self.order_repo.list_all(
            session, skip=skip, limit=limit, status=order_status, user_id=user_id
        )
        return [OrderRead.model_validate(o) for o in orders]

    def get_order_admin(self, session: Session, order_id: uuid.UUID) -> OrderWithItemsRead:
        order = self._get_order_or_404(session, order_id)
        return self._load_order_with_items(session, order)

    def update_status(
        self,
        session: Session,
        admin: User,
        order_id: uuid.UUID,
        payload: OrderStatusUpdate,
    ) -> OrderRead:
        """
        Admin order status change.

          - transition table first, then delivery/payment guards
          - confirming starts delivery at awaiting_processing
          - cancelling records cancelled_by='admin'
        """
        order = self._get_order_or_404(session, order_id)
        new = payload.status
        self._ensure_status_transition(order, new)

        changes: dict[str, Any] = {"status": new}
        if payload.notes:
            changes["admin_note"] = payload.notes
        if new == OrderStatus.CONFIRMED:
            changes["delivery_status"] = DeliveryStatus.AWAITING_PROCESSING
        if new == OrderStatus.CANCELLED:
            changes["cancelled_by"] = "admin"
            changes["cancellation_reason"] = payload.notes

        previous = order.status
        self._apply(session, order, **changes)

        if new == OrderStatus.CONFIRMED:
            self.order_repo.add_delivery_history(
                session,
                OrderDeliveryHistory(
                    order_id=order.id,
                    status=DeliveryStatus.AWAITING_PROCESSING,
                    notes="Order confirmed",
                    updated_by=str(admin.id),
                ),
            )

        self.notification_service.enqueue_order_update(
            session,
            order,
            NotificationKind.ORDER_STATUS,
            new,
            reason=payload.notes if new == OrderStatus.CANCELLED else None,
        )
        session.commit()
        session.refresh(order)

        logger.info(
            "Order %s status %s -> %s by admin %s",
            format_order_number(order.order_number),
            previous.value,
            new.value,
            admin.id,
        )
        return OrderRead.model_validate(order)

    def update_delivery_status(
        self,
        session: Session,
        admin: User,
        order_id: uuid.UUID,
        payload: DeliveryStatusUpdate,
    ) -> OrderWithItemsRead:
        """
        Move the delivery state machine and append a history row.

        Rejected for cancelled orders and for orders that were never
        confirmed (no delivery status yet). Reaching delivered stamps
        delivered_at, which opens the refund window.
        """
        order = self._get_order_or_404(session, order_id)

        if order.status == OrderStatus.CANCELLED:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Cannot update delivery for a cancelled order.",
            )

        current = order.delivery_status
        if current is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Order must be confirmed before delivery can be updated.",
            )

        new = payload.status
        if not is_valid_delivery_status_transition(current, new):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=get_friendly_delivery_status_error(current, new),
            )

        changes: dict[str, Any] = {"delivery_status": new}
        if new == DeliveryStatus.DELIVERED:
            changes["delivered_at"] = datetime.now(timezone.utc)

        self._apply(session, order, **changes)
        self.order_repo.add_delivery_history(
            session,
            OrderDeliveryHistory(
                order_id=order.id,
                status=new,
                delivery_person_name=payload.delivery_person_name,
                delivery_person_phone=payload.delivery_person_phone,
                location=payload.location,
                notes=payload.notes,
                updated_by=str(admin.id),
            ),
        )
        self.notification_service.enqueue_order_update(
            session,
            order,
            NotificationKind.DELIVERY_STATUS,
            new,
            reason=payload.notes if new == DeliveryStatus.DELIVERY_FAILED else None,
        )
        session.commit()
        session.refresh(order)

        logger.info(
            "Order %s delivery %s -> %s by admin %s",
            format_order_number(order.order_number),
            current.value,
            new.value,
            admin.id,
        )
        return self._load_order_with_items(session, order)

    def update_payment(
        self,
        session: Session,
        admin: User,
        order_id: uuid.UUID,
        payload: PaymentUpdate,
    ) -> OrderRead:
        """
        Record cash-on-delivery collection.

        amount_paid defaults to the order total.
        """
        order = self._get_order_or_404(session, order_id)

        if order.payment_status == PaymentStatus.PAID:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Order is already paid.",
            )
        if order.status == OrderStatus.CANCELLED:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Cannot record payment for a cancelled order.",
            )
        if payload.status == order.payment_status:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f'Payment status is already "{order.payment_status.value}".',
            )

        changes: dict[str, Any] = {"payment_status": payload.status}
        if payload.status == PaymentStatus.PAID:
            changes["paid_at"] = datetime.now(timezone.utc)
            changes["amount_paid"] = payload.amount_paid or order.total_amount
            changes["collected_by"] = payload.collected_by

        self._apply(session, order, **changes)
        session.commit()
        session.refresh(order)

        logger.info(
            "Order %s payment recorded as %s by admin %s (amount %s)",
            format_order_number(order.order_number),
            payload.status.value,
            admin.id,
            order.amount_paid,
        )
        return OrderRead.model_validate(order)

    def cancel_order_admin(
        self,
        session: Session,
        admin: User,
        order_id: uuid.UUID,
        payload: AdminOrderCancel,
    ) -> OrderRead:
        order = self._get_order_or_404(session, order_id)

        if order.status == OrderStatus.CANCELLED:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Order is already cancelled.",
            )

        return self.update_status(
            session,
            admin,
            order_id,
            OrderStatusUpdate(status=OrderStatus.CANCELLED, notes=payload.reason),
        )

    def reopen_order(
        self,
        session: Session,
        admin: User,
        order_id: uuid.UUID,
        payload: OrderReopen,
    ) -> OrderRead:
        """
        Reverse a cancellation: the order restarts at pending with its
        delivery status and cancellation details cleared.
        """
        order = self._get_order_or_404(session, order_id)

        if not can_admin_reverse_cancelled_order(order.status):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Only cancelled orders can be reopened.",
            )

        changes: dict[str, Any] = {
            "status": OrderStatus.PENDING,
            "delivery_status": None,
            "cancelled_by": None,
            "cancellation_reason": None,
        }
        if payload.notes:
            changes["admin_note"] = payload.notes

        self._apply(session, order, **changes)
        self.notification_service.enqueue_order_update(
            session,
            order,
            NotificationKind.ORDER_STATUS,
            OrderStatus.PENDING,
            reason=payload.notes,
        )
        session.commit()
        session.refresh(order)

        logger.info(
            "Order %s reopened by admin %s",
            format_order_number(order.order_number),
            admin.id,
        )
        return OrderRead.model_validate(order)

    def get_delivery_history(
        self,
        session: Session,
        order_id: uuid.UUID,
    ) -> list[DeliveryHistoryRead]:
        order = self._get_order_or_404(session, order_id)
        history = self.order_repo.list_delivery_history(session, order.id)
        return [DeliveryHistoryRead.model_validate(h) for h in history]

    # -------- Helpers --------

    def _get_order_or_404(self, session: Session, order_id: uuid.UUID) -> Order:
        order = self.order_repo.get_by_id(session, order_id)
        if not order:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Order not found",
            )
        return order

    def _get_user_order_or_404(
        self,
        session: Session,
        user_id: uuid.UUID,
        order_id: uuid.UUID,
    ) -> Order:
        order = self.order_repo.get_for_user(session, order_id, user_id)
        if not order:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Order not found",
            )
        return order

    @staticmethod
    def _ensure_status_transition(order: Order, new: OrderStatus) -> None:
        if not is_valid_status_transition(order.status, new):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f'Cannot change order status from "{order.status.value}" to "{new.value}".',
            )

        message = validate_order_status_transition(order, new)
        if message:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=message,
            )

    def _apply(self, session: Session, order: Order, **changes: Any) -> None:
        """
        Version-checked write; 409 when another request changed the order first.
        """
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

    def _load_order_with_items(self, session: Session, order: Order) -> OrderWithItemsRead:
        items = self.order_repo.list_items_for_order(session, order.id)
        history = self.order_repo.list_delivery_history(session, order.id)
        return self._build_order_with_items_dto(order, items, history)

    @staticmethod
    def _build_order_with_items_dto(
        order: Order,
        items: list[OrderLineItem],
        history: list[OrderDeliveryHistory],
    ) -> OrderWithItemsRead:
        base = OrderRead.model_validate(order)
        return OrderWithItemsRead(
            **base.model_dump(exclude={"display_number"}),
            items=[OrderLineItemRead.model_validate(i) for i in items],
            delivery_history=[DeliveryHistoryRead.model_validate(h) for h in history],
        )
