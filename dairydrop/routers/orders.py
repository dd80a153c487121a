# dairydrop/routers/orders.py

import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlmodel import Session

from dairydrop.core.auth import require_admin, require_customer
from dairydrop.database import get_session
from dairydrop.models.order import OrderStatus
from dairydrop.models.user import User
from dairydrop.repositories.notification_repo import NotificationRepository
from dairydrop.repositories.order_repo import OrderRepository
from dairydrop.repositories.product_repo import ProductRepository
from dairydrop.schemas.order import (
    AdminOrderCancel,
    DeliveryHistoryRead,
    DeliveryStatusUpdate,
    OrderCancel,
    OrderCancelResult,
    OrderCreate,
    OrderRead,
    OrderReopen,
    OrderStatusUpdate,
    OrderTracking,
    OrderWithItemsRead,
    PaymentUpdate,
)
from dairydrop.services.notification_service import (
    NotificationService,
    dispatch_pending_in_background,
)
from dairydrop.services.order_service import OrderService

router = APIRouter(prefix="/orders", tags=["Orders"])

order_repo = OrderRepository()
product_repo = ProductRepository()
notification_service = NotificationService(NotificationRepository())
service = OrderService(order_repo, product_repo, notification_service)


# -------- Customer endpoints --------


@router.post(
    "/checkout",
    response_model=OrderWithItemsRead,
    status_code=status.HTTP_201_CREATED,
)
def checkout(
    payload: OrderCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_customer),
):
    """
    Place an order for the listed products.

    Prices, tax and totals are computed server-side from the catalog.
    """
    return service.create_order(session, current_user.id, payload)


@router.get(
    "/me",
    response_model=list[OrderRead],
)
def list_my_orders(
    session: Session = Depends(get_session),
    current_user: User = Depends(require_customer),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
    status_filter: OrderStatus | None = Query(default=None, alias="status"),
):
    """
    List the authenticated customer's orders (without items), newest first.
    """
    return service.list_user_orders(
        session, current_user.id, skip=skip, limit=limit, order_status=status_filter
    )


@router.get(
    "/me/{order_id}",
    response_model=OrderWithItemsRead,
)
def get_my_order(
    order_id: uuid.UUID,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_customer),
):
    return service.get_user_order(session, current_user.id, order_id)


@router.post(
    "/me/{order_id}/cancel",
    response_model=OrderCancelResult,
)
def cancel_my_order(
    order_id: uuid.UUID,
    payload: OrderCancel,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_customer),
):
    """
    Cancel one of the customer's orders.

      - pending / confirmed: cancelled, no warning
      - processing: cancelled, response carries a fee warning
      - completed / cancelled: 400
    """
    result = service.cancel_user_order(session, current_user, order_id, payload)
    background_tasks.add_task(dispatch_pending_in_background)
    return result


@router.get(
    "/me/{order_id}/tracking",
    response_model=OrderTracking,
)
def track_my_order(
    order_id: uuid.UUID,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_customer),
):
    """
    Delivery timeline (oldest first) and last known location.
    """
    return service.get_user_tracking(session, current_user.id, order_id)


# -------- Admin endpoints --------


@router.get(
    "",
    response_model=list[OrderRead],
    dependencies=[Depends(require_admin)],
)
def list_all_orders(
    session: Session = Depends(get_session),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    status_filter: OrderStatus | None = Query(default=None, alias="status"),
    user_id: uuid.UUID | None = None,
):
    return service.list_all_orders(
        session, skip=skip, limit=limit, order_status=status_filter, user_id=user_id
    )


@router.get(
    "/{order_id}",
    response_model=OrderWithItemsRead,
    dependencies=[Depends(require_admin)],
)
def get_order_admin(
    order_id: uuid.UUID,
    session: Session = Depends(get_session),
):
    return service.get_order_admin(session, order_id)


@router.patch(
    "/{order_id}/status",
    response_model=OrderRead,
)
def update_order_status(
    order_id: uuid.UUID,
    payload: OrderStatusUpdate,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    """
    Update order status (admin only).

      pending    -> confirmed, cancelled
      confirmed  -> processing, cancelled
      processing -> completed, cancelled

    Completing requires delivered + paid. Cancelling is refused once the
    order is out for delivery or delivered.
    """
    order = service.update_status(session, admin, order_id, payload)
    background_tasks.add_task(dispatch_pending_in_background)
    return order


@router.patch(
    "/{order_id}/delivery-status",
    response_model=OrderWithItemsRead,
)
def update_delivery_status(
    order_id: uuid.UUID,
    payload: DeliveryStatusUpdate,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    """
    Advance delivery (admin only); each change is appended to the timeline.
    """
    order = service.update_delivery_status(session, admin, order_id, payload)
    background_tasks.add_task(dispatch_pending_in_background)
    return order


@router.patch(
    "/{order_id}/payment",
    response_model=OrderRead,
)
def update_payment(
    order_id: uuid.UUID,
    payload: PaymentUpdate,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    """
    Record cash-on-delivery collection (admin only).
    """
    return service.update_payment(session, admin, order_id, payload)


@router.post(
    "/{order_id}/cancel",
    response_model=OrderRead,
)
def cancel_order_admin(
    order_id: uuid.UUID,
    payload: AdminOrderCancel,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    order = service.cancel_order_admin(session, admin, order_id, payload)
    background_tasks.add_task(dispatch_pending_in_background)
    return order


@router.post(
    "/{order_id}/reopen",
    response_model=OrderRead,
)
def reopen_order(
    order_id: uuid.UUID,
    payload: OrderReopen,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    """
    Reverse a cancellation; the order starts over at pending.
    """
    order = service.reopen_order(session, admin, order_id, payload)
    background_tasks.add_task(dispatch_pending_in_background)
    return order


@router.get(
    "/{order_id}/delivery-history",
    response_model=list[DeliveryHistoryRead],
    dependencies=[Depends(require_admin)],
)
def get_delivery_history(
    order_id: uuid.UUID,
    session: Session = Depends(get_session),
):
    return service.get_delivery_history(session, order_id)
