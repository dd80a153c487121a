# dairydrop/services/order_rules.py

"""
Order and delivery state machines.

Everything here is pure: functions take the current state and answer with
either a boolean or a human-readable rejection message (None = allowed).
Services turn messages into HTTP 400 responses.

Order status:

    pending    -> confirmed, cancelled
    confirmed  -> processing, cancelled
    processing -> completed, cancelled
    completed  -> (terminal)
    cancelled  -> (terminal)

Delivery status:

    awaiting_processing -> processing -> packing -> packed
      -> handed_to_courier -> out_for_delivery -> delivered (terminal)

    handed_to_courier / out_for_delivery -> delivery_failed
    delivery_failed -> out_for_delivery (retry)

The two machines only meet in validate_order_status_transition.
"""

from typing import NamedTuple, Protocol

from dairydrop.models.order import DeliveryStatus, OrderStatus, PaymentStatus

ORDER_STATUS_FLOW: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

DELIVERY_STATUS_FLOW: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.AWAITING_PROCESSING: frozenset({DeliveryStatus.PROCESSING}),
    DeliveryStatus.PROCESSING: frozenset({DeliveryStatus.PACKING}),
    DeliveryStatus.PACKING: frozenset({DeliveryStatus.PACKED}),
    DeliveryStatus.PACKED: frozenset({DeliveryStatus.HANDED_TO_COURIER}),
    DeliveryStatus.HANDED_TO_COURIER: frozenset(
        {DeliveryStatus.OUT_FOR_DELIVERY, DeliveryStatus.DELIVERY_FAILED}
    ),
    DeliveryStatus.OUT_FOR_DELIVERY: frozenset(
        {DeliveryStatus.DELIVERED, DeliveryStatus.DELIVERY_FAILED}
    ),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.DELIVERY_FAILED: frozenset({DeliveryStatus.OUT_FOR_DELIVERY}),
}

CUSTOMER_FREE_CANCEL_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})

LATE_CANCELLATION_WARNING = (
    "Your order is already being processed. Cancelling now may incur a "
    "cancellation fee."
)


class OrderState(Protocol):
    delivery_status: DeliveryStatus | None
    payment_status: PaymentStatus


class CancellationCheck(NamedTuple):
    allowed: bool
    warning: str | None = None
    message: str | None = None


def _label(value) -> str:
    if value is None:
        return "not set"
    return getattr(value, "value", value)


def format_order_number(order_number: int) -> str:
    """11 -> '#000011'"""
    return f"#{order_number:06d}"


def is_valid_status_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return to_status in ORDER_STATUS_FLOW.get(from_status, frozenset())


def is_valid_delivery_status_transition(
    from_status: DeliveryStatus,
    to_status: DeliveryStatus,
) -> bool:
    return to_status in DELIVERY_STATUS_FLOW.get(from_status, frozenset())


def validate_order_status_transition(order: OrderState, new_status: OrderStatus) -> str | None:
    """
    Business-rule guards applied on top of the transition table.

    Returns a rejection message, or None when the move is allowed.
    """
    if new_status == OrderStatus.COMPLETED:
        if order.delivery_status != DeliveryStatus.DELIVERED:
            return (
                f'Cannot complete order: delivery status is "{_label(order.delivery_status)}". '
                "The order must be delivered first."
            )
        if order.payment_status != PaymentStatus.PAID:
            return (
                f'Cannot complete order: payment status is "{_label(order.payment_status)}". '
                "Payment must be received before completing the order."
            )

    if new_status == OrderStatus.CANCELLED:
        if order.delivery_status == DeliveryStatus.DELIVERED:
            return (
                "Cannot cancel an order that has already been delivered. "
                "Please request a refund instead."
            )
        if order.delivery_status == DeliveryStatus.OUT_FOR_DELIVERY:
            return (
                "Cannot cancel an order that is already out for delivery. "
                "Please contact support."
            )

    return None


def can_customer_cancel_order(status: OrderStatus) -> CancellationCheck:
    """
    Customer-side cancellation policy.

    Processing orders are a soft cutoff: still cancellable, but the
    customer is warned about a possible fee.
    """
    if status in CUSTOMER_FREE_CANCEL_STATUSES:
        return CancellationCheck(allowed=True)

    if status == OrderStatus.PROCESSING:
        return CancellationCheck(allowed=True, warning=LATE_CANCELLATION_WARNING)

    return CancellationCheck(
        allowed=False,
        message=(
            f'Orders in "{_label(status)}" status cannot be cancelled. '
            "If there is a problem with your delivery, please request a refund instead."
        ),
    )


def can_admin_reverse_cancelled_order(status: OrderStatus) -> bool:
    return status == OrderStatus.CANCELLED


def get_friendly_delivery_status_error(
    current: DeliveryStatus,
    attempted: DeliveryStatus,
) -> str:
    """
    Explain why a delivery transition was refused, most specific reason first.
    """
    if current == DeliveryStatus.DELIVERED:
        return "This order has already been delivered. Its delivery status can no longer be changed."

    if current == DeliveryStatus.DELIVERY_FAILED and attempted != DeliveryStatus.OUT_FOR_DELIVERY:
        return (
            'Delivery failed for this order. Retry the delivery by moving it to '
            '"out_for_delivery".'
        )

    if current == DeliveryStatus.AWAITING_PROCESSING and attempted != DeliveryStatus.PROCESSING:
        return 'The order must move to "processing" before any other delivery update.'

    return f'Cannot change delivery status from "{_label(current)}" to "{_label(attempted)}".'
