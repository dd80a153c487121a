# dairydrop/services/refund_rules.py

"""
Refund lifecycle, eligibility and quantity reconciliation.

Refund status:

    pending  -> approved, rejected
    approved -> completed, failed
    failed   -> approved (retry after a payout failure)
    rejected, completed -> (terminal)

A refund with no refunded_items covers the whole order. "Active" refunds
(pending / approved / completed) count against each line item's
refundable quantity; rejected and failed ones do not.
"""

from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from dairydrop.models.order import DeliveryStatus, OrderRefundStatus, OrderStatus
from dairydrop.models.refund import RefundReason, RefundStatus
from dairydrop.schemas.refund import RefundEligibility

REFUND_WINDOW_DAYS = 3

REFUND_STATUS_FLOW: dict[RefundStatus, frozenset[RefundStatus]] = {
    RefundStatus.PENDING: frozenset({RefundStatus.APPROVED, RefundStatus.REJECTED}),
    RefundStatus.APPROVED: frozenset({RefundStatus.COMPLETED, RefundStatus.FAILED}),
    RefundStatus.REJECTED: frozenset(),
    RefundStatus.COMPLETED: frozenset(),
    RefundStatus.FAILED: frozenset({RefundStatus.APPROVED}),
}

REASONS_BY_DELIVERY_STATUS: dict[DeliveryStatus, list[RefundReason]] = {
    DeliveryStatus.DELIVERED: [
        RefundReason.SPOILED,
        RefundReason.DAMAGED,
        RefundReason.WRONG_ITEM,
        RefundReason.MISSING_ITEMS,
    ],
    DeliveryStatus.DELIVERY_FAILED: [
        RefundReason.NOT_DELIVERED,
    ],
}

ACTIVE_REFUND_STATUSES = frozenset(
    {RefundStatus.PENDING, RefundStatus.APPROVED, RefundStatus.COMPLETED}
)

SETTLED_REFUND_STATUSES = frozenset({RefundStatus.APPROVED, RefundStatus.COMPLETED})

NOT_YET_DELIVERED_STATUSES = frozenset(
    {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING}
)


class RefundState(Protocol):
    status: RefundStatus
    refunded_items: list[Mapping[str, Any]] | None


class LineItemState(Protocol):
    id: Any
    quantity: int


def _as_utc(value: datetime) -> datetime:
    # SQLite hands datetimes back without tzinfo; they are stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _format_day(value: datetime) -> str:
    return f"{value:%b} {value.day}, {value.year}"


def is_valid_refund_status_transition(from_status: RefundStatus, to_status: RefundStatus) -> bool:
    return to_status in REFUND_STATUS_FLOW.get(from_status, frozenset())


def refund_window_end(delivered_at: datetime, window_days: int = REFUND_WINDOW_DAYS) -> datetime:
    return _as_utc(delivered_at) + timedelta(days=window_days)


def is_full_refund(refund: RefundState) -> bool:
    return not refund.refunded_items


def sum_refunded_quantities(refunds: Iterable[RefundState]) -> dict[str, int]:
    """
    Total refunded quantity per order line item id across `refunds`.
    """
    totals: dict[str, int] = {}
    for refund in refunds:
        for item in refund.refunded_items or []:
            key = str(item["order_line_item_id"])
            totals[key] = totals.get(key, 0) + int(item["quantity"])
    return totals


def _all_items_covered(
    refunded: Mapping[str, int],
    line_items: Iterable[LineItemState],
) -> bool:
    return all(refunded.get(str(li.id), 0) >= li.quantity for li in line_items)


def can_customer_request_refund(
    order_status: OrderStatus,
    delivery_status: DeliveryStatus | None,
    delivered_at: datetime | None,
    existing_refunds: Iterable[RefundState],
    order_line_items: Iterable[LineItemState],
    *,
    now: datetime | None = None,
    window_days: int = REFUND_WINDOW_DAYS,
) -> RefundEligibility:
    """
    Decide whether the customer may open a new refund on this order.

    Rules run in order and the first failure wins:
      1. cancelled orders are never refundable
      2. undelivered orders should be cancelled instead
      3. anything but completed is refused
      4. an active full refund, or active partial refunds covering every
         item, leave nothing to refund
      5. delivery_failed => only "not_delivered"
      6. delivered => quality reasons, within the refund window
      7. any other delivery status => wait for the outcome
    """
    if order_status == OrderStatus.CANCELLED:
        return RefundEligibility(
            eligible=False,
            message="Cannot request a refund for a cancelled order.",
        )

    if order_status in NOT_YET_DELIVERED_STATUSES:
        return RefundEligibility(
            eligible=False,
            message="Order has not been delivered yet. Please cancel the order instead.",
        )

    if order_status != OrderStatus.COMPLETED:
        return RefundEligibility(
            eligible=False,
            message=f'Refund is not available for orders in "{getattr(order_status, "value", order_status)}" status.',
        )

    line_items = list(order_line_items)
    active_refunds = [r for r in existing_refunds if r.status in ACTIVE_REFUND_STATUSES]
    refunded_quantities = sum_refunded_quantities(active_refunds)

    if active_refunds:
        if any(is_full_refund(r) for r in active_refunds):
            return RefundEligibility(
                eligible=False,
                message="A full refund already exists for this order.",
            )

        if _all_items_covered(refunded_quantities, line_items):
            return RefundEligibility(
                eligible=False,
                message="All items in this order have already been fully refunded.",
            )

    if delivery_status == DeliveryStatus.DELIVERY_FAILED:
        return RefundEligibility(
            eligible=True,
            allowed_reasons=REASONS_BY_DELIVERY_STATUS[DeliveryStatus.DELIVERY_FAILED],
            already_refunded_quantities=refunded_quantities,
        )

    if delivery_status == DeliveryStatus.DELIVERED:
        if delivered_at is None:
            return RefundEligibility(
                eligible=False,
                message="Delivery date is missing for this order. Please contact support.",
            )

        now = _as_utc(now or datetime.now(timezone.utc))
        window_end = refund_window_end(delivered_at, window_days)
        if now > window_end:
            return RefundEligibility(
                eligible=False,
                message=(
                    f"Refund window closed on {_format_day(window_end)}. Dairy products "
                    f"must be reported within {window_days} days of delivery."
                ),
            )

        return RefundEligibility(
            eligible=True,
            allowed_reasons=REASONS_BY_DELIVERY_STATUS[DeliveryStatus.DELIVERED],
            already_refunded_quantities=refunded_quantities,
        )

    return RefundEligibility(
        eligible=False,
        message="Refund is only available after delivery. Please wait for the delivery outcome.",
    )


def is_valid_refund_reason(delivery_status: DeliveryStatus, reason: RefundReason) -> str | None:
    """
    Re-check the stated reason against the order's delivery outcome.
    """
    allowed = REASONS_BY_DELIVERY_STATUS.get(delivery_status)
    status_label = getattr(delivery_status, "value", delivery_status)
    if not allowed:
        return f'Refund reasons are not available for delivery status "{status_label}".'

    if reason not in allowed:
        allowed_labels = ", ".join(r.value for r in allowed)
        return (
            f'Reason "{getattr(reason, "value", reason)}" is not valid for delivery status '
            f'"{status_label}". Allowed: {allowed_labels}.'
        )

    return None


def check_refund_capacity(
    requested: Iterable[tuple[Any, int]],
    line_items: Iterable[LineItemState],
    already_refunded: Mapping[str, int],
) -> str | None:
    """
    Reject requests that would refund more than was ordered.

    `requested` is (order_line_item_id, quantity) pairs; repeated ids are
    summed. Ids that do not belong to the order count as over capacity.
    """
    ordered = {str(li.id): li.quantity for li in line_items}

    wanted: dict[str, int] = {}
    for line_item_id, quantity in requested:
        key = str(line_item_id)
        wanted[key] = wanted.get(key, 0) + quantity

    over_capacity = [
        key
        for key, quantity in wanted.items()
        if key not in ordered or already_refunded.get(key, 0) + quantity > ordered[key]
    ]
    if over_capacity:
        return f"{len(over_capacity)} item(s) exceed the available refundable quantity."
    return None


def compute_order_refund_status(
    refunds: Iterable[RefundState],
    order_line_items: Iterable[LineItemState],
) -> OrderRefundStatus:
    """
    Derive the order-level refund status from approved/completed refunds.

    Recomputed from scratch on every refund status change.
    """
    settled = [r for r in refunds if r.status in SETTLED_REFUND_STATUSES]
    if not settled:
        return OrderRefundStatus.NONE

    if any(is_full_refund(r) for r in settled):
        return OrderRefundStatus.FULL

    if _all_items_covered(sum_refunded_quantities(settled), order_line_items):
        return OrderRefundStatus.FULL

    return OrderRefundStatus.PARTIAL
