"""Tests for refund eligibility, capacity and order refund status rules."""

import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from dairydrop.models.order import DeliveryStatus, OrderRefundStatus, OrderStatus
from dairydrop.models.refund import RefundReason, RefundStatus
from dairydrop.services.refund_rules import (
    can_customer_request_refund,
    check_refund_capacity,
    compute_order_refund_status,
    is_valid_refund_reason,
    is_valid_refund_status_transition,
    refund_window_end,
    sum_refunded_quantities,
)

DELIVERED_AT = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


def line_item(quantity):
    return SimpleNamespace(id=uuid.uuid4(), quantity=quantity)


def refund(status, items=None):
    refunded_items = None
    if items is not None:
        refunded_items = [
            {"order_line_item_id": str(li.id), "quantity": qty} for li, qty in items
        ]
    return SimpleNamespace(status=status, refunded_items=refunded_items)


def check(
    order_status=OrderStatus.COMPLETED,
    delivery_status=DeliveryStatus.DELIVERED,
    delivered_at=DELIVERED_AT,
    refunds=(),
    items=(),
    now=None,
):
    return can_customer_request_refund(
        order_status,
        delivery_status,
        delivered_at,
        list(refunds),
        list(items),
        now=now or DELIVERED_AT + timedelta(hours=1),
    )


class TestRefundStatusTable:
    @pytest.mark.parametrize(
        "from_status, to_status, allowed",
        [
            (RefundStatus.PENDING, RefundStatus.APPROVED, True),
            (RefundStatus.PENDING, RefundStatus.REJECTED, True),
            (RefundStatus.APPROVED, RefundStatus.COMPLETED, True),
            (RefundStatus.APPROVED, RefundStatus.FAILED, True),
            (RefundStatus.FAILED, RefundStatus.APPROVED, True),
            (RefundStatus.PENDING, RefundStatus.COMPLETED, False),
            (RefundStatus.REJECTED, RefundStatus.APPROVED, False),
            (RefundStatus.COMPLETED, RefundStatus.FAILED, False),
        ],
    )
    def test_transitions(self, from_status, to_status, allowed):
        assert is_valid_refund_status_transition(from_status, to_status) is allowed


class TestEligibility:
    def test_cancelled(self):
        result = check(order_status=OrderStatus.CANCELLED)
        assert not result.eligible
        assert result.message == "Cannot request a refund for a cancelled order."

    @pytest.mark.parametrize(
        "status", [OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING]
    )
    def test_not_yet_delivered(self, status):
        result = check(order_status=status)
        assert not result.eligible
        assert result.message == "Order has not been delivered yet. Please cancel the order instead."

    def test_delivered_within_window(self):
        result = check()
        assert result.eligible
        assert result.allowed_reasons == [
            RefundReason.SPOILED,
            RefundReason.DAMAGED,
            RefundReason.WRONG_ITEM,
            RefundReason.MISSING_ITEMS,
        ]
        assert result.already_refunded_quantities == {}

    def test_window_boundary(self):
        end = refund_window_end(DELIVERED_AT)
        assert end == DELIVERED_AT + timedelta(days=3)

        assert check(now=end).eligible
        assert check(now=end - timedelta(seconds=1)).eligible

        closed = check(now=end + timedelta(seconds=1))
        assert not closed.eligible
        assert closed.message == (
            "Refund window closed on Mar 13, 2024. Dairy products must be "
            "reported within 3 days of delivery."
        )

    def test_naive_delivered_at_is_treated_as_utc(self):
        naive = DELIVERED_AT.replace(tzinfo=None)
        assert check(delivered_at=naive, now=DELIVERED_AT + timedelta(days=2)).eligible

    def test_custom_window(self):
        result = can_customer_request_refund(
            OrderStatus.COMPLETED,
            DeliveryStatus.DELIVERED,
            DELIVERED_AT,
            [],
            [],
            now=DELIVERED_AT + timedelta(days=5),
            window_days=7,
        )
        assert result.eligible

    def test_missing_delivery_date(self):
        result = check(delivered_at=None)
        assert not result.eligible
        assert result.message == "Delivery date is missing for this order. Please contact support."

    def test_failed_delivery_allows_not_delivered_only(self):
        result = check(delivery_status=DeliveryStatus.DELIVERY_FAILED, delivered_at=None)
        assert result.eligible
        assert result.allowed_reasons == [RefundReason.NOT_DELIVERED]

    def test_in_transit_must_wait(self):
        result = check(delivery_status=DeliveryStatus.OUT_FOR_DELIVERY)
        assert not result.eligible
        assert result.message == (
            "Refund is only available after delivery. Please wait for the delivery outcome."
        )

    def test_active_full_refund_blocks(self):
        result = check(refunds=[refund(RefundStatus.PENDING)])
        assert not result.eligible
        assert result.message == "A full refund already exists for this order."

    @pytest.mark.parametrize("status", [RefundStatus.REJECTED, RefundStatus.FAILED])
    def test_inactive_refunds_ignored(self, status):
        assert check(refunds=[refund(status)]).eligible

    def test_fully_covered_by_partials(self):
        milk, yogurt = line_item(2), line_item(1)
        refunds = [
            refund(RefundStatus.APPROVED, [(milk, 1)]),
            refund(RefundStatus.PENDING, [(milk, 1), (yogurt, 1)]),
        ]
        result = check(refunds=refunds, items=[milk, yogurt])
        assert not result.eligible
        assert result.message == "All items in this order have already been fully refunded."

    def test_partially_covered_reports_quantities(self):
        milk, yogurt = line_item(2), line_item(1)
        result = check(refunds=[refund(RefundStatus.COMPLETED, [(milk, 1)])], items=[milk, yogurt])
        assert result.eligible
        assert result.already_refunded_quantities == {str(milk.id): 1}


class TestReasons:
    def test_valid(self):
        assert is_valid_refund_reason(DeliveryStatus.DELIVERED, RefundReason.SPOILED) is None
        assert is_valid_refund_reason(DeliveryStatus.DELIVERY_FAILED, RefundReason.NOT_DELIVERED) is None

    def test_mismatch(self):
        message = is_valid_refund_reason(DeliveryStatus.DELIVERY_FAILED, RefundReason.DAMAGED)
        assert message == (
            'Reason "damaged" is not valid for delivery status "delivery_failed". '
            "Allowed: not_delivered."
        )

    def test_no_reasons_for_other_statuses(self):
        message = is_valid_refund_reason(DeliveryStatus.PACKED, RefundReason.SPOILED)
        assert message == 'Refund reasons are not available for delivery status "packed".'


class TestCapacity:
    def test_within_capacity(self):
        milk = line_item(2)
        assert check_refund_capacity([(milk.id, 1)], [milk], {str(milk.id): 1}) is None

    def test_over_capacity_counts_items(self):
        milk, yogurt = line_item(2), line_item(1)
        message = check_refund_capacity(
            [(milk.id, 2), (yogurt.id, 2)],
            [milk, yogurt],
            {str(milk.id): 1},
        )
        assert message == "2 item(s) exceed the available refundable quantity."

    def test_repeated_ids_are_summed(self):
        milk = line_item(2)
        message = check_refund_capacity([(milk.id, 1), (milk.id, 2)], [milk], {})
        assert message == "1 item(s) exceed the available refundable quantity."

    def test_foreign_line_item(self):
        milk = line_item(2)
        message = check_refund_capacity([(uuid.uuid4(), 1)], [milk], {})
        assert message == "1 item(s) exceed the available refundable quantity."


class TestOrderRefundStatus:
    def test_none_without_settled_refunds(self):
        milk = line_item(2)
        refunds = [refund(RefundStatus.PENDING), refund(RefundStatus.REJECTED)]
        assert compute_order_refund_status(refunds, [milk]) == OrderRefundStatus.NONE

    def test_full_refund(self):
        milk = line_item(2)
        assert compute_order_refund_status([refund(RefundStatus.APPROVED)], [milk]) == OrderRefundStatus.FULL

    def test_partial_then_full(self):
        milk, yogurt = line_item(2), line_item(1)
        first = refund(RefundStatus.APPROVED, [(milk, 1)])
        assert compute_order_refund_status([first], [milk, yogurt]) == OrderRefundStatus.PARTIAL

        second = refund(RefundStatus.COMPLETED, [(milk, 1), (yogurt, 1)])
        assert compute_order_refund_status([first, second], [milk, yogurt]) == OrderRefundStatus.FULL

    def test_pending_partials_do_not_count(self):
        milk = line_item(1)
        refunds = [refund(RefundStatus.PENDING, [(milk, 1)])]
        assert compute_order_refund_status(refunds, [milk]) == OrderRefundStatus.NONE


def test_sum_refunded_quantities():
    milk, yogurt = line_item(3), line_item(1)
    totals = sum_refunded_quantities(
        [
            refund(RefundStatus.APPROVED, [(milk, 1)]),
            refund(RefundStatus.PENDING, [(milk, 2), (yogurt, 1)]),
            refund(RefundStatus.APPROVED),
        ]
    )
    assert totals == {str(milk.id): 3, str(yogurt.id): 1}
