"""Tests for the order, delivery and payment endpoints."""

import uuid
from decimal import Decimal

import pytest
from sqlmodel import Session

from conftest import API, FULFILMENT_STEPS, address_payload, auth_headers
from dairydrop.models.order import Order, OrderStatus
from dairydrop.models.product import Product
from dairydrop.repositories.order_repo import OrderRepository


class TestCheckout:
    def test_prices_totals_and_snapshot(self, place_order, engine, products):
        order = place_order()

        assert order["status"] == "pending"
        assert order["delivery_status"] is None
        assert order["payment_method"] == "cod"
        assert order["payment_status"] == "pending"
        assert order["refund_status"] == "none"
        assert order["order_number"] == 1
        assert order["display_number"] == "#000001"

        assert Decimal(order["subtotal"]) == Decimal("225.00")
        assert Decimal(order["tax_amount"]) == Decimal("11.25")
        assert Decimal(order["delivery_charge"]) == Decimal("0.00")
        assert Decimal(order["total_amount"]) == Decimal("236.25")

        items = {item["product_id"]: item for item in order["items"]}
        milk = items[str(products[0].id)]
        assert Decimal(milk["unit_price"]) == Decimal("90.00")
        assert Decimal(milk["total_price"]) == Decimal("180.00")
        assert milk["product_snapshot"]["sku"] == "MILK-1L"
        assert milk["product_snapshot"]["discount"] == {"type": "percentage", "value": "10.00"}
        assert milk["product_snapshot"]["weight"]["unit"] == "L"

        with Session(engine) as s:
            assert s.get(Product, products[0].id).stock_on_hand == 18
            assert s.get(Product, products[1].id).stock_on_hand == 9

    def test_order_numbers_are_sequential(self, place_order):
        first = place_order()
        second = place_order()
        assert second["order_number"] == first["order_number"] + 1
        assert second["display_number"] == "#000002"

    def test_insufficient_stock_rejected(self, client, customer_headers, products):
        response = client.post(
            f"{API}/orders/checkout",
            json={
                "delivery_address": address_payload(),
                "items": [{"product_id": str(products[1].id), "quantity": 11}],
            },
            headers=customer_headers,
        )
        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["message"] == "Order validation failed"
        assert "Insufficient stock" in detail["items"][0]["reason"]

    def test_empty_items_rejected(self, client, customer_headers, products):
        response = client.post(
            f"{API}/orders/checkout",
            json={"delivery_address": address_payload(), "items": []},
            headers=customer_headers,
        )
        assert response.status_code == 422

    def test_admin_cannot_checkout(self, client, admin_headers, products):
        response = client.post(
            f"{API}/orders/checkout",
            json={
                "delivery_address": address_payload(),
                "items": [{"product_id": str(products[0].id), "quantity": 1}],
            },
            headers=admin_headers,
        )
        assert response.status_code == 403

    def test_missing_token_is_401(self, client):
        response = client.get(f"{API}/orders/me")
        assert response.status_code == 401


class TestOrderNumberCollisions:
    def test_retries_after_collision(self, place_order, monkeypatch):
        place_order()

        real_max = OrderRepository.max_order_number
        calls = {"n": 0}

        def stale_then_real(self, session):
            calls["n"] += 1
            if calls["n"] == 1:
                return 0  # collides with order #1
            return real_max(self, session)

        monkeypatch.setattr(OrderRepository, "max_order_number", stale_then_real)

        order = place_order()
        assert order["order_number"] == 2
        assert calls["n"] == 2

    def test_gives_up_with_409(self, place_order, client, customer_headers, products, engine, monkeypatch):
        place_order()
        monkeypatch.setattr(OrderRepository, "max_order_number", lambda self, session: 0)

        response = client.post(
            f"{API}/orders/checkout",
            json={
                "delivery_address": address_payload(),
                "items": [{"product_id": str(products[0].id), "quantity": 1}],
            },
            headers=customer_headers,
        )
        assert response.status_code == 409
        assert response.json()["detail"] == "Could not allocate an order number. Please try again."

        # No stock was taken by the failed attempts
        with Session(engine) as s:
            assert s.get(Product, products[0].id).stock_on_hand == 18


class TestLifecycle:
    def test_full_happy_path(self, place_order, admin_actions, client, customer_headers):
        order = place_order()
        order_id = order["id"]

        confirmed = admin_actions.set_status(order_id, "confirmed")
        assert confirmed.status_code == 200
        assert confirmed.json()["status"] == "confirmed"
        assert confirmed.json()["delivery_status"] == "awaiting_processing"

        assert admin_actions.set_status(order_id, "processing").json()["status"] == "processing"

        for step in FULFILMENT_STEPS:
            response = admin_actions.set_delivery(order_id, step, location="Lahore hub")
            assert response.status_code == 200, response.text
            assert response.json()["delivery_status"] == step

        paid = admin_actions.mark_paid(order_id, collected_by="Rider Imran")
        assert paid.status_code == 200
        assert paid.json()["payment_status"] == "paid"
        assert Decimal(paid.json()["amount_paid"]) == Decimal("236.25")
        assert paid.json()["paid_at"] is not None

        completed = admin_actions.set_status(order_id, "completed")
        assert completed.status_code == 200
        assert completed.json()["status"] == "completed"

        detail = client.get(f"{API}/orders/me/{order_id}", headers=customer_headers).json()
        assert detail["delivered_at"] is not None
        statuses = [h["status"] for h in detail["delivery_history"]]
        assert statuses == ["awaiting_processing", *FULFILMENT_STEPS]

    def test_invalid_order_transition_rejected(self, place_order, admin_actions):
        order = place_order()
        response = admin_actions.set_status(order["id"], "processing")
        assert response.status_code == 400
        assert response.json()["detail"] == 'Cannot change order status from "pending" to "processing".'

    def test_complete_requires_delivery(self, place_order, admin_actions):
        order = place_order()
        admin_actions.set_status(order["id"], "confirmed")
        admin_actions.set_status(order["id"], "processing")
        admin_actions.set_delivery(order["id"], "processing")
        admin_actions.set_delivery(order["id"], "packing")

        response = admin_actions.set_status(order["id"], "completed")
        assert response.status_code == 400
        assert response.json()["detail"] == (
            'Cannot complete order: delivery status is "packing". '
            "The order must be delivered first."
        )

    def test_complete_requires_payment(self, place_order, admin_actions):
        order = place_order()
        admin_actions.deliver(order["id"])

        response = admin_actions.set_status(order["id"], "completed")
        assert response.status_code == 400
        assert response.json()["detail"] == (
            'Cannot complete order: payment status is "pending". '
            "Payment must be received before completing the order."
        )

    def test_payment_recorded_once(self, place_order, admin_actions):
        order = place_order()
        assert admin_actions.mark_paid(order["id"], amount_paid="200.00").status_code == 200

        again = admin_actions.mark_paid(order["id"])
        assert again.status_code == 400
        assert again.json()["detail"] == "Order is already paid."

    def test_version_increments_on_each_change(self, place_order, admin_actions):
        order = place_order()
        assert order["version"] == 1
        confirmed = admin_actions.set_status(order["id"], "confirmed").json()
        assert confirmed["version"] == 2


class TestDelivery:
    def test_requires_confirmation(self, place_order, admin_actions):
        order = place_order()
        response = admin_actions.set_delivery(order["id"], "processing")
        assert response.status_code == 400
        assert response.json()["detail"] == "Order must be confirmed before delivery can be updated."

    def test_cannot_skip_steps(self, place_order, admin_actions):
        order = place_order()
        admin_actions.set_status(order["id"], "confirmed")

        response = admin_actions.set_delivery(order["id"], "packed")
        assert response.status_code == 400
        assert response.json()["detail"] == (
            'The order must move to "processing" before any other delivery update.'
        )

    def test_failed_delivery_retry(self, place_order, admin_actions):
        order = place_order()
        order_id = order["id"]
        admin_actions.set_status(order_id, "confirmed")
        for step in ["processing", "packing", "packed", "handed_to_courier", "out_for_delivery"]:
            assert admin_actions.set_delivery(order_id, step).status_code == 200

        failed = admin_actions.set_delivery(order_id, "delivery_failed", notes="Customer not home")
        assert failed.status_code == 200
        assert failed.json()["delivery_status"] == "delivery_failed"

        straight_to_delivered = admin_actions.set_delivery(order_id, "delivered")
        assert straight_to_delivered.status_code == 400
        assert "out_for_delivery" in straight_to_delivered.json()["detail"]

        assert admin_actions.set_delivery(order_id, "out_for_delivery").status_code == 200
        delivered = admin_actions.set_delivery(order_id, "delivered")
        assert delivered.status_code == 200
        assert delivered.json()["delivered_at"] is not None

    def test_delivered_is_terminal(self, place_order, admin_actions):
        order = place_order()
        admin_actions.deliver(order["id"])

        response = admin_actions.set_delivery(order["id"], "delivery_failed")
        assert response.status_code == 400
        assert response.json()["detail"] == (
            "This order has already been delivered. Its delivery status can no longer be changed."
        )

    def test_cancelled_order_rejects_delivery_updates(self, place_order, admin_actions, client, admin_headers):
        order = place_order()
        admin_actions.set_status(order["id"], "confirmed")
        client.post(f"{API}/orders/{order['id']}/cancel", json={}, headers=admin_headers)

        response = admin_actions.set_delivery(order["id"], "processing")
        assert response.status_code == 400
        assert response.json()["detail"] == "Cannot update delivery for a cancelled order."

    def test_tracking_timeline(self, place_order, admin_actions, client, customer_headers):
        order = place_order()
        admin_actions.set_status(order["id"], "confirmed")
        admin_actions.set_delivery(order["id"], "processing", location="Warehouse")
        admin_actions.set_delivery(
            order["id"],
            "packing",
            location="Packing bay 2",
            delivery_person_name="Imran",
            delivery_person_phone="03001234567",
        )

        response = client.get(f"{API}/orders/me/{order['id']}/tracking", headers=customer_headers)
        assert response.status_code == 200
        tracking = response.json()
        assert tracking["order_number"] == "#000001"
        assert tracking["delivery_status"] == "packing"
        assert tracking["current_location"] == "Packing bay 2"
        assert [t["status"] for t in tracking["timeline"]] == [
            "awaiting_processing",
            "processing",
            "packing",
        ]

    def test_admin_delivery_history(self, place_order, admin_actions, client, admin_headers, admin):
        order = place_order()
        admin_actions.set_status(order["id"], "confirmed")

        response = client.get(f"{API}/orders/{order['id']}/delivery-history", headers=admin_headers)
        assert response.status_code == 200
        history = response.json()
        assert len(history) == 1
        assert history[0]["updated_by"] == str(admin.id)


class TestCustomerCancellation:
    def cancel(self, client, headers, order_id, reason="Changed my mind"):
        return client.post(
            f"{API}/orders/me/{order_id}/cancel",
            json={"reason": reason},
            headers=headers,
        )

    def test_pending_cancels_without_warning(self, place_order, client, customer_headers):
        order = place_order()
        response = self.cancel(client, customer_headers, order["id"])
        assert response.status_code == 200
        body = response.json()
        assert body["warning"] is None
        assert body["order"]["status"] == "cancelled"
        assert body["order"]["cancelled_by"] == "customer"
        assert body["order"]["cancellation_reason"] == "Changed my mind"

    def test_processing_cancels_with_warning(self, place_order, admin_actions, client, customer_headers):
        order = place_order()
        admin_actions.set_status(order["id"], "confirmed")
        admin_actions.set_status(order["id"], "processing")

        response = self.cancel(client, customer_headers, order["id"])
        assert response.status_code == 200
        assert "cancellation fee" in response.json()["warning"]

    def test_out_for_delivery_cannot_be_cancelled(self, place_order, admin_actions, client, customer_headers):
        order = place_order()
        admin_actions.set_status(order["id"], "confirmed")
        admin_actions.set_status(order["id"], "processing")
        for step in ["processing", "packing", "packed", "handed_to_courier", "out_for_delivery"]:
            admin_actions.set_delivery(order["id"], step)

        response = self.cancel(client, customer_headers, order["id"])
        assert response.status_code == 400
        assert response.json()["detail"] == (
            "Cannot cancel an order that is already out for delivery. Please contact support."
        )

    def test_completed_cannot_be_cancelled(self, place_order, admin_actions, client, customer_headers):
        order = place_order()
        admin_actions.complete(order["id"])

        response = self.cancel(client, customer_headers, order["id"])
        assert response.status_code == 400
        assert 'Orders in "completed" status cannot be cancelled.' in response.json()["detail"]

    def test_short_reason_rejected(self, place_order, client, customer_headers):
        order = place_order()
        response = self.cancel(client, customer_headers, order["id"], reason="no")
        assert response.status_code == 422

    def test_other_customers_order_is_404(self, place_order, client, other_customer):
        order = place_order()
        response = self.cancel(client, auth_headers(other_customer), order["id"])
        assert response.status_code == 404


class TestAdminCancelAndReopen:
    def test_cancel_then_reopen(self, place_order, admin_actions, client, admin_headers):
        order = place_order()
        admin_actions.set_status(order["id"], "confirmed")

        cancelled = client.post(
            f"{API}/orders/{order['id']}/cancel",
            json={"reason": "Out of stock at warehouse"},
            headers=admin_headers,
        )
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"
        assert cancelled.json()["cancelled_by"] == "admin"

        again = client.post(f"{API}/orders/{order['id']}/cancel", json={}, headers=admin_headers)
        assert again.status_code == 400
        assert again.json()["detail"] == "Order is already cancelled."

        reopened = client.post(
            f"{API}/orders/{order['id']}/reopen",
            json={"notes": "Stock arrived"},
            headers=admin_headers,
        )
        assert reopened.status_code == 200
        body = reopened.json()
        assert body["status"] == "pending"
        assert body["delivery_status"] is None
        assert body["cancelled_by"] is None
        assert body["cancellation_reason"] is None

        # Normal flow resumes
        assert admin_actions.set_status(order["id"], "confirmed").status_code == 200

    def test_reopen_requires_cancelled(self, place_order, client, admin_headers):
        order = place_order()
        response = client.post(f"{API}/orders/{order['id']}/reopen", json={}, headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["detail"] == "Only cancelled orders can be reopened."

    def test_delivered_order_cannot_be_cancelled(self, place_order, admin_actions, client, admin_headers):
        order = place_order()
        admin_actions.deliver(order["id"])

        response = client.post(f"{API}/orders/{order['id']}/cancel", json={}, headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["detail"] == (
            "Cannot cancel an order that has already been delivered. Please request a refund instead."
        )


class TestListing:
    def test_customer_sees_only_own_orders(self, place_order, client, customer_headers, other_customer):
        place_order()
        place_order(headers=auth_headers(other_customer))

        mine = client.get(f"{API}/orders/me", headers=customer_headers).json()
        assert len(mine) == 1

    def test_admin_filters_by_status(self, place_order, admin_actions, client, admin_headers):
        first = place_order()
        place_order()
        admin_actions.set_status(first["id"], "confirmed")

        response = client.get(f"{API}/orders", params={"status": "confirmed"}, headers=admin_headers)
        assert response.status_code == 200
        assert [o["id"] for o in response.json()] == [first["id"]]

    def test_customer_cannot_use_admin_routes(self, place_order, client, customer_headers):
        order = place_order()
        response = client.patch(
            f"{API}/orders/{order['id']}/status",
            json={"status": "confirmed"},
            headers=customer_headers,
        )
        assert response.status_code == 403

    def test_unknown_order_is_404(self, client, admin_headers):
        response = client.get(f"{API}/orders/{uuid.uuid4()}", headers=admin_headers)
        assert response.status_code == 404


class TestOptimisticLocking:
    def test_stale_version_loses(self, place_order, engine):
        order = place_order()
        order_id = uuid.UUID(order["id"])
        repo = OrderRepository()

        with Session(engine) as first, Session(engine) as second:
            seen_by_first = first.get(Order, order_id)
            seen_by_second = second.get(Order, order_id)
            assert seen_by_first.version == seen_by_second.version == 1

            assert repo.apply_changes(second, seen_by_second, status=OrderStatus.CONFIRMED)
            second.commit()

            assert not repo.apply_changes(first, seen_by_first, status=OrderStatus.CANCELLED)
            first.rollback()

        with Session(engine) as s:
            stored = s.get(Order, order_id)
            assert stored.status == OrderStatus.CONFIRMED
            assert stored.version == 2

    def test_stale_write_surfaces_as_409(self, place_order, admin_actions, monkeypatch):
        order = place_order()
        monkeypatch.setattr(OrderRepository, "apply_changes", lambda self, session, o, **changes: False)

        response = admin_actions.set_status(order["id"], "confirmed")
        assert response.status_code == 409
        assert response.json()["detail"] == (
            "This order was updated by someone else. Reload it and try again."
        )


@pytest.mark.parametrize(
    "amount, expected",
    [(None, Decimal("236.25")), ("200.00", Decimal("200.00"))],
)
def test_amount_paid_defaults_to_total(place_order, admin_actions, amount, expected):
    order = place_order()
    extra = {} if amount is None else {"amount_paid": amount}
    response = admin_actions.mark_paid(order["id"], **extra)
    assert response.status_code == 200
    assert Decimal(response.json()["amount_paid"]) == expected
