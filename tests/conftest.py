"""Pytest fixtures for the Dairy Drop backend tests."""

import os
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

# Settings are read on first import; point them at throwaway values.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_KEY", "test-anon-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlmodel import Session, SQLModel

from dairydrop import database
from dairydrop.core.auth import ROLE_ADMIN, ROLE_CUSTOMER
from dairydrop.core.config import get_settings
from dairydrop.main import app
from dairydrop.models.order import Order
from dairydrop.models.product import Product
from dairydrop.models.user import User

API = "/api/v1"


def make_token(user_id: uuid.UUID, email: str) -> str:
    """Mint a Supabase-style access token signed with the test secret."""
    settings = get_settings()
    claims = {
        "sub": str(user_id),
        "email": email,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    return jwt.encode(claims, settings.SUPABASE_JWT_SECRET, algorithm=settings.SUPABASE_JWT_ALG)


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user.id, user.email)}"}


@pytest.fixture
def engine(tmp_path, monkeypatch):
    """File-backed SQLite database per test, swapped in for the app engine."""
    test_engine = database.build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(database, "engine", test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture(autouse=True)
def sent_emails(monkeypatch):
    """Capture outgoing emails instead of talking to SMTP."""
    outbox: list[dict] = []

    def fake_send_email(to_email, subject, text_body, html_body=None):
        outbox.append({"to": to_email, "subject": subject, "text": text_body})

    monkeypatch.setattr("dairydrop.services.notification_service.send_email", fake_send_email)
    return outbox


@pytest.fixture
def client(engine):
    def override_get_session():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[database.get_session] = override_get_session
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create_user(engine, email: str, name: str, role: str) -> User:
    with Session(engine) as s:
        user = User(id=uuid.uuid4(), email=email, name=name, role=role)
        s.add(user)
        s.commit()
        s.refresh(user)
        s.expunge(user)
        return user


@pytest.fixture
def customer(engine) -> User:
    return _create_user(engine, "ayesha@example.com", "Ayesha", ROLE_CUSTOMER)


@pytest.fixture
def other_customer(engine) -> User:
    return _create_user(engine, "bilal@example.com", "Bilal", ROLE_CUSTOMER)


@pytest.fixture
def admin(engine) -> User:
    return _create_user(engine, "admin@example.com", "Store Admin", ROLE_ADMIN)


@pytest.fixture
def customer_headers(customer):
    return auth_headers(customer)


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin)


@pytest.fixture
def products(engine) -> list[Product]:
    """
    Two dairy products:
      - milk: 100.00, 10% off => 90.00, 20 in stock
      - yogurt: 50.00, 5.00 off => 45.00, 10 in stock
    """
    with Session(engine) as s:
        milk = Product(
            name="Fresh Milk 1L",
            sku="MILK-1L",
            brand="Dairy Drop",
            price=Decimal("100.00"),
            discount_type="percentage",
            discount_value=Decimal("10.00"),
            weight_value=Decimal("1.000"),
            weight_unit="L",
            category="milk",
            stock_on_hand=20,
        )
        yogurt = Product(
            name="Plain Yogurt 500g",
            sku="YOG-500",
            brand="Dairy Drop",
            price=Decimal("50.00"),
            discount_type="fixed",
            discount_value=Decimal("5.00"),
            weight_value=Decimal("500.000"),
            weight_unit="g",
            category="yogurt",
            stock_on_hand=10,
        )
        s.add(milk)
        s.add(yogurt)
        s.commit()
        s.refresh(milk)
        s.refresh(yogurt)
        s.expunge_all()
        return [milk, yogurt]


def address_payload() -> dict:
    return {
        "full_name": "Ayesha Khan",
        "phone": "+92 300 1234567",
        "address_line1": "House 12, Street 4",
        "city": "Lahore",
        "state": "Punjab",
        "postal_code": "54000",
        "country": "Pakistan",
    }


@pytest.fixture
def place_order(client, customer_headers, products):
    """Return a helper that checks out milk x2 + yogurt x1 (or custom items)."""

    def _place(items=None, headers=None):
        if items is None:
            items = [
                {"product_id": str(products[0].id), "quantity": 2},
                {"product_id": str(products[1].id), "quantity": 1},
            ]
        response = client.post(
            f"{API}/orders/checkout",
            json={"delivery_address": address_payload(), "items": items},
            headers=headers or customer_headers,
        )
        assert response.status_code == 201, response.text
        return response.json()

    return _place


FULFILMENT_STEPS = [
    "processing",
    "packing",
    "packed",
    "handed_to_courier",
    "out_for_delivery",
    "delivered",
]


@pytest.fixture
def admin_actions(client, admin_headers):
    """Small wrappers around the admin order endpoints."""

    class AdminActions:
        def set_status(self, order_id, new_status, **extra):
            return client.patch(
                f"{API}/orders/{order_id}/status",
                json={"status": new_status, **extra},
                headers=admin_headers,
            )

        def set_delivery(self, order_id, new_status, **extra):
            return client.patch(
                f"{API}/orders/{order_id}/delivery-status",
                json={"status": new_status, **extra},
                headers=admin_headers,
            )

        def mark_paid(self, order_id, **extra):
            return client.patch(
                f"{API}/orders/{order_id}/payment",
                json={"status": "paid", **extra},
                headers=admin_headers,
            )

        def deliver(self, order_id):
            """confirm -> processing -> every delivery step up to delivered."""
            assert self.set_status(order_id, "confirmed").status_code == 200
            assert self.set_status(order_id, "processing").status_code == 200
            for step in FULFILMENT_STEPS:
                response = self.set_delivery(order_id, step)
                assert response.status_code == 200, response.text

        def complete(self, order_id):
            """Deliver, collect payment and complete."""
            self.deliver(order_id)
            assert self.mark_paid(order_id).status_code == 200
            response = self.set_status(order_id, "completed")
            assert response.status_code == 200, response.text
            return response.json()

    return AdminActions()


@pytest.fixture
def completed_order(place_order, admin_actions):
    order = place_order()
    admin_actions.complete(order["id"])
    return order


def backdate_delivery(engine, order_id: str, days: float) -> None:
    """Move delivered_at `days` into the past."""
    with Session(engine) as s:
        order = s.get(Order, uuid.UUID(order_id))
        order.delivered_at = datetime.now(timezone.utc) - timedelta(days=days)
        s.add(order)
        s.commit()
