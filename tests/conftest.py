import hashlib
import hmac
import json
import os
import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import app.models  # noqa: F401
from app.core.config import settings
from app.core.deps import get_db
from app.core.id_utils import generate_shortuuid
from app.core.security import create_access_token, hash_password
from app.db.base import Base
from app.main import app
from app.models.order import Order
from app.models.user import User
from app.routers.agent import code_attempt_limiter
from app.routers.auth import login_rate_limiter


@pytest.fixture()
def test_context():
    original_secret = settings.secret_key
    settings.secret_key = "test-secret-key"

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
    settings.secret_key = original_secret
    login_rate_limiter.clear()
    code_attempt_limiter.clear()


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def signed_webhook(payload: dict) -> tuple[dict[str, str], str]:
    body = json.dumps(payload)
    signature = hmac.new(
        settings.payment_webhook_secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    headers = {
        "Content-Type": "application/json",
        "X-CampusDrop-Signature": f"sha256={signature}",
    }
    return headers, body


class Marketplace:
    """Drives the API through the common setup steps of a fulfilment test."""

    def __init__(self, client, session_local):
        self.client = client
        self.session_local = session_local

    def register(self, email: str, *, store_name: str | None = None) -> str:
        payload = {"email": email, "full_name": email.split("@")[0].title(), "password": "password123"}
        if store_name:
            payload["store_name"] = store_name
        res = self.client.post("/auth/register", json=payload)
        assert res.status_code == 200, res.text
        return res.json()["access_token"]

    def create_admin(self, email: str = "admin@example.com") -> str:
        db = self.session_local()
        try:
            user = User(
                id=generate_shortuuid(),
                email=email,
                full_name="Admin",
                hashed_password=hash_password("password123"),
                role="ADMIN",
                is_active=True,
            )
            db.add(user)
            db.commit()
            return create_access_token(user.id, user.role)
        finally:
            db.close()

    def me(self, token: str) -> dict:
        res = self.client.get("/auth/me", headers=auth_headers(token))
        assert res.status_code == 200, res.text
        return res.json()

    def create_agent(self, admin_token: str, email: str, *, location: str = "Library Counter") -> tuple[str, dict]:
        self.register(email)
        res = self.client.post(
            "/agents",
            json={"email": email, "location": location},
            headers=auth_headers(admin_token),
        )
        assert res.status_code == 200, res.text
        # Role changed, so log in again for a token carrying AGENT.
        login_res = self.client.post("/auth/login", json={"email": email, "password": "password123"})
        assert login_res.status_code == 200, login_res.text
        return login_res.json()["access_token"], res.json()

    def place_order(self, customer_token: str, items: list[dict]) -> dict:
        res = self.client.post("/orders", json={"items": items}, headers=auth_headers(customer_token))
        assert res.status_code == 200, res.text
        return res.json()

    def send_webhook(self, event_type: str, reference: str, *, event_id: str | None = None):
        payload = {
            "event_id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
            "event_type": event_type,
            "reference": reference,
            "status": "success" if event_type.endswith("success") or event_type.endswith("processed") else "failed",
        }
        headers, body = signed_webhook(payload)
        return self.client.post("/payment-webhooks/stub", content=body, headers=headers)

    def pay(self, order: dict) -> None:
        res = self.send_webhook("charge.success", order["payment_reference"])
        assert res.status_code == 200, res.text
        assert res.json()["outcome"] == "order_paid"

    def codes(self, order_id: str) -> tuple[str, str]:
        db = self.session_local()
        try:
            order = db.execute(select(Order).where(Order.id == order_id)).scalar_one()
            return order.dropoff_code, order.pickup_code
        finally:
            db.close()

    def setup(self) -> dict:
        """Admin, one vendor, one customer, and one agent."""
        admin = self.create_admin()
        vendor = self.register("books@example.com", store_name="Campus Books")
        vendor_id = self.me(vendor)["vendor_id"]
        customer = self.register("student@example.com")
        agent, agent_out = self.create_agent(admin, "agent@example.com")
        return {
            "admin": admin,
            "vendor": vendor,
            "vendor_id": vendor_id,
            "customer": customer,
            "agent": agent,
            "agent_id": agent_out["id"],
        }

    def paid_order(self, ctx: dict, *, unit_price: float = 4000.0, quantity: int = 1) -> dict:
        order = self.place_order(
            ctx["customer"],
            [
                {
                    "vendor_id": ctx["vendor_id"],
                    "product_name": "Engineering Maths",
                    "quantity": quantity,
                    "unit_price": unit_price,
                }
            ],
        )
        self.pay(order)
        return order

    def picked_up_order(self, ctx: dict, **kwargs) -> dict:
        order = self.paid_order(ctx, **kwargs)
        dropoff_code, pickup_code = self.codes(order["id"])
        headers = auth_headers(ctx["agent"])
        res = self.client.post(
            "/agent/accept-dropoff",
            json={"order_id": order["id"], "dropoff_code": dropoff_code},
            headers=headers,
        )
        assert res.status_code == 200, res.text
        res = self.client.post("/agent/mark-ready", json={"order_id": order["id"]}, headers=headers)
        assert res.status_code == 200, res.text
        res = self.client.post(
            "/agent/verify-pickup",
            json={"order_id": order["id"], "pickup_code": pickup_code},
            headers=headers,
        )
        assert res.status_code == 200, res.text
        return order


@pytest.fixture()
def market(test_context):
    client, session_local = test_context
    return Marketplace(client, session_local)
