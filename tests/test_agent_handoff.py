from sqlalchemy import select

from app.core.config import settings
from app.models.notification import Notification
from app.models.order import Order
from conftest import auth_headers


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


def test_invalid_dropoff_code_leaves_order_untouched(market):
    client = market.client
    ctx = market.setup()
    order = market.paid_order(ctx)
    dropoff_code, _ = market.codes(order["id"])

    res = client.post(
        "/agent/accept-dropoff",
        json={"order_id": order["id"], "dropoff_code": _wrong(dropoff_code)},
        headers=auth_headers(ctx["agent"]),
    )
    assert res.status_code == 400
    assert res.json()["error"]["message"] == "Invalid drop-off code"

    db = market.session_local()
    try:
        row = db.execute(select(Order).where(Order.id == order["id"])).scalar_one()
        assert row.status == "PROCESSING"
        assert row.agent_id is None
    finally:
        db.close()


def test_repeated_bad_codes_lock_the_order_for_that_agent(market):
    client = market.client
    ctx = market.setup()
    order = market.paid_order(ctx)
    dropoff_code, _ = market.codes(order["id"])
    headers = auth_headers(ctx["agent"])
    payload = {"order_id": order["id"], "dropoff_code": _wrong(dropoff_code)}

    for _ in range(settings.code_verify_max_attempts):
        assert client.post("/agent/accept-dropoff", json=payload, headers=headers).status_code == 400

    locked = client.post(
        "/agent/accept-dropoff",
        json={"order_id": order["id"], "dropoff_code": dropoff_code},
        headers=headers,
    )
    assert locked.status_code == 429
    assert locked.json()["error"]["code"] == "rate_limited"
    assert int(locked.headers["Retry-After"]) > 0


def test_dropoff_requires_a_paid_order(market):
    client = market.client
    ctx = market.setup()
    order = market.place_order(
        ctx["customer"],
        [{"vendor_id": ctx["vendor_id"], "product_name": "Mug", "quantity": 1, "unit_price": 700.0}],
    )

    res = client.post(
        "/agent/accept-dropoff",
        json={"order_id": order["id"], "dropoff_code": "123456"},
        headers=auth_headers(ctx["agent"]),
    )
    assert res.status_code == 400
    assert res.json()["error"]["message"] == "Order not eligible for drop-off"

    missing = client.post(
        "/agent/accept-dropoff",
        json={"order_id": "does-not-exist", "dropoff_code": "123456"},
        headers=auth_headers(ctx["agent"]),
    )
    assert missing.status_code == 404


def test_pickup_needs_ready_order_and_the_assigned_agent(market):
    client = market.client
    ctx = market.setup()
    other_agent, _ = market.create_agent(ctx["admin"], "agent2@example.com", location="Hostel Desk")
    order = market.paid_order(ctx)
    dropoff_code, pickup_code = market.codes(order["id"])
    headers = auth_headers(ctx["agent"])

    client.post(
        "/agent/accept-dropoff",
        json={"order_id": order["id"], "dropoff_code": dropoff_code},
        headers=headers,
    )

    too_early = client.post(
        "/agent/verify-pickup",
        json={"order_id": order["id"], "pickup_code": pickup_code},
        headers=headers,
    )
    assert too_early.status_code == 400
    assert too_early.json()["error"]["message"] == "Order is not ready for pickup"

    not_mine = client.post(
        "/agent/mark-ready",
        json={"order_id": order["id"]},
        headers=auth_headers(other_agent),
    )
    assert not_mine.status_code == 403

    client.post("/agent/mark-ready", json={"order_id": order["id"]}, headers=headers)

    wrong_agent = client.post(
        "/agent/verify-pickup",
        json={"order_id": order["id"], "pickup_code": pickup_code},
        headers=auth_headers(other_agent),
    )
    assert wrong_agent.status_code == 403

    bad_code = client.post(
        "/agent/verify-pickup",
        json={"order_id": order["id"], "pickup_code": _wrong(pickup_code)},
        headers=headers,
    )
    assert bad_code.status_code == 400
    assert bad_code.json()["error"]["message"] == "Invalid pickup code"

    ok = client.post(
        "/agent/verify-pickup",
        json={"order_id": order["id"], "pickup_code": pickup_code},
        headers=headers,
    )
    assert ok.status_code == 200, ok.text
    assert ok.json()["status"] == "PICKED_UP"


def test_vendor_can_mark_dropped_off_order_ready(market):
    client = market.client
    ctx = market.setup()
    order = market.paid_order(ctx)
    dropoff_code, _ = market.codes(order["id"])

    early = client.post(f"/vendor/orders/{order['id']}/mark-ready", headers=auth_headers(ctx["vendor"]))
    assert early.status_code == 400

    client.post(
        "/agent/accept-dropoff",
        json={"order_id": order["id"], "dropoff_code": dropoff_code},
        headers=auth_headers(ctx["agent"]),
    )
    other_vendor = market.register("prints@example.com", store_name="Print Hub")
    foreign = client.post(f"/vendor/orders/{order['id']}/mark-ready", headers=auth_headers(other_vendor))
    assert foreign.status_code == 403

    ready = client.post(f"/vendor/orders/{order['id']}/mark-ready", headers=auth_headers(ctx["vendor"]))
    assert ready.status_code == 200, ready.text
    assert ready.json()["status"] == "READY_FOR_PICKUP"

    db = market.session_local()
    try:
        customer_id = db.execute(select(Order.customer_id).where(Order.id == order["id"])).scalar_one()
        messages = db.execute(
            select(Notification.message).where(
                Notification.user_id == customer_id,
                Notification.type == "PICKUP_READY",
            )
        ).scalars().all()
    finally:
        db.close()
    assert len(messages) == 1
    assert "Library Counter" in messages[0]


def test_dropoff_can_mark_order_ready_immediately(market, monkeypatch):
    monkeypatch.setattr(settings, "dropoff_marks_ready", True)
    client = market.client
    ctx = market.setup()
    order = market.paid_order(ctx)
    dropoff_code, _ = market.codes(order["id"])

    res = client.post(
        "/agent/accept-dropoff",
        json={"order_id": order["id"], "dropoff_code": dropoff_code},
        headers=auth_headers(ctx["agent"]),
    )
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "READY_FOR_PICKUP"
    assert res.json()["pickup_status"] == "READY_FOR_PICKUP"


def test_agent_endpoints_reject_other_roles(market):
    client = market.client
    ctx = market.setup()
    order = market.paid_order(ctx)
    dropoff_code, _ = market.codes(order["id"])

    res = client.post(
        "/agent/accept-dropoff",
        json={"order_id": order["id"], "dropoff_code": dropoff_code},
        headers=auth_headers(ctx["customer"]),
    )
    assert res.status_code == 403
    assert res.json()["error"]["message"] == "Insufficient role for this action"

    vendor_as_agent = client.post(
        "/agents",
        json={"email": "books@example.com", "location": "Main Gate"},
        headers=auth_headers(ctx["admin"]),
    )
    assert vendor_as_agent.status_code == 409
