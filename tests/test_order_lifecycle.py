from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update

from app.models.audit_log import AuditLog
from app.models.order import Order
from conftest import auth_headers


def test_order_happy_path_walks_every_status(market):
    client = market.client
    ctx = market.setup()

    order = market.place_order(
        ctx["customer"],
        [
            {"vendor_id": ctx["vendor_id"], "product_name": "Lab Coat", "quantity": 2, "unit_price": 1500.0},
            {"vendor_id": ctx["vendor_id"], "product_name": "Calculator", "quantity": 1, "unit_price": 999.99},
        ],
    )
    assert order["status"] == "PENDING"
    assert order["payment_status"] == "PENDING"
    assert order["total_amount"] == 3999.99
    assert order["payment_reference"].startswith("pay_")
    assert order["pickup_code"] is None

    market.pay(order)
    dropoff_code, pickup_code = market.codes(order["id"])
    assert len(dropoff_code) == 6 and len(pickup_code) == 6
    assert dropoff_code != pickup_code

    paid = client.get(f"/orders/{order['id']}", headers=auth_headers(ctx["customer"]))
    assert paid.status_code == 200, paid.text
    assert paid.json()["status"] == "PROCESSING"
    assert paid.json()["payment_status"] == "COMPLETED"
    assert paid.json()["paid_at"] is not None

    agent_headers = auth_headers(ctx["agent"])
    dropoff = client.post(
        "/agent/accept-dropoff",
        json={"order_id": order["id"], "dropoff_code": dropoff_code},
        headers=agent_headers,
    )
    assert dropoff.status_code == 200, dropoff.text
    assert dropoff.json()["status"] == "DROPPED_OFF"
    assert dropoff.json()["agent_id"] == ctx["agent_id"]

    ready = client.post("/agent/mark-ready", json={"order_id": order["id"]}, headers=agent_headers)
    assert ready.status_code == 200, ready.text
    assert ready.json()["status"] == "READY_FOR_PICKUP"
    assert ready.json()["pickup_status"] == "READY_FOR_PICKUP"

    picked = client.post(
        "/agent/verify-pickup",
        json={"order_id": order["id"], "pickup_code": pickup_code},
        headers=agent_headers,
    )
    assert picked.status_code == 200, picked.text
    assert picked.json()["status"] == "PICKED_UP"
    assert picked.json()["pickup_status"] == "PICKED_UP"

    final = client.get(f"/orders/{order['id']}", headers=auth_headers(ctx["customer"])).json()
    for field in ("paid_at", "dropped_off_at", "ready_at", "picked_up_at"):
        assert final[field] is not None

    db = market.session_local()
    try:
        actions = db.execute(
            select(AuditLog.action).where(AuditLog.target_id == order["id"]).order_by(AuditLog.created_at.asc())
        ).scalars().all()
    finally:
        db.close()
    assert {
        "order.create",
        "order.payment_confirmed",
        "order.dropoff_accepted",
        "order.ready_for_pickup",
        "order.picked_up",
    } <= set(actions)


def test_codes_are_revealed_by_role(market):
    client = market.client
    ctx = market.setup()
    order = market.paid_order(ctx)
    dropoff_code, pickup_code = market.codes(order["id"])

    customer_view = client.get(f"/orders/{order['id']}", headers=auth_headers(ctx["customer"])).json()
    assert customer_view["pickup_code"] == pickup_code
    assert customer_view["dropoff_code"] is None

    vendor_orders = client.get("/vendor/orders", headers=auth_headers(ctx["vendor"]))
    assert vendor_orders.status_code == 200, vendor_orders.text
    vendor_view = vendor_orders.json()[0]
    assert vendor_view["dropoff_code"] == dropoff_code
    assert vendor_view["pickup_code"] is None

    client.post(
        "/agent/accept-dropoff",
        json={"order_id": order["id"], "dropoff_code": dropoff_code},
        headers=auth_headers(ctx["agent"]),
    )
    agent_orders = client.get("/agent/orders", headers=auth_headers(ctx["agent"]))
    assert agent_orders.status_code == 200, agent_orders.text
    assert agent_orders.json()[0]["id"] == order["id"]
    assert agent_orders.json()[0]["pickup_code"] is None
    assert agent_orders.json()[0]["dropoff_code"] is None


def test_invalid_transition_is_rejected_with_error_envelope(market):
    client = market.client
    ctx = market.setup()
    order = market.place_order(
        ctx["customer"],
        [{"vendor_id": ctx["vendor_id"], "product_name": "Notebook", "quantity": 3, "unit_price": 300.0}],
    )

    res = client.patch(
        f"/orders/{order['id']}/status",
        json={"status": "READY_FOR_PICKUP"},
        headers=auth_headers(ctx["admin"]),
    )
    assert res.status_code == 400
    body = res.json()
    assert body["error"]["code"] == "bad_request"
    assert body["error"]["message"] == "Cannot transition order from 'PENDING' to 'READY_FOR_PICKUP'"
    assert body["error"]["path"] == f"/orders/{order['id']}/status"


def test_admin_status_update_to_processing_assigns_codes(market):
    client = market.client
    ctx = market.setup()
    order = market.place_order(
        ctx["customer"],
        [{"vendor_id": ctx["vendor_id"], "product_name": "Notebook", "quantity": 1, "unit_price": 300.0}],
    )

    res = client.patch(
        f"/orders/{order['id']}/status",
        json={"status": "PROCESSING", "note": "Paid at the desk"},
        headers=auth_headers(ctx["admin"]),
    )
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "PROCESSING"
    assert res.json()["dropoff_code"] and res.json()["pickup_code"]

    same = client.patch(
        f"/orders/{order['id']}/status",
        json={"status": "PROCESSING"},
        headers=auth_headers(ctx["admin"]),
    )
    assert same.status_code == 200, same.text


def test_customer_cancels_pending_order_only(market):
    client = market.client
    ctx = market.setup()
    items = [{"vendor_id": ctx["vendor_id"], "product_name": "Pen Set", "quantity": 1, "unit_price": 500.0}]

    pending = market.place_order(ctx["customer"], items)
    cancelled = client.post(
        f"/orders/{pending['id']}/cancel",
        json={"reason": "Changed my mind"},
        headers=auth_headers(ctx["customer"]),
    )
    assert cancelled.status_code == 200, cancelled.text
    assert cancelled.json()["status"] == "CANCELLED"
    assert cancelled.json()["cancel_reason"] == "Changed my mind"
    assert cancelled.json()["cancelled_at"] is not None

    again = client.post(f"/orders/{pending['id']}/cancel", headers=auth_headers(ctx["customer"]))
    assert again.status_code == 400

    paid = market.paid_order(ctx)
    blocked = client.post(f"/orders/{paid['id']}/cancel", headers=auth_headers(ctx["customer"]))
    assert blocked.status_code == 400
    assert blocked.json()["error"]["message"] == "Cannot cancel order in status 'PROCESSING'"

    by_admin = client.post(
        f"/orders/{paid['id']}/cancel",
        json={"reason": "Vendor out of stock"},
        headers=auth_headers(ctx["admin"]),
    )
    assert by_admin.status_code == 200, by_admin.text
    assert by_admin.json()["status"] == "CANCELLED"
    assert market.codes(paid["id"]) == (None, None)

    # Only the order cancelled after payment reaches the vendor queue.
    vendor_queue = client.get("/vendor/orders", headers=auth_headers(ctx["vendor"]))
    assert vendor_queue.status_code == 200, vendor_queue.text
    assert [row["id"] for row in vendor_queue.json()] == [paid["id"]]
    filtered = client.get("/vendor/orders", params={"status": "CANCELLED"}, headers=auth_headers(ctx["vendor"]))
    assert [row["id"] for row in filtered.json()] == [paid["id"]]


def test_payment_after_cancellation_is_not_applied(market):
    client = market.client
    ctx = market.setup()
    order = market.place_order(
        ctx["customer"],
        [{"vendor_id": ctx["vendor_id"], "product_name": "Ruler", "quantity": 1, "unit_price": 150.0}],
    )
    client.post(f"/orders/{order['id']}/cancel", headers=auth_headers(ctx["customer"]))

    res = market.send_webhook("charge.success", order["payment_reference"])
    assert res.status_code == 200, res.text
    assert res.json()["outcome"] == "order_not_payable"

    view = client.get(f"/orders/{order['id']}", headers=auth_headers(ctx["customer"])).json()
    assert view["status"] == "CANCELLED"
    assert view["payment_status"] == "PENDING"


def test_stale_pending_orders_are_auto_cancelled_on_list(market):
    client = market.client
    ctx = market.setup()
    items = [{"vendor_id": ctx["vendor_id"], "product_name": "Stapler", "quantity": 1, "unit_price": 800.0}]
    stale = market.place_order(ctx["customer"], items)
    fresh = market.place_order(ctx["customer"], items)

    db = market.session_local()
    try:
        db.execute(
            update(Order)
            .where(Order.id == stale["id"])
            .values(created_at=datetime.now(timezone.utc) - timedelta(hours=3))
        )
        db.commit()
    finally:
        db.close()

    res = client.get("/orders", headers=auth_headers(ctx["customer"]))
    assert res.status_code == 200, res.text
    by_id = {row["id"]: row for row in res.json()["items"]}
    assert by_id[stale["id"]]["status"] == "CANCELLED"
    assert by_id[stale["id"]]["cancel_reason"] == "Auto-cancelled after 60 minutes without payment."
    assert by_id[fresh["id"]]["status"] == "PENDING"
    assert res.json()["pagination"]["total"] == 2


def test_orders_are_scoped_to_their_viewers(market):
    client = market.client
    ctx = market.setup()
    other_vendor = market.register("snacks@example.com", store_name="Snack Shack")
    other_vendor_id = market.me(other_vendor)["vendor_id"]
    order = market.place_order(
        ctx["customer"],
        [
            {"vendor_id": ctx["vendor_id"], "product_name": "Textbook", "quantity": 1, "unit_price": 5000.0},
            {"vendor_id": other_vendor_id, "product_name": "Crisps", "quantity": 4, "unit_price": 250.0},
        ],
    )

    stranger = market.register("stranger@example.com")
    hidden = client.get(f"/orders/{order['id']}", headers=auth_headers(stranger))
    assert hidden.status_code == 404

    vendor_pending = client.get("/vendor/orders", headers=auth_headers(ctx["vendor"]))
    assert vendor_pending.json() == []

    market.pay(order)
    vendor_view = client.get(f"/orders/{order['id']}", headers=auth_headers(other_vendor))
    assert vendor_view.status_code == 200, vendor_view.text
    assert [item["product_name"] for item in vendor_view.json()["items"]] == ["Crisps"]

    unknown_vendor = client.post(
        "/orders",
        json={"items": [{"vendor_id": "missing", "product_name": "Ghost", "quantity": 1, "unit_price": 10}]},
        headers=auth_headers(ctx["customer"]),
    )
    assert unknown_vendor.status_code == 404

    vendor_cannot_order = client.post(
        "/orders",
        json={"items": [{"vendor_id": ctx["vendor_id"], "product_name": "Pen", "quantity": 1, "unit_price": 10}]},
        headers=auth_headers(ctx["vendor"]),
    )
    assert vendor_cannot_order.status_code == 403


def test_order_search_matches_id_prefix_literally(market):
    client = market.client
    ctx = market.setup()
    items = [{"vendor_id": ctx["vendor_id"], "product_name": "Notebook", "quantity": 2, "unit_price": 300.0}]
    first = market.place_order(ctx["customer"], items)
    market.place_order(ctx["customer"], items)
    headers = auth_headers(ctx["customer"])

    by_prefix = client.get("/orders", params={"search": first["id"][:8]}, headers=headers).json()
    assert [row["id"] for row in by_prefix["items"]] == [first["id"]]

    by_reference = client.get("/orders", params={"search": first["payment_reference"]}, headers=headers).json()
    assert [row["id"] for row in by_reference["items"]] == [first["id"]]

    for wildcard in ("%", "_", first["id"][:4] + "%"):
        res = client.get("/orders", params={"search": wildcard}, headers=headers)
        assert res.status_code == 200, res.text
        assert res.json()["items"] == []
        assert res.json()["pagination"]["total"] == 0
