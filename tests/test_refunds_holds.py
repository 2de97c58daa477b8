from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update

from app.models.order import Order
from app.models.user import Vendor
from conftest import auth_headers


def _request_refund(market, ctx, order: dict, **extra):
    payload = {"order_item_id": order["items"][0]["id"], "reason": "Item damaged", **extra}
    return market.client.post("/refunds", json=payload, headers=auth_headers(ctx["customer"]))


def _vendor_holds(market, ctx, status: str | None = None) -> list[dict]:
    params = {"status": status} if status else {}
    res = market.client.get("/payout-holds", params=params, headers=auth_headers(ctx["vendor"]))
    assert res.status_code == 200, res.text
    return res.json()["items"]


def test_refund_requires_picked_up_order_within_window(market):
    ctx = market.setup()
    paid = market.paid_order(ctx)
    not_collected = _request_refund(market, ctx, paid)
    assert not_collected.status_code == 400
    assert not_collected.json()["error"]["message"] == "Order must be picked up before requesting a refund"

    order = market.picked_up_order(ctx)
    db = market.session_local()
    try:
        db.execute(
            update(Order)
            .where(Order.id == order["id"])
            .values(picked_up_at=datetime.now(timezone.utc) - timedelta(days=31))
        )
        db.commit()
    finally:
        db.close()

    expired = _request_refund(market, ctx, order)
    assert expired.status_code == 400
    assert expired.json()["error"]["message"] == "Refund window has expired (30 days)"


def test_refund_request_validation(market):
    client = market.client
    ctx = market.setup()
    order = market.picked_up_order(ctx, unit_price=2500.0)

    too_much = _request_refund(market, ctx, order, refund_amount=2600.0)
    assert too_much.status_code == 400

    stranger = market.register("stranger@example.com")
    foreign = client.post(
        "/refunds",
        json={"order_item_id": order["items"][0]["id"], "reason": "Not mine"},
        headers=auth_headers(stranger),
    )
    assert foreign.status_code == 404

    created = _request_refund(market, ctx, order, refund_amount=1000.0, photos=["https://img.example.com/1.jpg"])
    assert created.status_code == 200, created.text
    body = created.json()
    assert body["status"] == "PENDING"
    assert body["return_status"] == "REQUESTED"
    assert body["refund_amount"] == 1000.0
    assert body["photos"] == ["https://img.example.com/1.jpg"]

    duplicate = _request_refund(market, ctx, order)
    assert duplicate.status_code == 409

    vendor_list = client.get("/refunds", headers=auth_headers(ctx["vendor"]))
    assert vendor_list.json()["pagination"]["total"] == 1


def test_approvals_merge_into_one_active_hold(market):
    client = market.client
    ctx = market.setup()
    first = market.picked_up_order(ctx, unit_price=4000.0)
    second = market.picked_up_order(ctx, unit_price=1500.0)

    refund_ids = []
    for order in (first, second):
        created = _request_refund(market, ctx, order)
        assert created.status_code == 200, created.text
        refund_ids.append(created.json()["id"])
        approved = client.put(
            f"/refunds/{created.json()['id']}",
            json={"action": "approve", "note": "Sorry about that"},
            headers=auth_headers(ctx["vendor"]),
        )
        assert approved.status_code == 200, approved.text
        assert approved.json()["status"] == "APPROVED"
        assert approved.json()["vendor_response"] == "Sorry about that"
        assert approved.json()["refund_reference"].startswith("rfd_")
        assert approved.json()["refund_status"] == "PENDING"

    holds = _vendor_holds(market, ctx, status="ACTIVE")
    assert len(holds) == 1
    assert holds[0]["hold_amount"] == 5500.0
    assert holds[0]["refund_request_ids"] == refund_ids

    manual = client.post(
        "/payout-holds",
        json={"vendor_id": ctx["vendor_id"], "hold_amount": 500.0, "reason": "Dispute under review"},
        headers=auth_headers(ctx["admin"]),
    )
    assert manual.status_code == 200, manual.text
    assert manual.json()["id"] == holds[0]["id"]
    assert manual.json()["hold_amount"] == 6000.0

    db = market.session_local()
    try:
        vendor = db.execute(select(Vendor).where(Vendor.id == ctx["vendor_id"])).scalar_one()
        assert vendor.total_refunds_processed == 2
        assert float(vendor.total_refund_amount) == 5500.0
    finally:
        db.close()

    again = client.put(
        f"/refunds/{refund_ids[0]}",
        json={"action": "reject"},
        headers=auth_headers(ctx["vendor"]),
    )
    assert again.status_code == 400


def test_only_the_owning_vendor_decides(market):
    client = market.client
    ctx = market.setup()
    order = market.picked_up_order(ctx)
    refund_id = _request_refund(market, ctx, order).json()["id"]

    other_vendor = market.register("prints@example.com", store_name="Print Hub")
    res = client.put(
        f"/refunds/{refund_id}",
        json={"action": "approve"},
        headers=auth_headers(other_vendor),
    )
    assert res.status_code == 403

    customer = client.put(
        f"/refunds/{refund_id}",
        json={"action": "approve"},
        headers=auth_headers(ctx["customer"]),
    )
    assert customer.status_code == 403


def test_admin_override_reverses_and_reapplies_holds(market):
    client = market.client
    ctx = market.setup()
    order = market.picked_up_order(ctx, unit_price=3000.0)
    refund_id = _request_refund(market, ctx, order).json()["id"]

    client.put(f"/refunds/{refund_id}", json={"action": "approve"}, headers=auth_headers(ctx["vendor"]))
    hold_id = _vendor_holds(market, ctx, status="ACTIVE")[0]["id"]

    rejected = client.put(
        f"/refunds/{refund_id}/override",
        json={"action": "reject", "reason": "Photos show no damage"},
        headers=auth_headers(ctx["admin"]),
    )
    assert rejected.status_code == 200, rejected.text
    assert rejected.json()["status"] == "REJECTED"
    assert rejected.json()["refund_status"] == "REJECTED"
    assert rejected.json()["refund_reference"] is None
    assert _vendor_holds(market, ctx, status="ACTIVE") == []
    released = _vendor_holds(market, ctx, status="RELEASED")
    assert [hold["id"] for hold in released] == [hold_id]

    same = client.put(
        f"/refunds/{refund_id}/override",
        json={"action": "reject", "reason": "Again"},
        headers=auth_headers(ctx["admin"]),
    )
    assert same.status_code == 400

    approved = client.put(
        f"/refunds/{refund_id}/override",
        json={"action": "approve", "reason": "Customer sent more photos"},
        headers=auth_headers(ctx["admin"]),
    )
    assert approved.status_code == 200, approved.text
    assert approved.json()["status"] == "APPROVED"
    active = _vendor_holds(market, ctx, status="ACTIVE")
    assert len(active) == 1
    assert active[0]["hold_amount"] == 3000.0
    assert active[0]["reason"] == "Pending refund processing after admin override"

    vendor_cannot = client.put(
        f"/refunds/{refund_id}/override",
        json={"action": "reject", "reason": "No"},
        headers=auth_headers(ctx["vendor"]),
    )
    assert vendor_cannot.status_code == 403


def test_processed_refund_completes_the_return(market):
    client = market.client
    ctx = market.setup()
    order = market.picked_up_order(ctx, unit_price=2000.0)
    refund_id = _request_refund(market, ctx, order).json()["id"]
    approved = client.put(f"/refunds/{refund_id}", json={"action": "approve"}, headers=auth_headers(ctx["vendor"]))
    reference = approved.json()["refund_reference"]

    res = market.send_webhook("refund.processed", reference)
    assert res.status_code == 200, res.text
    assert res.json()["outcome"] == "refund_processed"
    assert res.json()["target_type"] == "return"

    listed = client.get("/refunds", headers=auth_headers(ctx["customer"])).json()["items"][0]
    assert listed["refund_status"] == "PROCESSED"
    assert listed["return_status"] == "COMPLETED"

    view = client.get(f"/orders/{order['id']}", headers=auth_headers(ctx["customer"])).json()
    assert view["status"] == "REFUNDED"
    assert view["payment_status"] == "REFUNDED"

    again = market.send_webhook("refund.processed", reference)
    assert again.json()["outcome"] == "already_processed"

    locked = client.put(
        f"/refunds/{refund_id}/override",
        json={"action": "reject", "reason": "Too late"},
        headers=auth_headers(ctx["admin"]),
    )
    assert locked.status_code == 409


def test_partial_refund_keeps_order_picked_up(market):
    client = market.client
    ctx = market.setup()
    order = market.place_order(
        ctx["customer"],
        [
            {"vendor_id": ctx["vendor_id"], "product_name": "Atlas", "quantity": 1, "unit_price": 3000.0},
            {"vendor_id": ctx["vendor_id"], "product_name": "Bookmark", "quantity": 1, "unit_price": 200.0},
        ],
    )
    market.pay(order)
    dropoff_code, pickup_code = market.codes(order["id"])
    headers = auth_headers(ctx["agent"])
    client.post("/agent/accept-dropoff", json={"order_id": order["id"], "dropoff_code": dropoff_code}, headers=headers)
    client.post("/agent/mark-ready", json={"order_id": order["id"]}, headers=headers)
    client.post("/agent/verify-pickup", json={"order_id": order["id"], "pickup_code": pickup_code}, headers=headers)

    refund_id = _request_refund(market, ctx, order).json()["id"]
    approved = client.put(f"/refunds/{refund_id}", json={"action": "approve"}, headers=auth_headers(ctx["vendor"]))
    market.send_webhook("refund.processed", approved.json()["refund_reference"])

    view = client.get(f"/orders/{order['id']}", headers=auth_headers(ctx["customer"])).json()
    assert view["status"] == "PICKED_UP"
    assert view["payment_status"] == "REFUNDED"


def test_override_cannot_revive_a_request_while_another_is_open(market):
    client = market.client
    ctx = market.setup()
    order = market.picked_up_order(ctx, unit_price=4000.0)

    first_id = _request_refund(market, ctx, order).json()["id"]
    rejected = client.put(f"/refunds/{first_id}", json={"action": "reject"}, headers=auth_headers(ctx["vendor"]))
    assert rejected.status_code == 200, rejected.text

    second = _request_refund(market, ctx, order, reason="Pages missing")
    assert second.status_code == 200, second.text
    approved = client.put(
        f"/refunds/{second.json()['id']}",
        json={"action": "approve"},
        headers=auth_headers(ctx["vendor"]),
    )
    assert approved.status_code == 200, approved.text

    revived = client.put(
        f"/refunds/{first_id}/override",
        json={"action": "approve", "reason": "Original claim was valid"},
        headers=auth_headers(ctx["admin"]),
    )
    assert revived.status_code == 409
    assert revived.json()["error"]["message"] == "An active refund request already exists for this item"

    holds = _vendor_holds(market, ctx, status="ACTIVE")
    assert len(holds) == 1
    assert holds[0]["hold_amount"] == 4000.0
    db = market.session_local()
    try:
        vendor = db.execute(select(Vendor).where(Vendor.id == ctx["vendor_id"])).scalar_one()
        assert vendor.total_refunds_processed == 1
    finally:
        db.close()


def test_override_cannot_approve_on_a_refunded_order(market):
    client = market.client
    ctx = market.setup()
    order = market.picked_up_order(ctx, unit_price=1800.0)

    first_id = _request_refund(market, ctx, order).json()["id"]
    client.put(f"/refunds/{first_id}", json={"action": "reject"}, headers=auth_headers(ctx["vendor"]))
    second_id = _request_refund(market, ctx, order).json()["id"]
    approved = client.put(f"/refunds/{second_id}", json={"action": "approve"}, headers=auth_headers(ctx["vendor"]))
    market.send_webhook("refund.processed", approved.json()["refund_reference"])

    revived = client.put(
        f"/refunds/{first_id}/override",
        json={"action": "approve", "reason": "Second look"},
        headers=auth_headers(ctx["admin"]),
    )
    assert revived.status_code == 409
    assert revived.json()["error"]["message"] == "Order has already been refunded"


def test_failed_provider_refund_leaves_the_return_untouched(market):
    client = market.client
    ctx = market.setup()
    order = market.picked_up_order(ctx, unit_price=2200.0)
    refund_id = _request_refund(market, ctx, order).json()["id"]
    approved = client.put(f"/refunds/{refund_id}", json={"action": "approve"}, headers=auth_headers(ctx["vendor"]))
    reference = approved.json()["refund_reference"]

    res = market.send_webhook("refund.failed", reference)
    assert res.status_code == 200, res.text
    assert res.json()["outcome"] == "refund_failed_logged"

    listed = client.get("/refunds", headers=auth_headers(ctx["customer"])).json()["items"][0]
    assert listed["status"] == "APPROVED"
    assert listed["refund_status"] == "PENDING"
    assert listed["return_status"] == "APPROVED"
    view = client.get(f"/orders/{order['id']}", headers=auth_headers(ctx["customer"])).json()
    assert view["status"] == "PICKED_UP"
    assert view["payment_status"] == "COMPLETED"
    assert _vendor_holds(market, ctx, status="ACTIVE")[0]["hold_amount"] == 2200.0
