"""Order lifecycle state machine and the agent hand-off protocol.

Every status change goes through ``transition_order``. The legal moves are::

    PENDING -> PROCESSING -> DROPPED_OFF -> READY_FOR_PICKUP -> PICKED_UP -> REFUNDED
    PENDING | PROCESSING -> CANCELLED

Callers own the transaction: nothing here commits.
"""

import hmac
import logging
import uuid
from datetime import datetime, timedelta, timezone

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.id_utils import generate_numeric_code, generate_shortuuid
from app.core.money import percent_of, sum_money, to_money
from app.core.observability import log_event
from app.models.order import Order, OrderItem
from app.models.user import Agent, User, Vendor
from app.schemas.order import OrderItemIn
from app.services.audit_service import log_audit_event
from app.services.notification_service import notify, notify_many, short_order_id
from app.services.payment_provider import get_payment_provider

logger = logging.getLogger("campusdrop.fulfilment")

ORDER_STATUSES = (
    "PENDING",
    "PROCESSING",
    "DROPPED_OFF",
    "READY_FOR_PICKUP",
    "PICKED_UP",
    "CANCELLED",
    "REFUNDED",
)

ALLOWED_ORDER_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"PROCESSING", "CANCELLED"},
    "PROCESSING": {"DROPPED_OFF", "CANCELLED"},
    "DROPPED_OFF": {"READY_FOR_PICKUP"},
    "READY_FOR_PICKUP": {"PICKED_UP"},
    "PICKED_UP": {"REFUNDED"},
    "CANCELLED": set(),
    "REFUNDED": set(),
}

_PICKUP_STATUS_BY_ORDER_STATUS = {
    "READY_FOR_PICKUP": "READY_FOR_PICKUP",
    "PICKED_UP": "PICKED_UP",
    "REFUNDED": "PICKED_UP",
}

_TIMESTAMP_FIELD_BY_STATUS = {
    "PROCESSING": "paid_at",
    "DROPPED_OFF": "dropped_off_at",
    "READY_FOR_PICKUP": "ready_at",
    "PICKED_UP": "picked_up_at",
    "CANCELLED": "cancelled_at",
}

CUSTOMER_CANCELLABLE_STATUSES = {"PENDING"}
ADMIN_CANCELLABLE_STATUSES = {"PENDING", "PROCESSING"}


class HandoffCodeMismatch(HTTPException):
    """Raised when a drop-off or pickup code does not match."""

    def __init__(self, detail: str):
        super().__init__(status_code=400, detail=detail)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_order_status(status: str) -> str:
    normalized = status.strip().upper()
    if normalized not in ALLOWED_ORDER_TRANSITIONS:
        allowed = ", ".join(ORDER_STATUSES)
        raise HTTPException(status_code=400, detail=f"Invalid order status. Allowed: {allowed}")
    return normalized


def ensure_transition_allowed(current_status: str, next_status: str) -> None:
    if current_status == next_status:
        return
    allowed_next = ALLOWED_ORDER_TRANSITIONS.get(current_status, set())
    if next_status not in allowed_next:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot transition order from '{current_status}' to '{next_status}'",
        )


def transition_order(
    db: Session,
    order: Order,
    next_status: str,
    *,
    actor_user_id: str | None,
    action: str,
    metadata: dict | None = None,
) -> bool:
    """Move ``order`` to ``next_status``. Returns False when it is already there."""
    current_status = order.status
    ensure_transition_allowed(current_status, next_status)
    if current_status == next_status:
        return False

    order.status = next_status
    order.pickup_status = _PICKUP_STATUS_BY_ORDER_STATUS.get(next_status, "PENDING")
    timestamp_field = _TIMESTAMP_FIELD_BY_STATUS.get(next_status)
    if timestamp_field:
        setattr(order, timestamp_field, utcnow())

    log_audit_event(
        db,
        actor_user_id=actor_user_id,
        action=action,
        target_type="order",
        target_id=order.id,
        metadata_json={"from_status": current_status, "to_status": next_status, **(metadata or {})},
    )
    return True


def get_order_for_update(db: Session, order_id: str) -> Order:
    order = db.execute(
        select(Order).where(Order.id == order_id).with_for_update()
    ).scalar_one_or_none()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def items_by_order(db: Session, order_ids: list[str]) -> dict[str, list[OrderItem]]:
    grouped: dict[str, list[OrderItem]] = {order_id: [] for order_id in order_ids}
    if not order_ids:
        return grouped
    rows = db.execute(
        select(OrderItem).where(OrderItem.order_id.in_(order_ids)).order_by(OrderItem.product_name.asc())
    ).scalars().all()
    for item in rows:
        grouped.setdefault(item.order_id, []).append(item)
    return grouped


def order_vendor_user_ids(db: Session, order_id: str) -> list[str]:
    rows = db.execute(
        select(Vendor.user_id)
        .join(OrderItem, OrderItem.vendor_id == Vendor.id)
        .where(OrderItem.order_id == order_id)
        .distinct()
    ).scalars().all()
    return sorted(rows)


def vendor_has_items_in_order(db: Session, *, order_id: str, vendor_id: str) -> bool:
    found = db.execute(
        select(OrderItem.id)
        .where(OrderItem.order_id == order_id, OrderItem.vendor_id == vendor_id)
        .limit(1)
    ).scalar_one_or_none()
    return found is not None


def codes_match(provided: str, expected: str | None) -> bool:
    if not expected:
        return False
    return hmac.compare_digest(provided.strip().encode("utf-8"), expected.encode("utf-8"))


def assign_handoff_codes(order: Order) -> None:
    if order.dropoff_code and order.pickup_code:
        return
    dropoff_code = generate_numeric_code(6)
    pickup_code = generate_numeric_code(6)
    while pickup_code == dropoff_code:
        pickup_code = generate_numeric_code(6)
    order.dropoff_code = dropoff_code
    order.pickup_code = pickup_code


def create_order(db: Session, *, customer: User, items_in: list[OrderItemIn]) -> tuple[Order, list[OrderItem]]:
    vendor_ids = sorted({item.vendor_id for item in items_in})
    vendors = {
        vendor.id: vendor
        for vendor in db.execute(select(Vendor).where(Vendor.id.in_(vendor_ids))).scalars().all()
    }
    for vendor_id in vendor_ids:
        vendor = vendors.get(vendor_id)
        if not vendor:
            raise HTTPException(status_code=404, detail=f"Vendor not found: {vendor_id}")
        if not vendor.is_approved:
            raise HTTPException(status_code=400, detail=f"Vendor is not accepting orders: {vendor_id}")

    order_id = str(uuid.uuid4())
    items: list[OrderItem] = []
    for item_in in items_in:
        vendor = vendors[item_in.vendor_id]
        line_total = to_money(to_money(item_in.unit_price) * item_in.quantity)
        commission_rate = to_money(vendor.commission_rate)
        items.append(
            OrderItem(
                id=str(uuid.uuid4()),
                order_id=order_id,
                vendor_id=vendor.id,
                product_name=item_in.product_name.strip(),
                quantity=item_in.quantity,
                unit_price=to_money(item_in.unit_price),
                line_total=line_total,
                commission_rate=commission_rate,
                commission_amount=percent_of(line_total, commission_rate),
            )
        )

    provider = get_payment_provider(settings.payment_provider_default)
    order = Order(
        id=order_id,
        customer_id=customer.id,
        status="PENDING",
        payment_status="PENDING",
        pickup_status="PENDING",
        total_amount=sum_money(item.line_total for item in items),
        payment_reference=provider.new_payment_reference(order_id),
    )
    db.add(order)
    db.flush()
    db.add_all(items)

    log_audit_event(
        db,
        actor_user_id=customer.id,
        action="order.create",
        target_type="order",
        target_id=order.id,
        metadata_json={
            "items_count": len(items),
            "vendor_ids": vendor_ids,
            "total_amount": float(order.total_amount),
        },
    )
    return order, items


def mark_order_paid(db: Session, order: Order, *, event_id: str) -> str:
    if order.payment_status == "COMPLETED":
        return "already_paid"
    if order.status != "PENDING":
        log_event(
            logger,
            "payment_for_closed_order",
            level=logging.WARNING,
            order_id=order.id,
            status=order.status,
            event_id=event_id,
        )
        return "order_not_payable"

    transition_order(
        db,
        order,
        "PROCESSING",
        actor_user_id=None,
        action="order.payment_confirmed",
        metadata={"webhook_event_id": event_id},
    )
    order.payment_status = "COMPLETED"
    assign_handoff_codes(order)

    short_id = short_order_id(order.id)
    notify(
        db,
        user_id=order.customer_id,
        notification_type="ORDER_STATUS_CHANGE",
        title="Payment Confirmed",
        message=f"Payment for order #{short_id} is confirmed. We will tell you when it is ready for pickup.",
        order_id=order.id,
    )
    notify_many(
        db,
        user_ids=order_vendor_user_ids(db, order.id),
        notification_type="ORDER_STATUS_CHANGE",
        title="New Paid Order",
        message=f"Order #{short_id} has been paid. Drop it off at a campus pickup point.",
        order_id=order.id,
    )
    return "order_paid"


def mark_order_payment_failed(db: Session, order: Order, *, event_id: str) -> str:
    if order.payment_status == "COMPLETED":
        return "already_paid"
    order.payment_status = "FAILED"
    log_audit_event(
        db,
        actor_user_id=None,
        action="order.payment_failed",
        target_type="order",
        target_id=order.id,
        metadata_json={"webhook_event_id": event_id},
    )
    return "payment_failed"


def cancel_order(db: Session, order: Order, *, actor: User, reason: str | None) -> Order:
    allowed = ADMIN_CANCELLABLE_STATUSES if actor.role == "ADMIN" else CUSTOMER_CANCELLABLE_STATUSES
    if order.status not in allowed:
        raise HTTPException(status_code=400, detail=f"Cannot cancel order in status '{order.status}'")

    transition_order(
        db,
        order,
        "CANCELLED",
        actor_user_id=actor.id,
        action="order.cancel",
        metadata={"reason": reason, "actor_role": actor.role},
    )
    order.cancel_reason = (reason or "Cancelled by request")[:255]
    order.dropoff_code = None
    order.pickup_code = None

    short_id = short_order_id(order.id)
    notify_many(
        db,
        user_ids=[order.customer_id, *order_vendor_user_ids(db, order.id)],
        notification_type="ORDER_STATUS_CHANGE",
        title="Order Cancelled",
        message=f"Order #{short_id} has been cancelled.",
        order_id=order.id,
    )
    return order


def _auto_cancel_note(timeout_minutes: int) -> str:
    units = "minute" if timeout_minutes == 1 else "minutes"
    return f"Auto-cancelled after {timeout_minutes} {units} without payment."


def auto_cancel_expired_pending_orders(db: Session, *, customer_id: str | None = None) -> int:
    timeout_minutes = settings.orders_pending_timeout_minutes
    cutoff_at = utcnow() - timedelta(minutes=timeout_minutes)
    stmt = select(Order).where(Order.status == "PENDING", Order.payment_status != "COMPLETED")
    if customer_id:
        stmt = stmt.where(Order.customer_id == customer_id)
    pending_orders = db.execute(stmt.with_for_update()).scalars().all()

    expired_orders = [order for order in pending_orders if as_utc(order.created_at) <= cutoff_at]
    for order in expired_orders:
        transition_order(
            db,
            order,
            "CANCELLED",
            actor_user_id=None,
            action="order.auto_cancel",
            metadata={"timeout_minutes": timeout_minutes, "cutoff_at": cutoff_at.isoformat()},
        )
        order.cancel_reason = _auto_cancel_note(timeout_minutes)
    return len(expired_orders)


def resolve_agent_for_user(db: Session, user: User) -> Agent:
    agent = db.execute(select(Agent).where(Agent.user_id == user.id)).scalar_one_or_none()
    if agent:
        if not agent.is_active:
            raise HTTPException(status_code=403, detail="Agent account is inactive")
        return agent

    agent = Agent(
        id=generate_shortuuid(),
        user_id=user.id,
        location=settings.default_agent_location,
        is_active=True,
    )
    db.add(agent)
    db.flush()
    log_event(logger, "agent_profile_created", agent_id=agent.id, user_id=user.id)
    return agent


def _make_ready(db: Session, order: Order, *, actor_user_id: str, via: str, location: str) -> None:
    transition_order(
        db,
        order,
        "READY_FOR_PICKUP",
        actor_user_id=actor_user_id,
        action="order.ready_for_pickup",
        metadata={"via": via},
    )
    notify(
        db,
        user_id=order.customer_id,
        notification_type="PICKUP_READY",
        title="Order Ready for Pickup",
        message=(
            f"Order #{short_order_id(order.id)} is ready for pickup at {location}. "
            "Show your pickup code to the agent."
        ),
        order_id=order.id,
    )


def _pickup_location(db: Session, order: Order) -> str:
    if order.agent_id:
        location = db.execute(select(Agent.location).where(Agent.id == order.agent_id)).scalar_one_or_none()
        if location:
            return location
    return settings.default_agent_location


def accept_dropoff(db: Session, *, order_id: str, dropoff_code: str, agent: Agent, actor_user_id: str) -> Order:
    order = get_order_for_update(db, order_id)
    if order.status != "PROCESSING" or order.pickup_status != "PENDING":
        raise HTTPException(status_code=400, detail="Order not eligible for drop-off")
    if not codes_match(dropoff_code, order.dropoff_code):
        raise HandoffCodeMismatch("Invalid drop-off code")

    transition_order(
        db,
        order,
        "DROPPED_OFF",
        actor_user_id=actor_user_id,
        action="order.dropoff_accepted",
        metadata={"agent_id": agent.id},
    )
    order.agent_id = agent.id

    short_id = short_order_id(order.id)
    notify_many(
        db,
        user_ids=order_vendor_user_ids(db, order.id),
        notification_type="ORDER_STATUS_CHANGE",
        title="Drop-off Accepted",
        message=f"Order #{short_id} was received at {agent.location}.",
        order_id=order.id,
    )
    if settings.dropoff_marks_ready:
        _make_ready(db, order, actor_user_id=actor_user_id, via="dropoff", location=agent.location)
    else:
        notify(
            db,
            user_id=order.customer_id,
            notification_type="ORDER_STATUS_CHANGE",
            title="Order Dropped Off",
            message=f"Order #{short_id} has been dropped off at {agent.location}.",
            order_id=order.id,
        )
    return order


def agent_mark_ready(db: Session, *, order_id: str, agent: Agent, actor_user_id: str) -> Order:
    order = get_order_for_update(db, order_id)
    if order.status != "DROPPED_OFF" or order.pickup_status != "PENDING":
        raise HTTPException(status_code=400, detail="Order not eligible to be marked ready")
    if order.agent_id and order.agent_id != agent.id:
        raise HTTPException(status_code=403, detail="You are not assigned to this order")
    if not order.agent_id:
        order.agent_id = agent.id

    _make_ready(db, order, actor_user_id=actor_user_id, via="agent", location=agent.location)
    return order


def vendor_mark_ready(db: Session, *, order_id: str, vendor: Vendor, actor_user_id: str) -> Order:
    order = get_order_for_update(db, order_id)
    if not vendor_has_items_in_order(db, order_id=order.id, vendor_id=vendor.id):
        raise HTTPException(status_code=403, detail="You do not have items in this order")
    if order.status != "DROPPED_OFF" or order.pickup_status != "PENDING":
        raise HTTPException(status_code=400, detail="Order not eligible to be marked ready")

    _make_ready(
        db,
        order,
        actor_user_id=actor_user_id,
        via="vendor",
        location=_pickup_location(db, order),
    )
    return order


def verify_pickup(db: Session, *, order_id: str, pickup_code: str, agent: Agent, actor_user_id: str) -> Order:
    order = get_order_for_update(db, order_id)
    if order.status != "READY_FOR_PICKUP":
        raise HTTPException(status_code=400, detail="Order is not ready for pickup")
    if order.agent_id != agent.id:
        raise HTTPException(status_code=403, detail="You are not assigned to this order")
    if not codes_match(pickup_code, order.pickup_code):
        raise HandoffCodeMismatch("Invalid pickup code")

    transition_order(
        db,
        order,
        "PICKED_UP",
        actor_user_id=actor_user_id,
        action="order.picked_up",
        metadata={"agent_id": agent.id},
    )

    short_id = short_order_id(order.id)
    notify(
        db,
        user_id=order.customer_id,
        notification_type="ORDER_PICKED_UP",
        title="Order Picked Up",
        message=f"Order #{short_id} has been picked up. Enjoy your purchase!",
        order_id=order.id,
    )
    notify_many(
        db,
        user_ids=order_vendor_user_ids(db, order.id),
        notification_type="ORDER_STATUS_CHANGE",
        title="Order Picked Up",
        message=f"Order #{short_id} was collected by the customer.",
        order_id=order.id,
    )
    return order
