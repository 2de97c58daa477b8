from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.deps import get_db
from app.core.money import to_money
from app.core.permissions import require_roles
from app.core.security_current import get_current_user
from app.models.order import Order
from app.models.user import Agent, User, Vendor
from app.schemas.common import build_pagination
from app.schemas.order import (
    OrderCancelIn,
    OrderCreate,
    OrderItemOut,
    OrderListOut,
    OrderOut,
    OrderStatusUpdateIn,
)
from app.services.fulfilment_service import (
    assign_handoff_codes,
    auto_cancel_expired_pending_orders,
    cancel_order,
    create_order,
    get_order_for_update,
    items_by_order,
    normalize_order_status,
    transition_order,
    vendor_has_items_in_order,
)
from app.services.notification_service import dispatch_pending_push

router = APIRouter(prefix="/orders", tags=["orders"])

PAYMENT_STATUSES = {"PENDING", "COMPLETED", "FAILED", "REFUNDED"}


def build_order_outs(
    db: Session,
    orders: list[Order],
    *,
    viewer: User,
    vendor_id: str | None = None,
) -> list[OrderOut]:
    """Serialize orders for ``viewer``.

    Customers only ever see their pickup code and vendors only their drop-off
    code. Agents see neither: they are the ones who must be handed them.
    """
    grouped = items_by_order(db, [order.id for order in orders])
    customer_ids = {order.customer_id for order in orders}
    names = dict(
        db.execute(select(User.id, User.full_name).where(User.id.in_(customer_ids))).all()
    ) if customer_ids else {}

    results: list[OrderOut] = []
    for order in orders:
        items = grouped.get(order.id, [])
        if vendor_id:
            items = [item for item in items if item.vendor_id == vendor_id]
        show_pickup = viewer.role == "ADMIN" or viewer.id == order.customer_id
        show_dropoff = viewer.role in {"ADMIN", "VENDOR"}
        results.append(
            OrderOut(
                id=order.id,
                customer_id=order.customer_id,
                customer_name=names.get(order.customer_id),
                agent_id=order.agent_id,
                status=order.status,
                payment_status=order.payment_status,
                pickup_status=order.pickup_status,
                total_amount=float(to_money(order.total_amount)),
                payment_reference=order.payment_reference,
                dropoff_code=order.dropoff_code if show_dropoff else None,
                pickup_code=order.pickup_code if show_pickup else None,
                cancel_reason=order.cancel_reason,
                paid_at=order.paid_at,
                dropped_off_at=order.dropped_off_at,
                ready_at=order.ready_at,
                picked_up_at=order.picked_up_at,
                cancelled_at=order.cancelled_at,
                created_at=order.created_at,
                updated_at=order.updated_at,
                items=[
                    OrderItemOut(
                        id=item.id,
                        vendor_id=item.vendor_id,
                        product_name=item.product_name,
                        quantity=item.quantity,
                        unit_price=float(to_money(item.unit_price)),
                        line_total=float(to_money(item.line_total)),
                    )
                    for item in items
                ],
            )
        )
    return results


def _viewer_vendor_id(db: Session, order: Order, user: User) -> str | None:
    """Returns the viewing vendor's id, or raises 404 when ``user`` may not see ``order``."""
    if user.role == "ADMIN" or order.customer_id == user.id:
        return None
    if user.role == "VENDOR":
        vendor_id = db.execute(select(Vendor.id).where(Vendor.user_id == user.id)).scalar_one_or_none()
        if vendor_id and vendor_has_items_in_order(db, order_id=order.id, vendor_id=vendor_id):
            return vendor_id
    if user.role == "AGENT" and order.agent_id:
        agent_id = db.execute(select(Agent.id).where(Agent.user_id == user.id)).scalar_one_or_none()
        if agent_id == order.agent_id:
            return None
    raise HTTPException(status_code=404, detail="Order not found")


@router.post(
    "",
    response_model=OrderOut,
    summary="Place a multi-vendor order",
    responses=error_responses(400, 401, 403, 404, 422, 500),
)
def place_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    customer: User = Depends(require_roles("CUSTOMER")),
):
    order, _ = create_order(db, customer=customer, items_in=payload.items)
    db.commit()
    db.refresh(order)
    return build_order_outs(db, [order], viewer=customer)[0]


@router.get(
    "",
    response_model=OrderListOut,
    summary="List orders",
    responses=error_responses(400, 401, 403, 422, 500),
)
def list_orders(
    status: str | None = Query(default=None),
    payment_status: str | None = Query(default=None),
    search: str | None = Query(default=None, max_length=80),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("CUSTOMER", "ADMIN")),
):
    normalized_status = normalize_order_status(status) if status else None
    normalized_payment = payment_status.strip().upper() if payment_status else None
    if normalized_payment and normalized_payment not in PAYMENT_STATUSES:
        allowed = ", ".join(sorted(PAYMENT_STATUSES))
        raise HTTPException(status_code=400, detail=f"Invalid payment status. Allowed: {allowed}")

    scope_customer_id = user.id if user.role == "CUSTOMER" else None
    cancelled_count = auto_cancel_expired_pending_orders(db, customer_id=scope_customer_id)
    if cancelled_count > 0:
        db.commit()

    count_stmt = select(func.count(Order.id))
    data_stmt = select(Order)
    if scope_customer_id:
        count_stmt = count_stmt.where(Order.customer_id == scope_customer_id)
        data_stmt = data_stmt.where(Order.customer_id == scope_customer_id)
    if normalized_status:
        count_stmt = count_stmt.where(Order.status == normalized_status)
        data_stmt = data_stmt.where(Order.status == normalized_status)
    if normalized_payment:
        count_stmt = count_stmt.where(Order.payment_status == normalized_payment)
        data_stmt = data_stmt.where(Order.payment_status == normalized_payment)
    if search and search.strip():
        term = search.strip()
        condition = or_(Order.id.startswith(term, autoescape=True), Order.payment_reference == term)
        count_stmt = count_stmt.where(condition)
        data_stmt = data_stmt.where(condition)

    total_count = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        data_stmt.order_by(Order.created_at.desc(), Order.id.asc()).offset(offset).limit(limit)
    ).scalars().all()
    items = build_order_outs(db, list(rows), viewer=user)
    return OrderListOut(
        items=items,
        pagination=build_pagination(total=total_count, limit=limit, offset=offset, count=len(items)),
    )


@router.get(
    "/{order_id}",
    response_model=OrderOut,
    summary="Get order details",
    responses=error_responses(401, 404, 500),
)
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    order = db.execute(select(Order).where(Order.id == order_id)).scalar_one_or_none()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    vendor_id = _viewer_vendor_id(db, order, user)
    return build_order_outs(db, [order], viewer=user, vendor_id=vendor_id)[0]


@router.post(
    "/{order_id}/cancel",
    response_model=OrderOut,
    summary="Cancel an order before drop-off",
    responses=error_responses(400, 401, 403, 404, 422, 500),
)
def cancel(
    order_id: str,
    payload: OrderCancelIn | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("CUSTOMER", "ADMIN")),
):
    order = get_order_for_update(db, order_id)
    if user.role == "CUSTOMER" and order.customer_id != user.id:
        raise HTTPException(status_code=404, detail="Order not found")

    cancel_order(db, order, actor=user, reason=payload.reason if payload else None)
    db.commit()
    dispatch_pending_push(db)
    db.refresh(order)
    return build_order_outs(db, [order], viewer=user)[0]


@router.patch(
    "/{order_id}/status",
    response_model=OrderOut,
    summary="Admin status override within the allowed transitions",
    responses=error_responses(400, 401, 403, 404, 422, 500),
)
def update_order_status(
    order_id: str,
    payload: OrderStatusUpdateIn,
    db: Session = Depends(get_db),
    admin: User = Depends(require_roles("ADMIN")),
):
    order = get_order_for_update(db, order_id)
    next_status = normalize_order_status(payload.status)

    if next_status == "CANCELLED":
        cancel_order(db, order, actor=admin, reason=payload.note)
    else:
        changed = transition_order(
            db,
            order,
            next_status,
            actor_user_id=admin.id,
            action="order.admin_status_update",
            metadata={"note": payload.note},
        )
        if changed and next_status == "PROCESSING":
            assign_handoff_codes(order)

    db.commit()
    dispatch_pending_push(db)
    db.refresh(order)
    return build_order_outs(db, [order], viewer=admin)[0]
