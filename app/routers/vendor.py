from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.deps import get_db
from app.core.permissions import get_current_vendor, require_roles
from app.models.order import Order, OrderItem
from app.models.user import User, Vendor
from app.routers.orders import build_order_outs
from app.schemas.order import HandoffOut, OrderOut
from app.services.fulfilment_service import normalize_order_status, vendor_mark_ready
from app.services.notification_service import dispatch_pending_push

router = APIRouter(prefix="/vendor", tags=["vendor"])

# Unpaid orders are not actionable for vendors yet; paid_at also excludes unpaid cancellations.
VENDOR_VISIBLE_STATUSES = ("PROCESSING", "DROPPED_OFF", "READY_FOR_PICKUP", "PICKED_UP", "CANCELLED", "REFUNDED")


@router.get(
    "/orders",
    response_model=list[OrderOut],
    summary="Paid orders containing the vendor's items",
    responses=error_responses(400, 401, 403, 404, 422, 500),
)
def list_vendor_orders(
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("VENDOR")),
    vendor: Vendor = Depends(get_current_vendor),
):
    vendor_order_ids = select(OrderItem.order_id).where(OrderItem.vendor_id == vendor.id)
    stmt = select(Order).where(
        Order.id.in_(vendor_order_ids),
        Order.status.in_(VENDOR_VISIBLE_STATUSES),
        Order.paid_at.is_not(None),
    )
    if status:
        stmt = stmt.where(Order.status == normalize_order_status(status))
    rows = db.execute(stmt.order_by(Order.created_at.desc()).offset(offset).limit(limit)).scalars().all()
    return build_order_outs(db, list(rows), viewer=user, vendor_id=vendor.id)


@router.post(
    "/orders/{order_id}/mark-ready",
    response_model=HandoffOut,
    summary="Vendor marks a dropped-off order ready for pickup",
    responses=error_responses(400, 401, 403, 404, 500),
)
def mark_ready(
    order_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("VENDOR")),
    vendor: Vendor = Depends(get_current_vendor),
):
    order = vendor_mark_ready(db, order_id=order_id, vendor=vendor, actor_user_id=user.id)
    db.commit()
    dispatch_pending_push(db)
    db.refresh(order)
    return HandoffOut(
        order_id=order.id,
        status=order.status,
        pickup_status=order.pickup_status,
        agent_id=order.agent_id,
        message="Order is ready for pickup",
    )
