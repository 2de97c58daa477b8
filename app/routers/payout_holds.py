from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.deps import get_db
from app.core.money import to_money
from app.core.permissions import get_optional_vendor, require_roles
from app.models.payout import PayoutHold
from app.models.user import User, Vendor
from app.schemas.common import build_pagination
from app.schemas.payout import PayoutHoldCreate, PayoutHoldListOut, PayoutHoldOut, PayoutHoldStatus
from app.services.payout_service import merge_into_active_hold, release_hold

router = APIRouter(prefix="/payout-holds", tags=["payout-holds"])


def _hold_out(hold: PayoutHold) -> PayoutHoldOut:
    return PayoutHoldOut(
        id=hold.id,
        vendor_id=hold.vendor_id,
        hold_amount=float(to_money(hold.hold_amount)),
        reason=hold.reason,
        status=hold.status,
        refund_request_ids=list(hold.refund_request_ids or []),
        created_by=hold.created_by,
        released_by=hold.released_by,
        released_at=hold.released_at,
        applied_payout_id=hold.applied_payout_id,
        created_at=hold.created_at,
    )


@router.get(
    "",
    response_model=PayoutHoldListOut,
    summary="List payout holds",
    responses=error_responses(401, 403, 422, 500),
)
def list_payout_holds(
    status: PayoutHoldStatus | None = Query(default=None),
    vendor_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("VENDOR", "ADMIN")),
    vendor: Vendor | None = Depends(get_optional_vendor),
):
    # Vendors are pinned to their own holds whatever vendor_id they pass.
    scope_vendor_id = (vendor.id if vendor else "") if user.role == "VENDOR" else vendor_id

    count_stmt = select(func.count(PayoutHold.id))
    data_stmt = select(PayoutHold)
    if scope_vendor_id is not None:
        count_stmt = count_stmt.where(PayoutHold.vendor_id == scope_vendor_id)
        data_stmt = data_stmt.where(PayoutHold.vendor_id == scope_vendor_id)
    if status:
        count_stmt = count_stmt.where(PayoutHold.status == status)
        data_stmt = data_stmt.where(PayoutHold.status == status)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        data_stmt.order_by(PayoutHold.created_at.desc()).offset(offset).limit(limit)
    ).scalars().all()
    items = [_hold_out(row) for row in rows]
    return PayoutHoldListOut(
        items=items,
        pagination=build_pagination(total=total, limit=limit, offset=offset, count=len(items)),
    )


@router.post(
    "",
    response_model=PayoutHoldOut,
    summary="Place a manual payout hold on a vendor",
    responses=error_responses(401, 403, 404, 422, 500),
)
def create_payout_hold(
    payload: PayoutHoldCreate,
    db: Session = Depends(get_db),
    admin: User = Depends(require_roles("ADMIN")),
):
    vendor = db.execute(select(Vendor.id).where(Vendor.id == payload.vendor_id)).scalar_one_or_none()
    if not vendor:
        raise HTTPException(status_code=404, detail="Vendor not found")

    hold = merge_into_active_hold(
        db,
        vendor_id=payload.vendor_id,
        amount=to_money(payload.hold_amount),
        reason=payload.reason,
        actor_user_id=admin.id,
    )
    db.commit()
    db.refresh(hold)
    return _hold_out(hold)


@router.put(
    "/{hold_id}/release",
    response_model=PayoutHoldOut,
    summary="Release an active payout hold",
    responses=error_responses(400, 401, 403, 404, 500),
)
def release_payout_hold(
    hold_id: str,
    db: Session = Depends(get_db),
    admin: User = Depends(require_roles("ADMIN")),
):
    hold = release_hold(db, hold_id=hold_id, actor=admin)
    db.commit()
    db.refresh(hold)
    return _hold_out(hold)
