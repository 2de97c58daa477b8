from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.deps import get_db
from app.core.money import to_money
from app.core.permissions import get_optional_vendor, require_roles
from app.models.refund import RefundRequest, ReturnRecord
from app.models.user import User, Vendor
from app.schemas.common import build_pagination
from app.schemas.refund import (
    RefundDecisionIn,
    RefundOverrideIn,
    RefundRequestCreate,
    RefundRequestListOut,
    RefundRequestOut,
    RefundRequestStatus,
)
from app.services.notification_service import dispatch_pending_push
from app.services.refund_service import admin_override_refund, create_refund_request, decide_refund_request

router = APIRouter(prefix="/refunds", tags=["refunds"])


def _refund_out(refund: RefundRequest, return_record: ReturnRecord) -> RefundRequestOut:
    return RefundRequestOut(
        id=refund.id,
        return_id=refund.return_id,
        order_id=refund.order_id,
        order_item_id=refund.order_item_id,
        customer_id=refund.customer_id,
        vendor_id=refund.vendor_id,
        reason=refund.reason,
        description=refund.description,
        refund_amount=float(to_money(refund.refund_amount)),
        photos=list(refund.photos or []),
        status=refund.status,
        vendor_response=refund.vendor_response,
        admin_notes=refund.admin_notes,
        return_status=return_record.status,
        refund_status=return_record.refund_status,
        refund_reference=return_record.refund_reference,
        decided_by=refund.decided_by,
        decided_at=refund.decided_at,
        created_at=refund.created_at,
    )


def _load_out(db: Session, refund: RefundRequest) -> RefundRequestOut:
    db.refresh(refund)
    return_record = db.execute(select(ReturnRecord).where(ReturnRecord.id == refund.return_id)).scalar_one()
    return _refund_out(refund, return_record)


@router.post(
    "",
    response_model=RefundRequestOut,
    summary="Request a refund for a picked-up order item",
    responses=error_responses(400, 401, 403, 404, 409, 422, 500),
)
def request_refund(
    payload: RefundRequestCreate,
    db: Session = Depends(get_db),
    customer: User = Depends(require_roles("CUSTOMER")),
):
    refund, _ = create_refund_request(db, customer=customer, payload=payload)
    db.commit()
    dispatch_pending_push(db)
    return _load_out(db, refund)


@router.get(
    "",
    response_model=RefundRequestListOut,
    summary="List refund requests visible to the caller",
    responses=error_responses(401, 403, 422, 500),
)
def list_refund_requests(
    status: RefundRequestStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("CUSTOMER", "VENDOR", "ADMIN")),
    vendor: Vendor | None = Depends(get_optional_vendor),
):
    count_stmt = select(func.count(RefundRequest.id))
    data_stmt = select(RefundRequest, ReturnRecord).join(ReturnRecord, ReturnRecord.id == RefundRequest.return_id)

    if user.role == "CUSTOMER":
        count_stmt = count_stmt.where(RefundRequest.customer_id == user.id)
        data_stmt = data_stmt.where(RefundRequest.customer_id == user.id)
    elif user.role == "VENDOR":
        vendor_id = vendor.id if vendor else ""
        count_stmt = count_stmt.where(RefundRequest.vendor_id == vendor_id)
        data_stmt = data_stmt.where(RefundRequest.vendor_id == vendor_id)
    if status:
        count_stmt = count_stmt.where(RefundRequest.status == status)
        data_stmt = data_stmt.where(RefundRequest.status == status)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        data_stmt.order_by(RefundRequest.created_at.desc()).offset(offset).limit(limit)
    ).all()
    items = [_refund_out(refund, return_record) for refund, return_record in rows]
    return RefundRequestListOut(
        items=items,
        pagination=build_pagination(total=total, limit=limit, offset=offset, count=len(items)),
    )


@router.put(
    "/{refund_id}",
    response_model=RefundRequestOut,
    summary="Vendor or admin approves or rejects a pending refund",
    responses=error_responses(400, 401, 403, 404, 409, 422, 500),
)
def decide_refund(
    refund_id: str,
    payload: RefundDecisionIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("VENDOR", "ADMIN")),
    vendor: Vendor | None = Depends(get_optional_vendor),
):
    refund = decide_refund_request(
        db,
        refund_id=refund_id,
        actor=user,
        vendor=vendor,
        action=payload.action,
        note=payload.note,
    )
    db.commit()
    dispatch_pending_push(db)
    return _load_out(db, refund)


@router.put(
    "/{refund_id}/override",
    response_model=RefundRequestOut,
    summary="Admin overrides a refund decision",
    responses=error_responses(400, 401, 403, 404, 409, 422, 500),
)
def override_refund(
    refund_id: str,
    payload: RefundOverrideIn,
    db: Session = Depends(get_db),
    admin: User = Depends(require_roles("ADMIN")),
):
    refund = admin_override_refund(
        db,
        refund_id=refund_id,
        actor=admin,
        action=payload.action,
        reason=payload.reason,
    )
    db.commit()
    dispatch_pending_push(db)
    return _load_out(db, refund)
