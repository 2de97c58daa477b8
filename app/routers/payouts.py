from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.deps import get_db
from app.core.money import sum_money, to_money
from app.core.permissions import get_current_vendor, get_optional_vendor, require_roles
from app.models.payout import Payout
from app.models.user import User, Vendor
from app.schemas.common import build_pagination
from app.schemas.payout import (
    PayoutListOut,
    PayoutOut,
    PayoutRejectIn,
    PayoutRequestIn,
    PayoutStatus,
    PendingRefundOut,
    RefundImpactOut,
    VendorBalanceOut,
    VendorRefundImpactOut,
)
from app.services.payout_service import (
    VendorBalance,
    approve_payout,
    approve_payout_with_holds,
    refund_impact,
    reject_payout,
    request_payout,
    vendor_balance,
)

router = APIRouter(prefix="/payouts", tags=["payouts"])


def _payout_out(payout: Payout) -> PayoutOut:
    return PayoutOut(
        id=payout.id,
        vendor_id=payout.vendor_id,
        amount=float(to_money(payout.amount)),
        status=payout.status,
        bank_name=payout.bank_name,
        account_number=payout.account_number,
        account_name=payout.account_name,
        approved_amount=float(to_money(payout.approved_amount)) if payout.approved_amount is not None else None,
        held_amount=float(to_money(payout.held_amount)) if payout.held_amount is not None else None,
        approved_by=payout.approved_by,
        approved_at=payout.approved_at,
        rejection_reason=payout.rejection_reason,
        transfer_reference=payout.transfer_reference,
        completed_at=payout.completed_at,
        created_at=payout.created_at,
    )


def _balance_out(balance: VendorBalance) -> VendorBalanceOut:
    return VendorBalanceOut(
        vendor_id=balance.vendor_id,
        total_earnings=float(balance.total_earnings),
        committed_payouts=float(balance.committed_payouts),
        active_holds=float(balance.active_holds),
        available_balance=float(balance.available_balance),
    )


@router.get(
    "/balance",
    response_model=VendorBalanceOut,
    summary="Current vendor's available payout balance",
    responses=error_responses(401, 403, 404, 500),
)
def my_balance(
    db: Session = Depends(get_db),
    vendor: Vendor = Depends(get_current_vendor),
):
    return _balance_out(vendor_balance(db, vendor.id))


@router.get(
    "/balance/{vendor_id}",
    response_model=VendorBalanceOut,
    summary="A vendor's available payout balance",
    responses=error_responses(401, 403, 404, 500),
)
def vendor_balance_for_admin(
    vendor_id: str,
    db: Session = Depends(get_db),
    _: User = Depends(require_roles("ADMIN")),
):
    exists = db.execute(select(Vendor.id).where(Vendor.id == vendor_id)).scalar_one_or_none()
    if not exists:
        raise HTTPException(status_code=404, detail="Vendor not found")
    return _balance_out(vendor_balance(db, vendor_id))


@router.get(
    "/refund-impact",
    response_model=RefundImpactOut,
    summary="Pending refunds and active holds against each vendor's balance",
    responses=error_responses(401, 403, 422, 500),
)
def get_refund_impact(
    vendor_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    _: User = Depends(require_roles("ADMIN")),
):
    impacts = refund_impact(db, vendor_id=vendor_id)
    items = [
        VendorRefundImpactOut(
            vendor_id=impact.vendor_id,
            store_name=impact.store_name,
            available_balance=float(impact.balance.available_balance),
            active_holds=float(impact.balance.active_holds),
            pending_refund_total=float(impact.pending_refund_total),
            pending_refund_count=len(impact.pending_refunds),
            balance_after_refunds=float(impact.balance_after_refunds),
            pending_refunds=[
                PendingRefundOut(
                    refund_request_id=entry.refund_request_id,
                    amount=float(entry.amount),
                    created_at=entry.created_at,
                )
                for entry in impact.pending_refunds
            ],
        )
        for impact in impacts
    ]
    return RefundImpactOut(
        items=items,
        total_pending_refunds=float(sum_money(impact.pending_refund_total for impact in impacts)),
        total_active_holds=float(sum_money(impact.balance.active_holds for impact in impacts)),
    )


@router.post(
    "",
    response_model=PayoutOut,
    summary="Request a payout of available earnings",
    responses=error_responses(400, 401, 403, 404, 422, 500),
)
def create_payout_request(
    payload: PayoutRequestIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("VENDOR")),
    vendor: Vendor = Depends(get_current_vendor),
):
    payout = request_payout(db, vendor_id=vendor.id, payload=payload, actor_user_id=user.id)
    db.commit()
    db.refresh(payout)
    return _payout_out(payout)


@router.get(
    "",
    response_model=PayoutListOut,
    summary="List payouts",
    responses=error_responses(401, 403, 422, 500),
)
def list_payouts(
    status: PayoutStatus | None = Query(default=None),
    vendor_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("VENDOR", "ADMIN")),
    vendor: Vendor | None = Depends(get_optional_vendor),
):
    scope_vendor_id = (vendor.id if vendor else "") if user.role == "VENDOR" else vendor_id

    count_stmt = select(func.count(Payout.id))
    data_stmt = select(Payout)
    if scope_vendor_id is not None:
        count_stmt = count_stmt.where(Payout.vendor_id == scope_vendor_id)
        data_stmt = data_stmt.where(Payout.vendor_id == scope_vendor_id)
    if status:
        count_stmt = count_stmt.where(Payout.status == status)
        data_stmt = data_stmt.where(Payout.status == status)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(data_stmt.order_by(Payout.created_at.desc()).offset(offset).limit(limit)).scalars().all()
    items = [_payout_out(row) for row in rows]
    return PayoutListOut(
        items=items,
        pagination=build_pagination(total=total, limit=limit, offset=offset, count=len(items)),
    )


@router.post(
    "/{payout_id}/approve",
    response_model=PayoutOut,
    summary="Approve a payout for a vendor without active holds",
    responses=error_responses(400, 401, 403, 404, 409, 500),
)
def approve(
    payout_id: str,
    db: Session = Depends(get_db),
    admin: User = Depends(require_roles("ADMIN")),
):
    payout = approve_payout(db, payout_id=payout_id, actor=admin)
    db.commit()
    db.refresh(payout)
    return _payout_out(payout)


@router.post(
    "/{payout_id}/approve-with-holds",
    response_model=PayoutOut,
    summary="Approve a payout net of the vendor's active holds",
    responses=error_responses(400, 401, 403, 404, 500),
)
def approve_with_holds(
    payout_id: str,
    db: Session = Depends(get_db),
    admin: User = Depends(require_roles("ADMIN")),
):
    payout = approve_payout_with_holds(db, payout_id=payout_id, actor=admin)
    db.commit()
    db.refresh(payout)
    return _payout_out(payout)


@router.post(
    "/{payout_id}/reject",
    response_model=PayoutOut,
    summary="Reject a pending payout",
    responses=error_responses(400, 401, 403, 404, 422, 500),
)
def reject(
    payout_id: str,
    payload: PayoutRejectIn | None = None,
    db: Session = Depends(get_db),
    admin: User = Depends(require_roles("ADMIN")),
):
    payout = reject_payout(db, payout_id=payout_id, actor=admin, reason=payload.reason if payload else None)
    db.commit()
    db.refresh(payout)
    return _payout_out(payout)
