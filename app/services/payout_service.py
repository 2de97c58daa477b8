import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.money import ZERO_MONEY, sum_money, to_money
from app.core.observability import log_event
from app.models.order import Order, OrderItem
from app.models.payout import Payout, PayoutHold
from app.models.refund import RefundRequest
from app.models.user import User, Vendor
from app.schemas.payout import PayoutRequestIn
from app.services.audit_service import log_audit_event
from app.services.fulfilment_service import utcnow
from app.services.payment_provider import TransferInitRequest, get_payment_provider

logger = logging.getLogger("campusdrop.payouts")

# Payouts in these states have already claimed part of the vendor's earnings.
COMMITTED_PAYOUT_STATUSES = ("PENDING", "APPROVED", "COMPLETED")


@dataclass(frozen=True)
class VendorBalance:
    vendor_id: str
    total_earnings: Decimal
    committed_payouts: Decimal
    active_holds: Decimal
    available_balance: Decimal


@dataclass(frozen=True)
class PendingRefund:
    refund_request_id: str
    amount: Decimal
    created_at: datetime


@dataclass(frozen=True)
class VendorRefundImpact:
    vendor_id: str
    store_name: str
    balance: VendorBalance
    pending_refund_total: Decimal
    pending_refunds: list[PendingRefund]

    @property
    def balance_after_refunds(self) -> Decimal:
        # Negative when the vendor owes more than it can currently withdraw.
        return to_money(self.balance.available_balance - self.balance.active_holds - self.pending_refund_total)


def get_vendor_for_update(db: Session, vendor_id: str) -> Vendor:
    vendor = db.execute(
        select(Vendor).where(Vendor.id == vendor_id).with_for_update()
    ).scalar_one_or_none()
    if not vendor:
        raise HTTPException(status_code=404, detail="Vendor not found")
    return vendor


def active_holds_for_vendor(db: Session, vendor_id: str, *, lock: bool = False) -> list[PayoutHold]:
    stmt = (
        select(PayoutHold)
        .where(PayoutHold.vendor_id == vendor_id, PayoutHold.status == "ACTIVE")
        .order_by(PayoutHold.created_at.asc())
    )
    if lock:
        stmt = stmt.with_for_update()
    return list(db.execute(stmt).scalars().all())


def merge_into_active_hold(
    db: Session,
    *,
    vendor_id: str,
    amount: Decimal,
    reason: str,
    actor_user_id: str,
    refund_request_ids: list[str] | None = None,
) -> PayoutHold:
    """Add ``amount`` to the vendor's single ACTIVE hold, creating it if needed.

    The vendor row is locked first so two concurrent approvals for the same
    vendor cannot both decide that no hold exists yet.
    """
    get_vendor_for_update(db, vendor_id)
    amount = to_money(amount)
    new_ids = list(refund_request_ids or [])

    existing = active_holds_for_vendor(db, vendor_id, lock=True)
    if existing:
        hold = existing[0]
        previous_amount = to_money(hold.hold_amount)
        hold.hold_amount = to_money(previous_amount + amount)
        # JSON columns are not mutation-tracked, so assign a fresh list.
        hold.refund_request_ids = [*(hold.refund_request_ids or []), *new_ids]
        log_audit_event(
            db,
            actor_user_id=actor_user_id,
            action="payout_hold.merge",
            target_type="payout_hold",
            target_id=hold.id,
            metadata_json={
                "vendor_id": vendor_id,
                "added_amount": float(amount),
                "previous_amount": float(previous_amount),
                "hold_amount": float(hold.hold_amount),
                "refund_request_ids": new_ids,
            },
        )
        return hold

    hold = PayoutHold(
        id=str(uuid.uuid4()),
        vendor_id=vendor_id,
        hold_amount=amount,
        reason=reason,
        status="ACTIVE",
        refund_request_ids=new_ids,
        created_by=actor_user_id,
    )
    db.add(hold)
    db.flush()
    log_audit_event(
        db,
        actor_user_id=actor_user_id,
        action="payout_hold.create",
        target_type="payout_hold",
        target_id=hold.id,
        metadata_json={
            "vendor_id": vendor_id,
            "hold_amount": float(amount),
            "reason": reason,
            "refund_request_ids": new_ids,
        },
    )
    return hold


def remove_refund_from_hold(
    db: Session,
    *,
    vendor_id: str,
    refund_request_id: str,
    amount: Decimal,
    actor_user_id: str,
) -> PayoutHold | None:
    holds = db.execute(
        select(PayoutHold)
        .where(PayoutHold.vendor_id == vendor_id, PayoutHold.status.in_(("ACTIVE", "APPLIED")))
        .with_for_update()
    ).scalars().all()
    hold = next((row for row in holds if refund_request_id in (row.refund_request_ids or [])), None)
    if not hold:
        return None
    if hold.status != "ACTIVE":
        raise HTTPException(status_code=409, detail="Refund hold has already been applied to a payout")

    hold.hold_amount = max(to_money(to_money(hold.hold_amount) - to_money(amount)), ZERO_MONEY)
    hold.refund_request_ids = [rid for rid in (hold.refund_request_ids or []) if rid != refund_request_id]
    if hold.hold_amount <= ZERO_MONEY and not hold.refund_request_ids:
        hold.status = "RELEASED"
        hold.released_at = utcnow()
        hold.released_by = actor_user_id

    log_audit_event(
        db,
        actor_user_id=actor_user_id,
        action="payout_hold.reduce",
        target_type="payout_hold",
        target_id=hold.id,
        metadata_json={
            "refund_request_id": refund_request_id,
            "removed_amount": float(to_money(amount)),
            "hold_amount": float(hold.hold_amount),
            "status": hold.status,
        },
    )
    return hold


def get_hold_for_update(db: Session, hold_id: str) -> PayoutHold:
    hold = db.execute(
        select(PayoutHold).where(PayoutHold.id == hold_id).with_for_update()
    ).scalar_one_or_none()
    if not hold:
        raise HTTPException(status_code=404, detail="Payout hold not found")
    return hold


def release_hold(db: Session, *, hold_id: str, actor: User) -> PayoutHold:
    hold = get_hold_for_update(db, hold_id)
    if hold.status != "ACTIVE":
        raise HTTPException(status_code=400, detail="Hold is not active")

    hold.status = "RELEASED"
    hold.released_at = utcnow()
    hold.released_by = actor.id
    log_audit_event(
        db,
        actor_user_id=actor.id,
        action="payout_hold.release",
        target_type="payout_hold",
        target_id=hold.id,
        metadata_json={"vendor_id": hold.vendor_id, "hold_amount": float(to_money(hold.hold_amount))},
    )
    return hold


def vendor_balance(db: Session, vendor_id: str) -> VendorBalance:
    earnings = db.execute(
        select(func.coalesce(func.sum(OrderItem.line_total - OrderItem.commission_amount), 0))
        .join(Order, Order.id == OrderItem.order_id)
        .where(OrderItem.vendor_id == vendor_id, Order.status == "PICKED_UP")
    ).scalar_one()
    committed = db.execute(
        select(func.coalesce(func.sum(Payout.amount), 0)).where(
            Payout.vendor_id == vendor_id,
            Payout.status.in_(COMMITTED_PAYOUT_STATUSES),
        )
    ).scalar_one()
    holds = db.execute(
        select(func.coalesce(func.sum(PayoutHold.hold_amount), 0)).where(
            PayoutHold.vendor_id == vendor_id,
            PayoutHold.status == "ACTIVE",
        )
    ).scalar_one()

    total_earnings = to_money(earnings)
    committed_payouts = to_money(committed)
    return VendorBalance(
        vendor_id=vendor_id,
        total_earnings=total_earnings,
        committed_payouts=committed_payouts,
        active_holds=to_money(holds),
        available_balance=max(to_money(total_earnings - committed_payouts), ZERO_MONEY),
    )


def refund_impact(db: Session, *, vendor_id: str | None = None) -> list[VendorRefundImpact]:
    """Per-vendor view of refunds that will reduce upcoming payouts.

    Covers every vendor with a PENDING refund request or an ACTIVE hold.
    Approved refunds already sit in the hold; pending ones are shown
    separately because they may still be rejected.
    """
    pending_stmt = select(RefundRequest).where(RefundRequest.status == "PENDING")
    hold_stmt = select(PayoutHold.vendor_id).where(PayoutHold.status == "ACTIVE")
    if vendor_id:
        pending_stmt = pending_stmt.where(RefundRequest.vendor_id == vendor_id)
        hold_stmt = hold_stmt.where(PayoutHold.vendor_id == vendor_id)

    pending_by_vendor: dict[str, list[PendingRefund]] = {}
    for refund in db.execute(pending_stmt.order_by(RefundRequest.created_at.asc())).scalars():
        pending_by_vendor.setdefault(refund.vendor_id, []).append(
            PendingRefund(
                refund_request_id=refund.id,
                amount=to_money(refund.refund_amount),
                created_at=refund.created_at,
            )
        )
    vendor_ids = set(pending_by_vendor) | set(db.execute(hold_stmt).scalars())
    if not vendor_ids:
        return []

    vendors = db.execute(
        select(Vendor.id, Vendor.store_name).where(Vendor.id.in_(vendor_ids)).order_by(Vendor.store_name.asc())
    ).all()
    impacts = []
    for vid, store_name in vendors:
        pending = pending_by_vendor.get(vid, [])
        impacts.append(
            VendorRefundImpact(
                vendor_id=vid,
                store_name=store_name,
                balance=vendor_balance(db, vid),
                pending_refund_total=sum_money(entry.amount for entry in pending),
                pending_refunds=pending,
            )
        )
    return impacts


def request_payout(db: Session, *, vendor_id: str, payload: PayoutRequestIn, actor_user_id: str) -> Payout:
    # Serialises concurrent requests so two of them cannot spend the same balance.
    get_vendor_for_update(db, vendor_id)
    amount = to_money(payload.amount)
    balance = vendor_balance(db, vendor_id)
    if amount > balance.available_balance:
        raise HTTPException(status_code=400, detail="Insufficient available balance")

    payout = Payout(
        id=str(uuid.uuid4()),
        vendor_id=vendor_id,
        amount=amount,
        status="PENDING",
        bank_name=payload.bank_name,
        account_number=payload.account_number,
        account_name=payload.account_name,
    )
    db.add(payout)
    db.flush()
    log_audit_event(
        db,
        actor_user_id=actor_user_id,
        action="payout.request",
        target_type="payout",
        target_id=payout.id,
        metadata_json={"amount": float(amount), "available_balance": float(balance.available_balance)},
    )
    return payout


def get_payout_for_update(db: Session, payout_id: str) -> Payout:
    payout = db.execute(
        select(Payout).where(Payout.id == payout_id).with_for_update()
    ).scalar_one_or_none()
    if not payout:
        raise HTTPException(status_code=404, detail="Payout not found")
    return payout


def _ensure_pending(payout: Payout) -> None:
    if payout.status != "PENDING":
        raise HTTPException(status_code=400, detail=f"Payout is not pending (status '{payout.status}')")


def _initiate_transfer(payout: Payout, amount: Decimal) -> None:
    provider = get_payment_provider(settings.payment_provider_default)
    result = provider.initiate_transfer(
        TransferInitRequest(
            payout_id=payout.id,
            amount=amount,
            bank_name=payout.bank_name,
            account_number=payout.account_number,
            account_name=payout.account_name,
        )
    )
    payout.transfer_reference = result.reference


def approve_payout(db: Session, *, payout_id: str, actor: User) -> Payout:
    payout = get_payout_for_update(db, payout_id)
    _ensure_pending(payout)
    get_vendor_for_update(db, payout.vendor_id)
    if active_holds_for_vendor(db, payout.vendor_id):
        raise HTTPException(
            status_code=409,
            detail="Vendor has active payout holds; approve with holds instead",
        )

    payout.status = "APPROVED"
    payout.approved_amount = to_money(payout.amount)
    payout.held_amount = ZERO_MONEY
    payout.approved_by = actor.id
    payout.approved_at = utcnow()
    _initiate_transfer(payout, payout.approved_amount)
    log_audit_event(
        db,
        actor_user_id=actor.id,
        action="payout.approve",
        target_type="payout",
        target_id=payout.id,
        metadata_json={"approved_amount": float(payout.approved_amount)},
    )
    return payout


def approve_payout_with_holds(db: Session, *, payout_id: str, actor: User) -> Payout:
    payout = get_payout_for_update(db, payout_id)
    _ensure_pending(payout)
    get_vendor_for_update(db, payout.vendor_id)
    holds = active_holds_for_vendor(db, payout.vendor_id, lock=True)

    total_holds = sum_money(hold.hold_amount for hold in holds)
    remaining = to_money(to_money(payout.amount) - total_holds)
    if remaining <= ZERO_MONEY:
        raise HTTPException(status_code=400, detail="Insufficient payout amount after holds")

    payout.status = "APPROVED"
    payout.approved_amount = remaining
    payout.held_amount = total_holds
    payout.approved_by = actor.id
    payout.approved_at = utcnow()
    for hold in holds:
        hold.status = "APPLIED"
        hold.applied_payout_id = payout.id
    _initiate_transfer(payout, remaining)

    log_audit_event(
        db,
        actor_user_id=actor.id,
        action="payout.approve_with_holds",
        target_type="payout",
        target_id=payout.id,
        metadata_json={
            "requested_amount": float(to_money(payout.amount)),
            "held_amount": float(total_holds),
            "approved_amount": float(remaining),
            "hold_ids": [hold.id for hold in holds],
        },
    )
    return payout


def reject_payout(db: Session, *, payout_id: str, actor: User, reason: str | None) -> Payout:
    payout = get_payout_for_update(db, payout_id)
    _ensure_pending(payout)

    payout.status = "FAILED"
    payout.rejection_reason = (reason or "").strip() or "Rejected by admin"
    log_audit_event(
        db,
        actor_user_id=actor.id,
        action="payout.reject",
        target_type="payout",
        target_id=payout.id,
        metadata_json={"reason": payout.rejection_reason},
    )
    return payout


def _restore_applied_holds(db: Session, payout: Payout) -> int:
    applied = db.execute(
        select(PayoutHold)
        .where(PayoutHold.applied_payout_id == payout.id, PayoutHold.status == "APPLIED")
        .with_for_update()
    ).scalars().all()
    for hold in applied:
        hold.status = "RELEASED"
        hold.released_at = utcnow()
        merge_into_active_hold(
            db,
            vendor_id=hold.vendor_id,
            amount=to_money(hold.hold_amount),
            reason=hold.reason,
            actor_user_id=hold.created_by,
            refund_request_ids=hold.refund_request_ids or [],
        )
    return len(applied)


def find_payout_by_transfer_reference(db: Session, reference: str) -> Payout | None:
    return db.execute(
        select(Payout)
        .where((Payout.transfer_reference == reference) | (Payout.id == reference))
        .with_for_update()
    ).scalar_one_or_none()


def settle_transfer(db: Session, payout: Payout, *, succeeded: bool, event_id: str) -> str:
    if payout.status in {"COMPLETED", "FAILED"}:
        return "already_settled"
    if payout.status != "APPROVED":
        log_event(
            logger,
            "transfer_for_unapproved_payout",
            level=logging.WARNING,
            payout_id=payout.id,
            status=payout.status,
            event_id=event_id,
        )
        return "payout_not_approved"

    restored = 0
    if succeeded:
        payout.status = "COMPLETED"
        payout.completed_at = utcnow()
    else:
        payout.status = "FAILED"
        payout.rejection_reason = "Transfer failed"
        # Withheld refund money was never paid out, so the holds stay owed.
        restored = _restore_applied_holds(db, payout)

    log_audit_event(
        db,
        actor_user_id=None,
        action="payout.transfer_completed" if succeeded else "payout.transfer_failed",
        target_type="payout",
        target_id=payout.id,
        metadata_json={"webhook_event_id": event_id, "restored_holds": restored},
    )
    return "payout_completed" if succeeded else "payout_failed"
