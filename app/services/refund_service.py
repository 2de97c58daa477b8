"""Refund requests, returns, and their payout-hold reconciliation.

Approving a refund does three things in the caller's transaction: bumps the
vendor's refund statistics, merges the amount into the vendor's ACTIVE payout
hold, and asks the payment provider to start the refund.
"""

import logging
import uuid
from datetime import timedelta

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.money import ZERO_MONEY, to_money
from app.core.observability import log_event
from app.models.order import Order, OrderItem
from app.models.payout import PayoutHold
from app.models.refund import RefundRequest, ReturnRecord
from app.models.user import User, Vendor
from app.schemas.refund import RefundRequestCreate
from app.services.audit_service import log_audit_event
from app.services.fulfilment_service import as_utc, get_order_for_update, transition_order, utcnow
from app.services.notification_service import notify, short_order_id
from app.services.payment_provider import RefundInitRequest, get_payment_provider
from app.services.payout_service import get_vendor_for_update, merge_into_active_hold, remove_refund_from_hold

logger = logging.getLogger("campusdrop.refunds")

CLOSED_REFUND_STATUSES = ("REJECTED", "CANCELLED")
REFUND_HOLD_REASON = "Pending refund processing"
OVERRIDE_HOLD_REASON = "Pending refund processing after admin override"

_DECISION_TO_STATUS = {"approve": "APPROVED", "reject": "REJECTED"}


def get_refund_for_update(db: Session, refund_id: str) -> RefundRequest:
    refund = db.execute(
        select(RefundRequest).where(RefundRequest.id == refund_id).with_for_update()
    ).scalar_one_or_none()
    if not refund:
        raise HTTPException(status_code=404, detail="Refund request not found")
    return refund


def _get_return_for_update(db: Session, return_id: str) -> ReturnRecord:
    return db.execute(
        select(ReturnRecord).where(ReturnRecord.id == return_id).with_for_update()
    ).scalar_one()


def _vendor_user_id(db: Session, vendor_id: str) -> str:
    return db.execute(select(Vendor.user_id).where(Vendor.id == vendor_id)).scalar_one()


def _ensure_no_open_request(db: Session, *, order_item_id: str, exclude_id: str | None = None) -> None:
    stmt = select(RefundRequest.id).where(
        RefundRequest.order_item_id == order_item_id,
        RefundRequest.status.not_in(CLOSED_REFUND_STATUSES),
    )
    if exclude_id:
        stmt = stmt.where(RefundRequest.id != exclude_id)
    if db.execute(stmt).first():
        raise HTTPException(status_code=409, detail="An active refund request already exists for this item")


def create_refund_request(
    db: Session,
    *,
    customer: User,
    payload: RefundRequestCreate,
) -> tuple[RefundRequest, ReturnRecord]:
    item = db.execute(
        select(OrderItem).where(OrderItem.id == payload.order_item_id)
    ).scalar_one_or_none()
    if not item:
        raise HTTPException(status_code=404, detail="Order item not found")

    order = get_order_for_update(db, item.order_id)
    if order.customer_id != customer.id:
        raise HTTPException(status_code=404, detail="Order item not found")
    if order.status != "PICKED_UP" or not order.picked_up_at:
        raise HTTPException(status_code=400, detail="Order must be picked up before requesting a refund")

    window_days = settings.refund_window_days
    if utcnow() - as_utc(order.picked_up_at) > timedelta(days=window_days):
        raise HTTPException(status_code=400, detail=f"Refund window has expired ({window_days} days)")

    _ensure_no_open_request(db, order_item_id=item.id)

    line_total = to_money(item.line_total)
    amount = to_money(payload.refund_amount) if payload.refund_amount is not None else line_total
    if amount > line_total:
        raise HTTPException(status_code=400, detail="Refund amount cannot exceed the item total")

    return_record = ReturnRecord(
        id=str(uuid.uuid4()),
        order_id=order.id,
        order_item_id=item.id,
        customer_id=customer.id,
        vendor_id=item.vendor_id,
        reason=payload.reason,
        status="REQUESTED",
        refund_status="PENDING",
        refund_amount=amount,
    )
    db.add(return_record)
    db.flush()

    refund = RefundRequest(
        id=str(uuid.uuid4()),
        return_id=return_record.id,
        order_id=order.id,
        order_item_id=item.id,
        customer_id=customer.id,
        vendor_id=item.vendor_id,
        reason=payload.reason,
        description=payload.description,
        refund_amount=amount,
        photos=list(payload.photos),
        status="PENDING",
    )
    db.add(refund)
    db.flush()

    notify(
        db,
        user_id=_vendor_user_id(db, item.vendor_id),
        notification_type="RETURN_REQUESTED",
        title="Refund Requested",
        message=f"A refund was requested for {item.product_name} on order #{short_order_id(order.id)}.",
        order_id=order.id,
    )
    log_audit_event(
        db,
        actor_user_id=customer.id,
        action="refund.request",
        target_type="refund_request",
        target_id=refund.id,
        metadata_json={"order_id": order.id, "order_item_id": item.id, "refund_amount": float(amount)},
    )
    return refund, return_record


def reconcile_refund_approval(
    db: Session,
    *,
    refund: RefundRequest,
    return_record: ReturnRecord,
    actor_user_id: str,
    hold_reason: str,
) -> PayoutHold:
    amount = to_money(refund.refund_amount)
    vendor = get_vendor_for_update(db, refund.vendor_id)
    vendor.total_refunds_processed = (vendor.total_refunds_processed or 0) + 1
    vendor.total_refund_amount = to_money(to_money(vendor.total_refund_amount) + amount)

    hold = merge_into_active_hold(
        db,
        vendor_id=vendor.id,
        amount=amount,
        reason=hold_reason,
        actor_user_id=actor_user_id,
        refund_request_ids=[refund.id],
    )

    payment_reference = db.execute(
        select(Order.payment_reference).where(Order.id == refund.order_id)
    ).scalar_one()
    provider = get_payment_provider(settings.payment_provider_default)
    result = provider.initiate_refund(
        RefundInitRequest(refund_request_id=refund.id, payment_reference=payment_reference, amount=amount)
    )
    return_record.refund_reference = result.reference
    return_record.refund_status = "PENDING"
    return hold


def _reverse_refund_approval(
    db: Session,
    *,
    refund: RefundRequest,
    return_record: ReturnRecord,
    actor_user_id: str,
) -> None:
    if return_record.refund_status == "PROCESSED":
        raise HTTPException(status_code=409, detail="Refund has already been processed")

    amount = to_money(refund.refund_amount)
    # Vendor row before hold rows, same order as merge_into_active_hold.
    vendor = get_vendor_for_update(db, refund.vendor_id)
    remove_refund_from_hold(
        db,
        vendor_id=refund.vendor_id,
        refund_request_id=refund.id,
        amount=amount,
        actor_user_id=actor_user_id,
    )
    vendor.total_refunds_processed = max((vendor.total_refunds_processed or 0) - 1, 0)
    vendor.total_refund_amount = max(to_money(to_money(vendor.total_refund_amount) - amount), ZERO_MONEY)
    return_record.refund_reference = None


def _notify_customer_of_decision(db: Session, refund: RefundRequest) -> None:
    approved = refund.status == "APPROVED"
    notify(
        db,
        user_id=refund.customer_id,
        notification_type="RETURN_APPROVED" if approved else "RETURN_REJECTED",
        title="Refund Approved" if approved else "Refund Rejected",
        message=(
            f"Your refund request for order #{short_order_id(refund.order_id)} was "
            f"{'approved' if approved else 'rejected'}."
        ),
        order_id=refund.order_id,
    )


def decide_refund_request(
    db: Session,
    *,
    refund_id: str,
    actor: User,
    vendor: Vendor | None,
    action: str,
    note: str | None,
) -> RefundRequest:
    refund = get_refund_for_update(db, refund_id)
    is_admin = actor.role == "ADMIN"
    if not is_admin and (vendor is None or refund.vendor_id != vendor.id):
        raise HTTPException(status_code=403, detail="You can only act on your own refund requests")
    if refund.status != "PENDING":
        raise HTTPException(status_code=400, detail="Refund request is no longer pending")

    return_record = _get_return_for_update(db, refund.return_id)
    now = utcnow()
    target_status = _DECISION_TO_STATUS[action]

    refund.status = target_status
    refund.decided_by = actor.id
    refund.decided_at = now
    return_record.status = target_status
    return_record.vendor_decision = target_status
    return_record.vendor_decision_date = now
    if is_admin:
        refund.admin_notes = note
        return_record.admin_override = True
        return_record.admin_override_reason = note
    else:
        refund.vendor_response = note

    if target_status == "APPROVED":
        reconcile_refund_approval(
            db,
            refund=refund,
            return_record=return_record,
            actor_user_id=actor.id,
            hold_reason=REFUND_HOLD_REASON,
        )
    else:
        return_record.refund_status = "REJECTED"

    _notify_customer_of_decision(db, refund)
    log_audit_event(
        db,
        actor_user_id=actor.id,
        action=f"refund.{action}",
        target_type="refund_request",
        target_id=refund.id,
        metadata_json={"actor_role": actor.role, "refund_amount": float(to_money(refund.refund_amount))},
    )
    return refund


def admin_override_refund(
    db: Session,
    *,
    refund_id: str,
    actor: User,
    action: str,
    reason: str,
) -> RefundRequest:
    refund = get_refund_for_update(db, refund_id)
    target_status = _DECISION_TO_STATUS[action]
    if refund.status == target_status:
        raise HTTPException(status_code=400, detail=f"Refund request is already {target_status.lower()}")
    if refund.status == "CANCELLED":
        raise HTTPException(status_code=400, detail="Cancelled refund requests cannot be overridden")

    previous_status = refund.status
    if target_status == "APPROVED":
        # One open request per item, and nothing left to refund on a refunded order.
        order = get_order_for_update(db, refund.order_id)
        if order.status == "REFUNDED":
            raise HTTPException(status_code=409, detail="Order has already been refunded")
        _ensure_no_open_request(db, order_item_id=refund.order_item_id, exclude_id=refund.id)

    return_record = _get_return_for_update(db, refund.return_id)
    if previous_status == "APPROVED":
        _reverse_refund_approval(db, refund=refund, return_record=return_record, actor_user_id=actor.id)

    refund.status = target_status
    refund.admin_notes = reason
    refund.decided_by = actor.id
    refund.decided_at = utcnow()
    return_record.status = target_status
    return_record.admin_override = True
    return_record.admin_override_reason = reason

    if target_status == "APPROVED":
        reconcile_refund_approval(
            db,
            refund=refund,
            return_record=return_record,
            actor_user_id=actor.id,
            hold_reason=OVERRIDE_HOLD_REASON,
        )
    else:
        return_record.refund_status = "REJECTED"

    _notify_customer_of_decision(db, refund)
    log_audit_event(
        db,
        actor_user_id=actor.id,
        action="refund.override",
        target_type="refund_request",
        target_id=refund.id,
        metadata_json={"from_status": previous_status, "to_status": target_status, "reason": reason},
    )
    return refund


def find_return_by_refund_reference(db: Session, reference: str) -> ReturnRecord | None:
    return db.execute(
        select(ReturnRecord).where(ReturnRecord.refund_reference == reference).with_for_update()
    ).scalar_one_or_none()


def _order_fully_refunded(db: Session, order_id: str) -> bool:
    item_ids = set(db.execute(select(OrderItem.id).where(OrderItem.order_id == order_id)).scalars().all())
    refunded_ids = set(
        db.execute(
            select(ReturnRecord.order_item_id).where(
                ReturnRecord.order_id == order_id,
                ReturnRecord.refund_status == "PROCESSED",
            )
        ).scalars().all()
    )
    return bool(item_ids) and item_ids <= refunded_ids


def mark_refund_processed(db: Session, return_record: ReturnRecord, *, event_id: str) -> str:
    if return_record.refund_status == "PROCESSED":
        return "already_processed"

    return_record.refund_status = "PROCESSED"
    return_record.status = "COMPLETED"
    return_record.refunded_at = utcnow()
    db.flush()

    order = get_order_for_update(db, return_record.order_id)
    order.payment_status = "REFUNDED"
    if order.status == "PICKED_UP" and _order_fully_refunded(db, order.id):
        transition_order(
            db,
            order,
            "REFUNDED",
            actor_user_id=None,
            action="order.refunded",
            metadata={"webhook_event_id": event_id},
        )

    amount = to_money(return_record.refund_amount)
    notify(
        db,
        user_id=return_record.customer_id,
        notification_type="REFUND_PROCESSED",
        title="Refund Processed",
        message=f"Your refund of {amount} for order #{short_order_id(order.id)} has been processed.",
        order_id=order.id,
    )
    log_audit_event(
        db,
        actor_user_id=None,
        action="refund.processed",
        target_type="return",
        target_id=return_record.id,
        metadata_json={"webhook_event_id": event_id, "refund_amount": float(amount)},
    )
    return "refund_processed"


def log_refund_failure(return_record: ReturnRecord, *, event_id: str, status: str | None) -> str:
    log_event(
        logger,
        "refund_failed",
        level=logging.WARNING,
        return_id=return_record.id,
        refund_reference=return_record.refund_reference,
        event_id=event_id,
        provider_status=status,
    )
    return "refund_failed_logged"
