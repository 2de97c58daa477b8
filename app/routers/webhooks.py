import hashlib
import hmac
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.config import settings
from app.core.deps import get_db
from app.models.order import Order
from app.models.webhook import PaymentWebhookEvent
from app.schemas.webhook import PaymentWebhookEventIn, PaymentWebhookOut
from app.services.fulfilment_service import mark_order_paid, mark_order_payment_failed
from app.services.notification_service import dispatch_pending_push
from app.services.payout_service import find_payout_by_transfer_reference, settle_transfer
from app.services.refund_service import (
    find_return_by_refund_reference,
    log_refund_failure,
    mark_refund_processed,
)

router = APIRouter(prefix="/payment-webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "X-CampusDrop-Signature"

CHARGE_EVENTS = {"charge.success", "charge.failed"}
REFUND_EVENTS = {"refund.processed", "refund.failed"}
TRANSFER_EVENTS = {"transfer.success", "transfer.failed", "transfer.reversed"}


def build_webhook_signature(payload_bytes: bytes) -> str:
    digest = hmac.new(
        settings.payment_webhook_secret.encode("utf-8"),
        payload_bytes,
        hashlib.sha256,
    ).hexdigest()
    return f"sha256={digest}"


def _assert_webhook_signature(payload_bytes: bytes, signature_header: str | None) -> None:
    if not signature_header:
        raise HTTPException(status_code=401, detail="Missing webhook signature")

    expected = build_webhook_signature(payload_bytes)
    provided = signature_header.strip()
    if not provided.startswith("sha256="):
        provided = f"sha256={provided}"

    if not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


def _require_reference(payload: PaymentWebhookEventIn) -> str:
    reference = (payload.reference or "").strip()
    if not reference:
        raise HTTPException(status_code=400, detail="Webhook reference is required")
    return reference


def _apply_charge_event(db: Session, payload: PaymentWebhookEventIn, event_type: str) -> tuple[str, str]:
    reference = _require_reference(payload)
    order = db.execute(
        select(Order).where(Order.payment_reference == reference).with_for_update()
    ).scalar_one_or_none()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found for webhook reference")

    if event_type == "charge.success":
        outcome = mark_order_paid(db, order, event_id=payload.event_id)
    else:
        outcome = mark_order_payment_failed(db, order, event_id=payload.event_id)
    return outcome, order.id


def _apply_refund_event(db: Session, payload: PaymentWebhookEventIn, event_type: str) -> tuple[str, str]:
    reference = _require_reference(payload)
    return_record = find_return_by_refund_reference(db, reference)
    if not return_record:
        raise HTTPException(status_code=404, detail="Return not found for webhook reference")

    if event_type == "refund.processed":
        outcome = mark_refund_processed(db, return_record, event_id=payload.event_id)
    else:
        outcome = log_refund_failure(return_record, event_id=payload.event_id, status=payload.status)
    return outcome, return_record.id


def _apply_transfer_event(db: Session, payload: PaymentWebhookEventIn, event_type: str) -> tuple[str, str]:
    reference = _require_reference(payload)
    payout = find_payout_by_transfer_reference(db, reference)
    if not payout:
        raise HTTPException(status_code=404, detail="Payout not found for webhook reference")

    outcome = settle_transfer(
        db,
        payout,
        succeeded=event_type == "transfer.success",
        event_id=payload.event_id,
    )
    return outcome, payout.id


@router.post(
    "/{provider}",
    response_model=PaymentWebhookOut,
    summary="Process a payment provider callback",
    responses=error_responses(400, 401, 404, 422, 500),
)
async def process_payment_webhook(
    provider: str,
    payload: PaymentWebhookEventIn,
    request: Request,
    db: Session = Depends(get_db),
):
    raw_body = await request.body()
    _assert_webhook_signature(raw_body, request.headers.get(SIGNATURE_HEADER))

    normalized_provider = provider.strip().lower()
    if not normalized_provider:
        raise HTTPException(status_code=400, detail="Provider is required")
    event_type = payload.event_type.strip().lower()

    duplicate_event = db.execute(
        select(PaymentWebhookEvent).where(PaymentWebhookEvent.event_id == payload.event_id)
    ).scalar_one_or_none()
    if duplicate_event:
        return PaymentWebhookOut(
            ok=True,
            provider=normalized_provider,
            event_type=duplicate_event.event_type,
            outcome=duplicate_event.outcome,
            duplicate=True,
        )

    target_type: str | None = None
    target_id: str | None = None
    if event_type in CHARGE_EVENTS:
        outcome, target_id = _apply_charge_event(db, payload, event_type)
        target_type = "order"
    elif event_type in REFUND_EVENTS:
        outcome, target_id = _apply_refund_event(db, payload, event_type)
        target_type = "return"
    elif event_type in TRANSFER_EVENTS:
        outcome, target_id = _apply_transfer_event(db, payload, event_type)
        target_type = "payout"
    else:
        outcome = "ignored"

    db.add(
        PaymentWebhookEvent(
            id=str(uuid.uuid4()),
            provider=normalized_provider,
            event_id=payload.event_id,
            event_type=event_type,
            reference=payload.reference,
            outcome=outcome,
            payload_json=payload.model_dump(mode="json"),
        )
    )
    db.commit()
    dispatch_pending_push(db)
    return PaymentWebhookOut(
        ok=True,
        provider=normalized_provider,
        event_type=event_type,
        outcome=outcome,
        target_type=target_type,
        target_id=target_id,
        duplicate=False,
    )
