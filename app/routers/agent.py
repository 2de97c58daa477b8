from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.config import settings
from app.core.deps import get_db
from app.core.permissions import get_current_agent, require_roles
from app.core.rate_limit import FailedAttemptLimiter
from app.models.order import Order
from app.models.user import Agent, User
from app.routers.orders import build_order_outs
from app.schemas.order import DropoffAcceptIn, HandoffOut, MarkReadyIn, OrderOut, PickupVerifyIn
from app.services.fulfilment_service import (
    HandoffCodeMismatch,
    accept_dropoff,
    agent_mark_ready,
    normalize_order_status,
    verify_pickup,
)
from app.services.notification_service import discard_pending_push, dispatch_pending_push

router = APIRouter(prefix="/agent", tags=["agent"])

code_attempt_limiter = FailedAttemptLimiter(
    max_attempts=settings.code_verify_max_attempts,
    window_seconds=settings.code_verify_window_seconds,
    lock_seconds=settings.code_verify_lock_seconds,
)

_LOCKED_DETAIL = "Too many invalid codes for this order. Try again later."


def _handoff_out(order: Order, message: str) -> HandoffOut:
    return HandoffOut(
        order_id=order.id,
        status=order.status,
        pickup_status=order.pickup_status,
        agent_id=order.agent_id,
        message=message,
    )


def _attempt_key(kind: str, agent: Agent, order_id: str) -> str:
    return f"{kind}:{agent.id}:{order_id}"


@router.get(
    "/orders",
    response_model=list[OrderOut],
    summary="Orders assigned to the current agent",
    responses=error_responses(400, 401, 403, 422, 500),
)
def list_agent_orders(
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("AGENT")),
    agent: Agent = Depends(get_current_agent),
):
    stmt = select(Order).where(Order.agent_id == agent.id)
    if status:
        stmt = stmt.where(Order.status == normalize_order_status(status))
    rows = db.execute(stmt.order_by(Order.created_at.desc()).limit(limit)).scalars().all()
    db.commit()
    return build_order_outs(db, list(rows), viewer=user)


@router.post(
    "/accept-dropoff",
    response_model=HandoffOut,
    summary="Accept a vendor drop-off using the drop-off code",
    responses=error_responses(400, 401, 403, 404, 422, 429, 500),
)
def accept_dropoff_route(
    payload: DropoffAcceptIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("AGENT")),
    agent: Agent = Depends(get_current_agent),
):
    key = _attempt_key("dropoff", agent, payload.order_id)
    code_attempt_limiter.ensure_allowed(key, detail=_LOCKED_DETAIL)
    try:
        order = accept_dropoff(
            db,
            order_id=payload.order_id,
            dropoff_code=payload.dropoff_code,
            agent=agent,
            actor_user_id=user.id,
        )
    except HandoffCodeMismatch:
        code_attempt_limiter.register_failure(key)
        db.rollback()
        discard_pending_push(db)
        raise

    code_attempt_limiter.register_success(key)
    db.commit()
    dispatch_pending_push(db)
    db.refresh(order)
    return _handoff_out(order, "Drop-off accepted")


@router.post(
    "/mark-ready",
    response_model=HandoffOut,
    summary="Mark a dropped-off order ready for pickup",
    responses=error_responses(400, 401, 403, 404, 422, 500),
)
def mark_ready_route(
    payload: MarkReadyIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("AGENT")),
    agent: Agent = Depends(get_current_agent),
):
    order = agent_mark_ready(db, order_id=payload.order_id, agent=agent, actor_user_id=user.id)
    db.commit()
    dispatch_pending_push(db)
    db.refresh(order)
    return _handoff_out(order, "Order is ready for pickup")


@router.post(
    "/verify-pickup",
    response_model=HandoffOut,
    summary="Release an order to the customer using the pickup code",
    responses=error_responses(400, 401, 403, 404, 422, 429, 500),
)
def verify_pickup_route(
    payload: PickupVerifyIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("AGENT")),
    agent: Agent = Depends(get_current_agent),
):
    key = _attempt_key("pickup", agent, payload.order_id)
    code_attempt_limiter.ensure_allowed(key, detail=_LOCKED_DETAIL)
    try:
        order = verify_pickup(
            db,
            order_id=payload.order_id,
            pickup_code=payload.pickup_code,
            agent=agent,
            actor_user_id=user.id,
        )
    except HandoffCodeMismatch:
        code_attempt_limiter.register_failure(key)
        db.rollback()
        discard_pending_push(db)
        raise

    code_attempt_limiter.register_success(key)
    db.commit()
    dispatch_pending_push(db)
    db.refresh(order)
    return _handoff_out(order, "Order picked up")
