from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.deps import get_db
from app.core.permissions import require_roles
from app.models.audit_log import AuditLog
from app.models.user import User
from app.schemas.audit import AuditLogListOut, AuditLogOut
from app.schemas.common import build_pagination

router = APIRouter(prefix="/audit-logs", tags=["audit"])

TARGET_TYPES = {"user", "agent", "order", "return", "refund_request", "payout_hold", "payout"}


@router.get(
    "",
    response_model=AuditLogListOut,
    summary="Trace order, refund, hold and payout changes",
    responses=error_responses(400, 401, 403, 422, 500),
)
def list_audit_logs(
    actor_user_id: str | None = Query(default=None),
    action: str | None = Query(default=None, description="Exact action, or a prefix ending in '.' such as 'refund.'"),
    target_type: str | None = Query(default=None),
    target_id: str | None = Query(default=None),
    request_id: str | None = Query(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    _: User = Depends(require_roles("ADMIN")),
):
    if start_date and end_date and end_date < start_date:
        raise HTTPException(status_code=400, detail="end_date cannot be before start_date")
    if target_type and target_type not in TARGET_TYPES:
        allowed = ", ".join(sorted(TARGET_TYPES))
        raise HTTPException(status_code=400, detail=f"Invalid target_type. Allowed: {allowed}")

    filters = []
    if actor_user_id:
        filters.append(AuditLog.actor_user_id == actor_user_id)
    if action:
        if action.endswith("."):
            filters.append(AuditLog.action.startswith(action))
        else:
            filters.append(AuditLog.action == action)
    if target_type:
        filters.append(AuditLog.target_type == target_type)
    if target_id:
        filters.append(AuditLog.target_id == target_id)
    if request_id:
        filters.append(AuditLog.request_id == request_id)
    if start_date:
        filters.append(func.date(AuditLog.created_at) >= start_date)
    if end_date:
        filters.append(func.date(AuditLog.created_at) <= end_date)

    total = int(db.execute(select(func.count(AuditLog.id)).where(*filters)).scalar_one())
    rows = db.execute(
        select(AuditLog, User.email, User.role)
        .outerjoin(User, User.id == AuditLog.actor_user_id)
        .where(*filters)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.asc())
        .offset(offset)
        .limit(limit)
    ).all()

    items = [
        AuditLogOut(
            id=entry.id,
            action=entry.action,
            target_type=entry.target_type,
            target_id=entry.target_id,
            actor_user_id=entry.actor_user_id,
            actor_email=email,
            actor_role=role,
            request_id=entry.request_id,
            metadata_json=entry.metadata_json,
            created_at=entry.created_at,
        )
        for entry, email, role in rows
    ]
    return AuditLogListOut(
        items=items,
        pagination=build_pagination(total=total, limit=limit, offset=offset, count=len(items)),
    )
