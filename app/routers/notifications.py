from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.deps import get_db
from app.core.security_current import get_current_user
from app.models.notification import Notification
from app.models.user import User
from app.schemas.common import build_pagination
from app.schemas.notification import MarkAllReadOut, NotificationListOut, NotificationOut

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _notification_out(row: Notification) -> NotificationOut:
    return NotificationOut(
        id=row.id,
        type=row.type,
        title=row.title,
        message=row.message,
        order_id=row.order_id,
        is_read=row.is_read,
        created_at=row.created_at,
    )


@router.get(
    "",
    response_model=NotificationListOut,
    summary="List the caller's notifications",
    responses=error_responses(401, 422, 500),
)
def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    count_stmt = select(func.count(Notification.id)).where(Notification.user_id == user.id)
    data_stmt = select(Notification).where(Notification.user_id == user.id)
    if unread_only:
        count_stmt = count_stmt.where(Notification.is_read.is_(False))
        data_stmt = data_stmt.where(Notification.is_read.is_(False))

    total = int(db.execute(count_stmt).scalar_one())
    unread_count = int(
        db.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user.id,
                Notification.is_read.is_(False),
            )
        ).scalar_one()
    )
    rows = db.execute(
        data_stmt.order_by(Notification.created_at.desc(), Notification.id.asc()).offset(offset).limit(limit)
    ).scalars().all()
    items = [_notification_out(row) for row in rows]
    return NotificationListOut(
        items=items,
        unread_count=unread_count,
        pagination=build_pagination(total=total, limit=limit, offset=offset, count=len(items)),
    )


@router.post(
    "/{notification_id}/read",
    response_model=NotificationOut,
    summary="Mark one notification as read",
    responses=error_responses(401, 404, 500),
)
def mark_read(
    notification_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    row = db.execute(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == user.id)
    ).scalar_one_or_none()
    if not row:
        raise HTTPException(status_code=404, detail="Notification not found")
    row.is_read = True
    db.commit()
    db.refresh(row)
    return _notification_out(row)


@router.post(
    "/mark-all-read",
    response_model=MarkAllReadOut,
    summary="Mark every notification as read",
    responses=error_responses(401, 500),
)
def mark_all_read(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    result = db.execute(
        update(Notification)
        .where(Notification.user_id == user.id, Notification.is_read.is_(False))
        .values(is_read=True)
    )
    db.commit()
    return MarkAllReadOut(updated=int(result.rowcount or 0))
