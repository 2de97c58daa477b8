from datetime import datetime

from pydantic import BaseModel

from app.schemas.common import PaginationMeta


class NotificationOut(BaseModel):
    id: str
    type: str
    title: str
    message: str
    order_id: str | None = None
    is_read: bool
    created_at: datetime


class NotificationListOut(BaseModel):
    items: list[NotificationOut]
    unread_count: int
    pagination: PaginationMeta


class MarkAllReadOut(BaseModel):
    updated: int
