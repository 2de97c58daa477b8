import logging
import uuid

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.observability import log_event
from app.models.notification import Notification
from app.services.notification_provider import PushMessage, get_notification_provider

logger = logging.getLogger("campusdrop.notifications")

NOTIFICATION_TYPES = {
    "ORDER_STATUS_CHANGE",
    "PICKUP_READY",
    "ORDER_PICKED_UP",
    "RETURN_REQUESTED",
    "RETURN_APPROVED",
    "RETURN_REJECTED",
    "REFUND_PROCESSED",
}

_PUSH_QUEUE_KEY = "pending_push_messages"


def short_order_id(order_id: str) -> str:
    return order_id[:8]


def notify(
    db: Session,
    *,
    user_id: str,
    notification_type: str,
    title: str,
    message: str,
    order_id: str | None = None,
) -> Notification:
    """Stage an in-app notification inside the caller's transaction.

    The push copy is queued on the session and only leaves the process
    through ``dispatch_pending_push`` once the caller has committed.
    """
    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type '{notification_type}'")

    notification = Notification(
        id=str(uuid.uuid4()),
        user_id=user_id,
        type=notification_type,
        title=title,
        message=message,
        order_id=order_id,
        is_read=False,
    )
    db.add(notification)
    db.info.setdefault(_PUSH_QUEUE_KEY, []).append(
        PushMessage(
            user_id=user_id,
            notification_id=notification.id,
            notification_type=notification_type,
            title=title,
            body=message,
            order_id=order_id,
        )
    )
    return notification


def notify_many(
    db: Session,
    *,
    user_ids: list[str],
    notification_type: str,
    title: str,
    message: str,
    order_id: str | None = None,
) -> list[Notification]:
    seen: set[str] = set()
    created: list[Notification] = []
    for user_id in user_ids:
        if user_id in seen:
            continue
        seen.add(user_id)
        created.append(
            notify(
                db,
                user_id=user_id,
                notification_type=notification_type,
                title=title,
                message=message,
                order_id=order_id,
            )
        )
    return created


def discard_pending_push(db: Session) -> None:
    db.info.pop(_PUSH_QUEUE_KEY, None)


def dispatch_pending_push(db: Session) -> int:
    """Send queued push messages after commit. Returns how many were delivered."""
    messages: list[PushMessage] = db.info.pop(_PUSH_QUEUE_KEY, [])
    if not messages:
        return 0

    provider = get_notification_provider(settings.notification_provider_default)
    delivered = 0
    for message in messages:
        try:
            provider.send_push(message)
        except Exception as exc:  # provider errors never undo committed state
            log_event(
                logger,
                "push_dispatch_failed",
                level=logging.WARNING,
                provider=provider.name,
                notification_id=message.notification_id,
                user_id=message.user_id,
                error=str(exc),
            )
            continue
        delivered += 1
    return delivered
