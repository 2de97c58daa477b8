import logging
import uuid
from typing import Any

from sqlalchemy.orm import Session

from app.core.observability import get_request_id, log_event
from app.models.audit_log import AuditLog

logger = logging.getLogger("campusdrop.audit")


def log_audit_event(
    db: Session,
    *,
    actor_user_id: str | None,
    action: str,
    target_type: str,
    target_id: str | None = None,
    metadata_json: dict[str, Any] | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction.

    The row is only persisted when the caller commits, so a rolled back
    transition never leaves an audit trail behind. ``request_id`` ties the
    row to the JSON request log line.
    """
    request_id = get_request_id()
    event = AuditLog(
        id=str(uuid.uuid4()),
        actor_user_id=actor_user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        request_id=None if request_id == "-" else request_id,
        metadata_json=metadata_json,
    )
    db.add(event)
    log_event(
        logger,
        "audit",
        level=logging.DEBUG,
        action=action,
        target_type=target_type,
        target_id=target_id,
        actor_user_id=actor_user_id,
    )
    return event
