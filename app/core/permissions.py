from collections.abc import Callable

from fastapi import Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.deps import get_db
from app.core.security_current import get_current_user
from app.models.user import USER_ROLES, Agent, User, Vendor
from app.services.fulfilment_service import resolve_agent_for_user


def require_roles(*allowed_roles: str) -> Callable[[User], User]:
    normalized_allowed = {role.strip().upper() for role in allowed_roles if role.strip()}
    if not normalized_allowed:
        raise ValueError("At least one allowed role is required")
    unknown = normalized_allowed - set(USER_ROLES)
    if unknown:
        raise ValueError(f"Unknown roles: {', '.join(sorted(unknown))}")

    def dependency(user: User = Depends(get_current_user)) -> User:
        current_role = (user.role or "").upper()
        if current_role not in normalized_allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role for this action",
            )
        return user

    return dependency


def get_current_vendor(
    user: User = Depends(require_roles("VENDOR")),
    db: Session = Depends(get_db),
) -> Vendor:
    vendor = db.execute(select(Vendor).where(Vendor.user_id == user.id)).scalar_one_or_none()
    if not vendor:
        raise HTTPException(status_code=404, detail="Vendor profile not found")
    return vendor


def get_optional_vendor(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Vendor | None:
    if user.role != "VENDOR":
        return None
    return db.execute(select(Vendor).where(Vendor.user_id == user.id)).scalar_one_or_none()


def get_current_agent(
    user: User = Depends(require_roles("AGENT")),
    db: Session = Depends(get_db),
) -> Agent:
    return resolve_agent_for_user(db, user)
