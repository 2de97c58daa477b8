from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.config import settings
from app.core.deps import get_db
from app.core.id_utils import generate_shortuuid
from app.core.money import to_money
from app.core.rate_limit import FailedAttemptLimiter
from app.core.security import create_access_token, hash_password, verify_password
from app.core.security_current import get_current_user
from app.models.user import Agent, User, Vendor
from app.schemas.auth import LoginIn, RegisterIn, TokenOut, UserProfileOut
from app.services.audit_service import log_audit_event

router = APIRouter(prefix="/auth", tags=["auth"])

login_rate_limiter = FailedAttemptLimiter(
    max_attempts=settings.auth_rate_limit_max_attempts,
    window_seconds=settings.auth_rate_limit_window_seconds,
    lock_seconds=settings.auth_rate_limit_lock_seconds,
)


def _find_user_by_email(db: Session, email: str) -> User | None:
    return db.execute(
        select(User).where(func.lower(User.email) == email.strip().lower())
    ).scalar_one_or_none()


def _login_key(request: Request, email: str) -> str:
    client_host = request.client.host if request.client else "unknown"
    return f"{client_host}:{email.strip().lower()}"


def _authenticate(db: Session, request: Request, *, email: str, password: str) -> TokenOut:
    key = _login_key(request, email)
    login_rate_limiter.ensure_allowed(key, detail="Too many login attempts. Try again later.")

    user = _find_user_by_email(db, email)
    if not user or not verify_password(password, user.hashed_password):
        login_rate_limiter.register_failure(key)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is disabled")

    login_rate_limiter.register_success(key)
    return TokenOut(access_token=create_access_token(user.id, user.role), role=user.role)


def profile_out(db: Session, user: User) -> UserProfileOut:
    vendor_id = db.execute(select(Vendor.id).where(Vendor.user_id == user.id)).scalar_one_or_none()
    agent_id = db.execute(select(Agent.id).where(Agent.user_id == user.id)).scalar_one_or_none()
    return UserProfileOut(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        phone=user.phone,
        role=user.role,
        vendor_id=vendor_id,
        agent_id=agent_id,
        created_at=user.created_at,
    )


@router.post(
    "/register",
    response_model=TokenOut,
    summary="Register a customer or vendor account",
    responses=error_responses(400, 409, 422, 500),
)
def register(payload: RegisterIn, db: Session = Depends(get_db)):
    if _find_user_by_email(db, payload.email):
        raise HTTPException(status_code=409, detail="Email already registered")

    role = "VENDOR" if payload.store_name else "CUSTOMER"
    user = User(
        id=generate_shortuuid(),
        email=payload.email.strip().lower(),
        full_name=payload.full_name,
        phone=payload.phone,
        hashed_password=hash_password(payload.password),
        role=role,
        is_active=True,
    )
    db.add(user)
    db.flush()

    if role == "VENDOR":
        vendor = Vendor(
            id=generate_shortuuid(),
            user_id=user.id,
            store_name=payload.store_name,
            commission_rate=to_money(settings.default_commission_rate),
            is_approved=True,
        )
        db.add(vendor)
        db.flush()

    log_audit_event(
        db,
        actor_user_id=user.id,
        action="auth.register",
        target_type="user",
        target_id=user.id,
        metadata_json={"role": role},
    )
    db.commit()
    return TokenOut(access_token=create_access_token(user.id, user.role), role=user.role)


@router.post(
    "/login",
    response_model=TokenOut,
    summary="Log in with email and password",
    responses=error_responses(401, 403, 422, 429, 500),
)
def login(payload: LoginIn, request: Request, db: Session = Depends(get_db)):
    return _authenticate(db, request, email=payload.email, password=payload.password)


@router.post(
    "/token",
    response_model=TokenOut,
    summary="OAuth2 password flow token endpoint",
    responses=error_responses(401, 403, 422, 429, 500),
)
def token(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db),
):
    return _authenticate(db, request, email=form_data.username, password=form_data.password)


@router.get(
    "/me",
    response_model=UserProfileOut,
    summary="Current user profile",
    responses=error_responses(401, 403, 500),
)
def me(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return profile_out(db, user)
