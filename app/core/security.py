from datetime import datetime, timedelta, timezone
from uuid import uuid4

import bcrypt
from jose import JWTError, jwt

from app.core.config import settings

ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "access"
BCRYPT_MAX_BYTES = 72


class TokenValidationError(ValueError):
    pass


def _password_bytes(password: str) -> bytes:
    # bcrypt rejects inputs longer than 72 bytes.
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(_password_bytes(password), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False


def create_token(
    subject: str,
    expires_delta: timedelta,
    token_type: str,
    extra_claims: dict[str, str] | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        **(extra_claims or {}),
        "sub": subject,
        "type": token_type,
        "jti": str(uuid4()),
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_token(token: str, *, expected_type: str | None = None) -> dict:
    """Verify signature and expiry, then check the claims every token must carry."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError as exc:
        raise TokenValidationError("Invalid token") from exc

    if not payload.get("sub"):
        raise TokenValidationError("Invalid token subject")
    if expected_type and payload.get("type") != expected_type:
        raise TokenValidationError("Invalid token type")
    if not payload.get("jti"):
        raise TokenValidationError("Invalid token id")
    return payload


def create_access_token(user_id: str, role: str) -> str:
    # Role claim is informational for clients; authorization re-reads the user row.
    return create_token(
        subject=user_id,
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes),
        token_type=ACCESS_TOKEN_TYPE,
        extra_claims={"role": role},
    )
