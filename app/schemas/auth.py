from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, field_validator


class RegisterIn(BaseModel):
    email: EmailStr
    full_name: str
    password: str
    phone: Optional[str] = None
    store_name: Optional[str] = None

    @field_validator("full_name")
    @classmethod
    def validate_full_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("full_name is required")
        return cleaned

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        if len(value) < 8:
            raise ValueError("password must be at least 8 characters")
        return value

    @field_validator("phone", "store_name")
    @classmethod
    def normalize_optional(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "email": "ada@campus.edu",
                "full_name": "Ada Student",
                "password": "password123",
                "phone": "08031234567",
                "store_name": None,
            }
        }
    )


class LoginIn(BaseModel):
    email: EmailStr
    password: str


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: str


class UserProfileOut(BaseModel):
    id: str
    email: str
    full_name: str | None = None
    phone: str | None = None
    role: str
    vendor_id: str | None = None
    agent_id: str | None = None
    created_at: datetime


class AgentCreateIn(BaseModel):
    email: EmailStr
    location: str

    @field_validator("location")
    @classmethod
    def validate_location(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("location is required")
        return cleaned

    model_config = ConfigDict(
        json_schema_extra={"example": {"email": "desk@campus.edu", "location": "Library Gate Kiosk"}}
    )


class AgentOut(BaseModel):
    id: str
    user_id: str
    email: str
    full_name: str | None = None
    location: str
    is_active: bool
