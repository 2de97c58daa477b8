from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.common import PaginationMeta

RefundRequestStatus = Literal["PENDING", "APPROVED", "REJECTED", "CANCELLED"]
RefundDecision = Literal["approve", "reject"]


class RefundRequestCreate(BaseModel):
    order_item_id: str
    reason: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    refund_amount: Optional[Decimal] = Field(default=None, gt=0)
    photos: list[str] = Field(default_factory=list, max_length=10)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("reason is required")
        return cleaned

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "order_item_id": "order-item-id-here",
                "reason": "Item damaged",
                "description": "Cover torn on arrival",
                "refund_amount": 4500.0,
                "photos": ["https://cdn.example.com/returns/1.jpg"],
            }
        }
    )


class RefundDecisionIn(BaseModel):
    action: RefundDecision
    note: Optional[str] = None


class RefundOverrideIn(BaseModel):
    action: RefundDecision
    reason: str = Field(min_length=1, max_length=255)


class RefundRequestOut(BaseModel):
    id: str
    return_id: str
    order_id: str
    order_item_id: str
    customer_id: str
    vendor_id: str
    reason: str
    description: str | None = None
    refund_amount: float
    photos: list[str] = Field(default_factory=list)
    status: RefundRequestStatus
    vendor_response: str | None = None
    admin_notes: str | None = None
    return_status: str
    refund_status: str
    refund_reference: str | None = None
    decided_by: str | None = None
    decided_at: datetime | None = None
    created_at: datetime


class RefundRequestListOut(BaseModel):
    items: list[RefundRequestOut]
    pagination: PaginationMeta
