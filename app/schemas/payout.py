from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.common import PaginationMeta

PayoutStatus = Literal["PENDING", "APPROVED", "COMPLETED", "FAILED"]
PayoutHoldStatus = Literal["ACTIVE", "RELEASED", "APPLIED"]


class PayoutHoldCreate(BaseModel):
    vendor_id: str
    hold_amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1, max_length=255)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "vendor_id": "vendor-id-here",
                "hold_amount": 2500.0,
                "reason": "Disputed delivery under review",
            }
        }
    )


class PayoutHoldOut(BaseModel):
    id: str
    vendor_id: str
    hold_amount: float
    reason: str
    status: PayoutHoldStatus
    refund_request_ids: list[str] = Field(default_factory=list)
    created_by: str
    released_by: str | None = None
    released_at: datetime | None = None
    applied_payout_id: str | None = None
    created_at: datetime


class PayoutHoldListOut(BaseModel):
    items: list[PayoutHoldOut]
    pagination: PaginationMeta


class PayoutRequestIn(BaseModel):
    amount: Decimal = Field(gt=0)
    bank_name: str
    account_number: str
    account_name: str

    @field_validator("bank_name", "account_number", "account_name")
    @classmethod
    def require_bank_detail(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("bank details are required")
        return cleaned

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "amount": 15000.0,
                "bank_name": "First Campus Bank",
                "account_number": "0123456789",
                "account_name": "Ada Stationery",
            }
        }
    )


class PayoutRejectIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class PayoutOut(BaseModel):
    id: str
    vendor_id: str
    amount: float
    status: PayoutStatus
    bank_name: str
    account_number: str
    account_name: str
    approved_amount: float | None = None
    held_amount: float | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None
    rejection_reason: str | None = None
    transfer_reference: str | None = None
    completed_at: datetime | None = None
    created_at: datetime


class PayoutListOut(BaseModel):
    items: list[PayoutOut]
    pagination: PaginationMeta


class VendorBalanceOut(BaseModel):
    vendor_id: str
    total_earnings: float
    committed_payouts: float
    active_holds: float
    available_balance: float


class PendingRefundOut(BaseModel):
    refund_request_id: str
    amount: float
    created_at: datetime


class VendorRefundImpactOut(BaseModel):
    vendor_id: str
    store_name: str
    available_balance: float
    active_holds: float
    pending_refund_total: float
    pending_refund_count: int
    balance_after_refunds: float
    pending_refunds: list[PendingRefundOut]


class RefundImpactOut(BaseModel):
    items: list[VendorRefundImpactOut]
    total_pending_refunds: float
    total_active_holds: float
