from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.common import PaginationMeta

OrderStatus = Literal[
    "PENDING",
    "PROCESSING",
    "DROPPED_OFF",
    "READY_FOR_PICKUP",
    "PICKED_UP",
    "CANCELLED",
    "REFUNDED",
]
PaymentStatus = Literal["PENDING", "COMPLETED", "FAILED", "REFUNDED"]
PickupStatus = Literal["PENDING", "READY_FOR_PICKUP", "PICKED_UP"]


class OrderItemIn(BaseModel):
    vendor_id: str
    product_name: str = Field(min_length=1, max_length=160)
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(gt=0)


class OrderCreate(BaseModel):
    items: list[OrderItemIn] = Field(min_length=1)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "items": [
                    {
                        "vendor_id": "vendor-id-here",
                        "product_name": "Engineering Maths Textbook",
                        "quantity": 1,
                        "unit_price": 4500.0,
                    }
                ],
            }
        }
    )


class OrderItemOut(BaseModel):
    id: str
    vendor_id: str
    product_name: str
    quantity: int
    unit_price: float
    line_total: float


class OrderOut(BaseModel):
    id: str
    customer_id: str
    customer_name: str | None = None
    agent_id: str | None = None
    status: OrderStatus
    payment_status: PaymentStatus
    pickup_status: PickupStatus
    total_amount: float
    payment_reference: str
    dropoff_code: str | None = None
    pickup_code: str | None = None
    cancel_reason: str | None = None
    paid_at: datetime | None = None
    dropped_off_at: datetime | None = None
    ready_at: datetime | None = None
    picked_up_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    items: list[OrderItemOut]


class OrderListOut(BaseModel):
    items: list[OrderOut]
    pagination: PaginationMeta


class OrderCancelIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class OrderStatusUpdateIn(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(default=None, max_length=255)

    model_config = ConfigDict(
        json_schema_extra={"example": {"status": "CANCELLED", "note": "Vendor out of stock"}}
    )


class DropoffAcceptIn(BaseModel):
    order_id: str
    dropoff_code: str

    @field_validator("dropoff_code")
    @classmethod
    def normalize_code(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("dropoff_code is required")
        return cleaned

    model_config = ConfigDict(
        json_schema_extra={"example": {"order_id": "order-id-here", "dropoff_code": "482913"}}
    )


class MarkReadyIn(BaseModel):
    order_id: str


class PickupVerifyIn(BaseModel):
    order_id: str
    pickup_code: str

    @field_validator("pickup_code")
    @classmethod
    def normalize_code(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("pickup_code is required")
        return cleaned

    model_config = ConfigDict(
        json_schema_extra={"example": {"order_id": "order-id-here", "pickup_code": "771204"}}
    )


class HandoffOut(BaseModel):
    order_id: str
    status: OrderStatus
    pickup_status: PickupStatus
    agent_id: str | None = None
    message: str
