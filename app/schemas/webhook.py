from pydantic import BaseModel, ConfigDict


class PaymentWebhookEventIn(BaseModel):
    event_id: str
    event_type: str
    reference: str | None = None
    status: str | None = None
    amount: float | None = None
    metadata: dict[str, object] | None = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "event_id": "evt_001",
                "event_type": "charge.success",
                "reference": "pay_ab12cd34ef56",
                "status": "success",
                "amount": 4500.0,
                "metadata": {"channel": "card"},
            }
        }
    )


class PaymentWebhookOut(BaseModel):
    ok: bool
    provider: str
    event_type: str
    outcome: str
    target_type: str | None = None
    target_id: str | None = None
    duplicate: bool = False
