import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol


@dataclass(frozen=True)
class RefundInitRequest:
    refund_request_id: str
    payment_reference: str
    amount: Decimal


@dataclass(frozen=True)
class TransferInitRequest:
    payout_id: str
    amount: Decimal
    bank_name: str
    account_number: str
    account_name: str


@dataclass(frozen=True)
class ProviderResult:
    provider: str
    reference: str
    status: str


class PaymentProvider(Protocol):
    name: str

    def new_payment_reference(self, order_id: str) -> str:
        ...

    def initiate_refund(self, request: RefundInitRequest) -> ProviderResult:
        ...

    def initiate_transfer(self, request: TransferInitRequest) -> ProviderResult:
        ...


class StubPaymentProvider:
    """Issues references only. Completion arrives later through the webhook."""

    name = "stub"

    def new_payment_reference(self, order_id: str) -> str:
        return f"pay_{uuid.uuid4().hex[:18]}"

    def initiate_refund(self, request: RefundInitRequest) -> ProviderResult:
        return ProviderResult(provider=self.name, reference=f"rfd_{uuid.uuid4().hex[:18]}", status="pending")

    def initiate_transfer(self, request: TransferInitRequest) -> ProviderResult:
        return ProviderResult(provider=self.name, reference=f"trf_{uuid.uuid4().hex[:18]}", status="pending")


_PAYMENT_PROVIDERS: dict[str, PaymentProvider] = {
    "stub": StubPaymentProvider(),
}


def get_payment_provider(name: str) -> PaymentProvider:
    normalized = (name or "").strip().lower()
    provider = _PAYMENT_PROVIDERS.get(normalized)
    if not provider:
        available = ", ".join(sorted(_PAYMENT_PROVIDERS.keys()))
        raise ValueError(f"Unknown payment provider '{name}'. Available: {available}")
    return provider
