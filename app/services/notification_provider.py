import uuid
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class PushMessage:
    user_id: str
    notification_id: str
    notification_type: str
    title: str
    body: str
    order_id: str | None = None


@dataclass(frozen=True)
class PushResult:
    provider: str
    message_id: str
    status: str


class NotificationProvider(Protocol):
    name: str

    def send_push(self, message: PushMessage) -> PushResult:
        ...


class StubPushProvider:
    name = "push_stub"

    def send_push(self, message: PushMessage) -> PushResult:
        return PushResult(
            provider=self.name,
            message_id=f"push-{uuid.uuid4().hex[:14]}",
            status="sent",
        )


_NOTIFICATION_PROVIDERS: dict[str, NotificationProvider] = {
    "push_stub": StubPushProvider(),
}


def get_notification_provider(name: str) -> NotificationProvider:
    normalized = (name or "").strip().lower()
    provider = _NOTIFICATION_PROVIDERS.get(normalized)
    if not provider:
        available = ", ".join(sorted(_NOTIFICATION_PROVIDERS))
        raise ValueError(f"Unknown notification provider '{name}'. Available: {available}")
    return provider
