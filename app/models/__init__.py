from app.models.user import Agent, User, Vendor
from app.models.order import Order, OrderItem
from app.models.refund import RefundRequest, ReturnRecord
from app.models.payout import Payout, PayoutHold
from app.models.notification import Notification
from app.models.webhook import PaymentWebhookEvent
from app.models.audit_log import AuditLog
