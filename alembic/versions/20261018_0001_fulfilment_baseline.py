"""fulfilment baseline: accounts, orders, returns, payouts, notifications

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _index_exists(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return index_name in {index["name"] for index in inspector.get_indexes(table_name)}


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


INDEXES: list[tuple[str, str, list[str], bool]] = [
    ("ix_users_email", "users", ["email"], True),
    ("ix_users_role", "users", ["role"], False),
    ("ix_orders_customer_id", "orders", ["customer_id"], False),
    ("ix_orders_agent_id", "orders", ["agent_id"], False),
    ("ix_orders_payment_reference", "orders", ["payment_reference"], True),
    ("ix_orders_customer_created_at", "orders", ["customer_id", "created_at"], False),
    ("ix_orders_status_created_at", "orders", ["status", "created_at"], False),
    ("ix_orders_agent_status", "orders", ["agent_id", "status"], False),
    ("ix_order_items_order_id", "order_items", ["order_id"], False),
    ("ix_order_items_vendor_id", "order_items", ["vendor_id"], False),
    ("ix_returns_order_id", "returns", ["order_id"], False),
    ("ix_returns_order_item_id", "returns", ["order_item_id"], False),
    ("ix_returns_customer_id", "returns", ["customer_id"], False),
    ("ix_returns_vendor_id", "returns", ["vendor_id"], False),
    ("ix_returns_refund_reference", "returns", ["refund_reference"], True),
    ("ix_refund_requests_order_id", "refund_requests", ["order_id"], False),
    ("ix_refund_requests_order_item_id", "refund_requests", ["order_item_id"], False),
    ("ix_refund_requests_customer_id", "refund_requests", ["customer_id"], False),
    ("ix_refund_requests_vendor_id", "refund_requests", ["vendor_id"], False),
    (
        "ix_refund_requests_vendor_status_created_at",
        "refund_requests",
        ["vendor_id", "status", "created_at"],
        False,
    ),
    ("ix_refund_requests_item_status", "refund_requests", ["order_item_id", "status"], False),
    ("ix_payouts_vendor_id", "payouts", ["vendor_id"], False),
    ("ix_payouts_transfer_reference", "payouts", ["transfer_reference"], True),
    ("ix_payouts_vendor_status_created_at", "payouts", ["vendor_id", "status", "created_at"], False),
    ("ix_payout_holds_vendor_id", "payout_holds", ["vendor_id"], False),
    ("ix_payout_holds_vendor_status", "payout_holds", ["vendor_id", "status"], False),
    ("ix_notifications_user_id", "notifications", ["user_id"], False),
    ("ix_notifications_order_id", "notifications", ["order_id"], False),
    (
        "ix_notifications_user_read_created_at",
        "notifications",
        ["user_id", "is_read", "created_at"],
        False,
    ),
    ("ix_payment_webhook_events_provider", "payment_webhook_events", ["provider"], False),
    ("ix_payment_webhook_events_event_id", "payment_webhook_events", ["event_id"], True),
    ("ix_payment_webhook_events_reference", "payment_webhook_events", ["reference"], False),
    (
        "ix_payment_webhook_events_provider_created_at",
        "payment_webhook_events",
        ["provider", "created_at"],
        False,
    ),
    ("ix_audit_logs_actor_user_id", "audit_logs", ["actor_user_id"], False),
    ("ix_audit_logs_action_created_at", "audit_logs", ["action", "created_at"], False),
    ("ix_audit_logs_target", "audit_logs", ["target_type", "target_id"], False),
]

ACTIVE_HOLD_INDEX = "ux_payout_holds_one_active_per_vendor"
EMAIL_LOWER_INDEX = "ux_users_email_lower"


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("hashed_password", sa.String(length=255), nullable=False),
            sa.Column("full_name", sa.String(length=100), nullable=True),
            sa.Column("phone", sa.String(length=30), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="CUSTOMER"),
            sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
            _created_at(),
            _updated_at(),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "vendors"):
        op.create_table(
            "vendors",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("store_name", sa.String(length=120), nullable=False),
            sa.Column("commission_rate", sa.Numeric(5, 2), nullable=False, server_default="5.00"),
            sa.Column("is_approved", sa.Boolean(), nullable=True, server_default=sa.true()),
            sa.Column("total_refunds_processed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_refund_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
            _created_at(),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id"),
        )

    if not _table_exists(inspector, "agents"):
        op.create_table(
            "agents",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("location", sa.String(length=120), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
            _created_at(),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id"),
        )

    if not _table_exists(inspector, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("customer_id", sa.String(length=36), nullable=False),
            sa.Column("agent_id", sa.String(length=36), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("payment_status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("pickup_status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("payment_reference", sa.String(length=80), nullable=False),
            sa.Column("dropoff_code", sa.String(length=12), nullable=True),
            sa.Column("pickup_code", sa.String(length=12), nullable=True),
            sa.Column("cancel_reason", sa.String(length=255), nullable=True),
            sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("dropped_off_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("ready_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("picked_up_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["customer_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["agent_id"], ["agents.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "order_items"):
        op.create_table(
            "order_items",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("order_id", sa.String(length=36), nullable=False),
            sa.Column("vendor_id", sa.String(length=36), nullable=False),
            sa.Column("product_name", sa.String(length=160), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
            sa.Column("line_total", sa.Numeric(12, 2), nullable=False),
            sa.Column("commission_rate", sa.Numeric(5, 2), nullable=False),
            sa.Column("commission_amount", sa.Numeric(12, 2), nullable=False),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
            sa.ForeignKeyConstraint(["vendor_id"], ["vendors.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "returns"):
        op.create_table(
            "returns",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("order_id", sa.String(length=36), nullable=False),
            sa.Column("order_item_id", sa.String(length=36), nullable=False),
            sa.Column("customer_id", sa.String(length=36), nullable=False),
            sa.Column("vendor_id", sa.String(length=36), nullable=False),
            sa.Column("reason", sa.String(length=255), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="REQUESTED"),
            sa.Column("refund_status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("refund_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("refund_reference", sa.String(length=80), nullable=True),
            sa.Column("vendor_decision", sa.String(length=20), nullable=True),
            sa.Column("vendor_decision_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("admin_override", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("admin_override_reason", sa.String(length=255), nullable=True),
            sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
            sa.ForeignKeyConstraint(["order_item_id"], ["order_items.id"]),
            sa.ForeignKeyConstraint(["customer_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["vendor_id"], ["vendors.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "refund_requests"):
        op.create_table(
            "refund_requests",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("return_id", sa.String(length=36), nullable=False),
            sa.Column("order_id", sa.String(length=36), nullable=False),
            sa.Column("order_item_id", sa.String(length=36), nullable=False),
            sa.Column("customer_id", sa.String(length=36), nullable=False),
            sa.Column("vendor_id", sa.String(length=36), nullable=False),
            sa.Column("reason", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("refund_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("photos", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("vendor_response", sa.Text(), nullable=True),
            sa.Column("admin_notes", sa.Text(), nullable=True),
            sa.Column("decided_by", sa.String(length=36), nullable=True),
            sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["return_id"], ["returns.id"]),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
            sa.ForeignKeyConstraint(["order_item_id"], ["order_items.id"]),
            sa.ForeignKeyConstraint(["customer_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["vendor_id"], ["vendors.id"]),
            sa.ForeignKeyConstraint(["decided_by"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("return_id"),
        )

    if not _table_exists(inspector, "payouts"):
        op.create_table(
            "payouts",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("vendor_id", sa.String(length=36), nullable=False),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("bank_name", sa.String(length=120), nullable=False),
            sa.Column("account_number", sa.String(length=30), nullable=False),
            sa.Column("account_name", sa.String(length=120), nullable=False),
            sa.Column("approved_amount", sa.Numeric(12, 2), nullable=True),
            sa.Column("held_amount", sa.Numeric(12, 2), nullable=True),
            sa.Column("approved_by", sa.String(length=36), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("rejection_reason", sa.String(length=255), nullable=True),
            sa.Column("transfer_reference", sa.String(length=80), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["vendor_id"], ["vendors.id"]),
            sa.ForeignKeyConstraint(["approved_by"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "payout_holds"):
        op.create_table(
            "payout_holds",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("vendor_id", sa.String(length=36), nullable=False),
            sa.Column("hold_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("reason", sa.String(length=255), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="ACTIVE"),
            sa.Column("refund_request_ids", sa.JSON(), nullable=True),
            sa.Column("created_by", sa.String(length=36), nullable=False),
            sa.Column("released_by", sa.String(length=36), nullable=True),
            sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("applied_payout_id", sa.String(length=36), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["vendor_id"], ["vendors.id"]),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"]),
            sa.ForeignKeyConstraint(["released_by"], ["users.id"]),
            sa.ForeignKeyConstraint(["applied_payout_id"], ["payouts.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "notifications"):
        op.create_table(
            "notifications",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("type", sa.String(length=40), nullable=False),
            sa.Column("title", sa.String(length=120), nullable=False),
            sa.Column("message", sa.String(length=500), nullable=False),
            sa.Column("order_id", sa.String(length=36), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
            _created_at(),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "payment_webhook_events"):
        op.create_table(
            "payment_webhook_events",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("provider", sa.String(length=40), nullable=False),
            sa.Column("event_id", sa.String(length=120), nullable=False),
            sa.Column("event_type", sa.String(length=60), nullable=False),
            sa.Column("reference", sa.String(length=80), nullable=True),
            sa.Column("outcome", sa.String(length=40), nullable=False, server_default="recorded"),
            sa.Column("payload_json", sa.JSON(), nullable=True),
            _created_at(),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "audit_logs"):
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("actor_user_id", sa.String(length=36), nullable=True),
            sa.Column("action", sa.String(length=100), nullable=False),
            sa.Column("target_type", sa.String(length=50), nullable=False),
            sa.Column("target_id", sa.String(length=36), nullable=True),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    inspector = sa.inspect(bind)
    for index_name, table_name, columns, unique in INDEXES:
        if not _index_exists(inspector, table_name, index_name):
            op.create_index(index_name, table_name, columns, unique=unique)

    if not _index_exists(inspector, "users", EMAIL_LOWER_INDEX):
        op.create_index(EMAIL_LOWER_INDEX, "users", [sa.text("lower(email)")], unique=True)

    # One ACTIVE hold per vendor; merging relies on this to serialize concurrent refunds.
    if not _index_exists(inspector, "payout_holds", ACTIVE_HOLD_INDEX):
        op.create_index(
            ACTIVE_HOLD_INDEX,
            "payout_holds",
            ["vendor_id"],
            unique=True,
            postgresql_where=sa.text("status = 'ACTIVE'"),
            sqlite_where=sa.text("status = 'ACTIVE'"),
        )


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    for table_name in (
        "audit_logs",
        "payment_webhook_events",
        "notifications",
        "payout_holds",
        "payouts",
        "refund_requests",
        "returns",
        "order_items",
        "orders",
        "agents",
        "vendors",
        "users",
    ):
        if _table_exists(inspector, table_name):
            op.drop_table(table_name)
