"""
Initial schema: users, reference data, orders, ledger, payouts, audit, outbox

Revision ID: 2026_10_19_0001
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "2026_10_19_0001"
down_revision = None
branch_labels = None
depends_on = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

user_role = sa.Enum("client", "master", "dispatcher", "admin", name="user_role")
order_status = sa.Enum(
    "placed",
    "reopened",
    "claimed",
    "started",
    "completed",
    "confirmed",
    "canceled_by_master",
    "canceled_by_client",
    "expired",
    name="order_status",
)
order_urgency = sa.Enum("planned", "urgent", "emergency", name="order_urgency")
order_pricing_type = sa.Enum("fixed", "unknown", name="order_pricing_type")
payment_method = sa.Enum("cash", "transfer", "card", name="payment_method")
balance_transaction_type = sa.Enum(
    "commission_earned",
    "payment",
    "top_up",
    "payout_paid",
    "admin_adjustment",
    "manual_deduction",
    name="balance_transaction_type",
)
payout_status = sa.Enum("requested", "approved", "rejected", "paid", name="payout_status")


def _created_at(index: bool = False) -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=True,
        index=index,
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("role", user_role, nullable=False),
        sa.Column("full_name", sa.String(160)),
        sa.Column("phone", sa.String(32)),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
    )
    op.create_index("ix_users__role", "users", ["role"])
    op.create_index("ix_users__phone", "users", ["phone"])

    op.create_table(
        "service_types",
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("code", name="pk_service_types"),
    )

    op.create_table(
        "districts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.PrimaryKeyConstraint("id", name="pk_districts"),
        sa.UniqueConstraint("name", name="uq_districts__name"),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("client_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL", name="fk_orders__client_id__users")),
        sa.Column("client_name", sa.String(160)),
        sa.Column("client_phone", sa.String(32)),
        sa.Column("client_phone_digits", sa.String(32)),
        sa.Column("master_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL", name="fk_orders__master_id__users")),
        sa.Column("dispatcher_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL", name="fk_orders__dispatcher_id__users")),
        sa.Column(
            "assigned_dispatcher_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="SET NULL", name="fk_orders__assigned_dispatcher_id__users"),
        ),
        sa.Column("service_type", sa.String(64), nullable=False),
        sa.Column("urgency", order_urgency, nullable=False, server_default="planned"),
        sa.Column("problem_description", sa.Text()),
        sa.Column("area", sa.String(120)),
        sa.Column("full_address", sa.Text()),
        sa.Column("preferred_date", sa.Date()),
        sa.Column("preferred_time", sa.Time()),
        sa.Column("dispatcher_note", sa.Text()),
        sa.Column("pricing_type", order_pricing_type, nullable=False, server_default="unknown"),
        sa.Column("initial_price", sa.Numeric(12, 2)),
        sa.Column("callout_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("final_price", sa.Numeric(12, 2)),
        sa.Column("price_change_reason", sa.Text()),
        sa.Column("work_performed", sa.Text()),
        sa.Column("hours_worked", sa.Numeric(6, 2)),
        sa.Column("status", order_status, nullable=False, server_default="placed"),
        sa.Column("cancellation_reason", sa.String(64)),
        sa.Column("cancellation_notes", sa.Text()),
        sa.Column(
            "cancellation_master_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="SET NULL", name="fk_orders__cancellation_master_id__users"),
        ),
        sa.Column("payment_method", payment_method),
        sa.Column("payment_proof_url", sa.Text()),
        sa.Column(
            "payment_confirmed_by",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="SET NULL", name="fk_orders__payment_confirmed_by__users"),
        ),
        sa.Column("is_disputed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("requires_review", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _created_at(),
        sa.Column("claimed_at", sa.DateTime(timezone=True)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("confirmed_at", sa.DateTime(timezone=True)),
        sa.Column("canceled_at", sa.DateTime(timezone=True)),
        sa.Column("payment_confirmed_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id", name="pk_orders"),
        sa.CheckConstraint("callout_fee >= 0", name="ck_orders__callout_fee_non_negative"),
        sa.CheckConstraint(
            "final_price IS NULL OR final_price >= callout_fee",
            name="ck_orders__final_price_floor",
        ),
        sa.CheckConstraint(
            "initial_price IS NULL OR initial_price >= callout_fee",
            name="ck_orders__initial_price_floor",
        ),
    )
    for column in (
        "client_id",
        "client_phone",
        "client_phone_digits",
        "master_id",
        "dispatcher_id",
        "assigned_dispatcher_id",
        "service_type",
        "status",
        "created_at",
    ):
        op.create_index(f"ix_orders__{column}", "orders", [column])
    op.create_index("ix_orders__status_created", "orders", ["status", "created_at"])
    op.create_index("ix_orders__dispatcher_status", "orders", ["dispatcher_id", "status"])
    op.create_index(
        "ix_orders__assigned_dispatcher_status", "orders", ["assigned_dispatcher_id", "status"]
    )
    op.create_index("ix_orders__master_status", "orders", ["master_id", "status"])

    op.create_table(
        "order_audit_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "order_id",
            sa.Integer(),
            sa.ForeignKey("orders.id", ondelete="CASCADE", name="fk_order_audit_log__order_id__orders"),
            nullable=False,
        ),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("old_data", JSON),
        sa.Column("new_data", JSON),
        sa.Column(
            "performed_by",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="SET NULL", name="fk_order_audit_log__performed_by__users"),
        ),
        sa.Column("notes", sa.Text()),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_order_audit_log"),
    )
    op.create_index("ix_order_audit_log__order_id", "order_audit_log", ["order_id"])
    op.create_index("ix_order_audit_log__created_at", "order_audit_log", ["created_at"])
    op.create_index(
        "ix_order_audit_log__order_created_at", "order_audit_log", ["order_id", "created_at"]
    )

    op.create_table(
        "master_ledgers",
        sa.Column(
            "master_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE", name="fk_master_ledgers__master_id__users"),
            nullable=False,
        ),
        sa.Column("total_earnings", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_commission_owed", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_commission_paid", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("prepaid_balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("balance_threshold", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("balance_blocked_at", sa.DateTime(timezone=True)),
        sa.Column("max_active_jobs", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("active_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refusal_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_jobs_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("master_id", name="pk_master_ledgers"),
        sa.CheckConstraint("total_commission_owed >= 0", name="ck_master_ledgers__owed_non_negative"),
        sa.CheckConstraint("total_commission_paid >= 0", name="ck_master_ledgers__paid_non_negative"),
    )

    op.create_table(
        "payout_requests",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "master_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE", name="fk_payout_requests__master_id__users"),
            nullable=False,
        ),
        sa.Column("status", payout_status, nullable=False, server_default="requested"),
        sa.Column("requested_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("approved_amount", sa.Numeric(12, 2)),
        sa.Column("requested_note", sa.Text()),
        sa.Column("admin_note", sa.Text()),
        sa.Column(
            "processed_by",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="SET NULL", name="fk_payout_requests__processed_by__users"),
        ),
        _created_at(),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint("id", name="pk_payout_requests"),
        sa.CheckConstraint("requested_amount > 0", name="ck_payout_requests__requested_amount_positive"),
    )
    op.create_index("ix_payout_requests__master_id", "payout_requests", ["master_id"])
    op.create_index("ix_payout_requests__status", "payout_requests", ["status"])

    op.create_table(
        "balance_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "master_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE", name="fk_balance_transactions__master_id__users"),
            nullable=False,
        ),
        sa.Column("transaction_type", balance_transaction_type, nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("balance_before", sa.Numeric(12, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(12, 2), nullable=False),
        sa.Column(
            "order_id",
            sa.Integer(),
            sa.ForeignKey("orders.id", ondelete="SET NULL", name="fk_balance_transactions__order_id__orders"),
        ),
        sa.Column(
            "payout_request_id",
            sa.Integer(),
            sa.ForeignKey(
                "payout_requests.id",
                ondelete="SET NULL",
                name="fk_balance_transactions__payout_request_id__payout_requests",
            ),
        ),
        sa.Column(
            "created_by",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="SET NULL", name="fk_balance_transactions__created_by__users"),
        ),
        sa.Column("notes", sa.Text()),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_balance_transactions"),
    )
    op.create_index("ix_balance_transactions__master_id", "balance_transactions", ["master_id"])
    op.create_index(
        "ix_balance_transactions__transaction_type", "balance_transactions", ["transaction_type"]
    )
    op.create_index("ix_balance_transactions__order_id", "balance_transactions", ["order_id"])
    op.create_index("ix_balance_transactions__created_at", "balance_transactions", ["created_at"])
    op.create_index(
        "ix_balance_transactions__master_type",
        "balance_transactions",
        ["master_id", "transaction_type"],
    )

    op.create_table(
        "notifications_outbox",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "recipient_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE", name="fk_notifications_outbox__recipient_id__users"),
            nullable=False,
        ),
        sa.Column("event", sa.String(64), nullable=False),
        sa.Column("payload", JSON, nullable=False),
        _created_at(),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text()),
        sa.PrimaryKeyConstraint("id", name="pk_notifications_outbox"),
    )
    op.create_index("ix_notifications_outbox__recipient_id", "notifications_outbox", ["recipient_id"])
    op.create_index("ix_notifications_outbox__created_at", "notifications_outbox", ["created_at"])


def downgrade() -> None:
    op.drop_table("notifications_outbox")
    op.drop_table("balance_transactions")
    op.drop_table("payout_requests")
    op.drop_table("master_ledgers")
    op.drop_table("order_audit_log")
    op.drop_table("orders")
    op.drop_table("districts")
    op.drop_table("service_types")
    op.drop_table("users")
    bind = op.get_bind()
    for enum_type in (
        payout_status,
        balance_transaction_type,
        payment_method,
        order_pricing_type,
        order_urgency,
        order_status,
        user_role,
    ):
        enum_type.drop(bind, checkfirst=True)
