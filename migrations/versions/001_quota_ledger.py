"""Create the quota ledger schema.

Revision ID: 001_quota_ledger
Revises: 000_enable_extensions
Create Date: 2026-10-17

Creates users, service_costs, quota_transactions, orders, subscriptions and
ai_tasks. quota_transactions is the ledger: GRANT rows carry a live
remaining_amount bounded by their amount, CONSUME rows carry the reversal
manifest in consumed_detail.

Note: ledger rows use ON DELETE CASCADE on users. Deleting a user destroys
their ledger history.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_quota_ledger"
down_revision: str = "000_enable_extensions"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# Shared column types
_PG_UUID = postgresql.UUID(as_uuid=True)
_UUID_DEFAULT = sa.text("gen_random_uuid()")
_AMOUNT = sa.Numeric(precision=20, scale=6)
_COST = sa.Numeric(precision=12, scale=6)
_TZ = sa.DateTime(timezone=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", _TZ, server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", _TZ, server_default=sa.func.now(), nullable=False),
    ]


def _user_fk() -> sa.Column:
    return sa.Column(
        "user_id",
        _PG_UUID,
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    """Create ledger tables, constraints and indexes."""
    # 1. users (referenced, not owned by the ledger)
    op.create_table(
        "users",
        sa.Column("id", _PG_UUID, server_default=_UUID_DEFAULT, primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column(
            "is_admin", sa.Boolean, server_default=sa.text("false"), nullable=False
        ),
        sa.Column("token_invalidated_before", _TZ, nullable=True),
        *_timestamps(),
    )

    # 2. service_costs
    op.create_table(
        "service_costs",
        sa.Column("id", _PG_UUID, server_default=_UUID_DEFAULT, primary_key=True),
        sa.Column("service_type", sa.String(50), nullable=False),
        sa.Column("scene", sa.String(50), server_default=sa.text("''"), nullable=False),
        sa.Column("dollar_cost", _COST, server_default=sa.text("0"), nullable=False),
        sa.Column("unit_cost", _COST, server_default=sa.text("1"), nullable=False),
        sa.Column("display_name", sa.String(100), nullable=True),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column(
            "is_active", sa.Boolean, server_default=sa.text("true"), nullable=False
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "service_type", "scene", name="uq_service_costs_type_scene"
        ),
        sa.CheckConstraint(
            "dollar_cost >= 0", name="ck_service_costs_dollar_cost_nonneg"
        ),
        sa.CheckConstraint("unit_cost >= 0", name="ck_service_costs_unit_cost_nonneg"),
    )

    # 3. quota_transactions (the ledger)
    op.create_table(
        "quota_transactions",
        sa.Column("id", _PG_UUID, server_default=_UUID_DEFAULT, primary_key=True),
        _user_fk(),
        sa.Column("user_email", sa.String(255), nullable=True),
        sa.Column("pool_type", sa.String(20), nullable=False),
        sa.Column("measurement_type", sa.String(20), nullable=False),
        sa.Column("order_no", sa.String(64), nullable=True),
        sa.Column("subscription_no", sa.String(64), nullable=True),
        sa.Column("transaction_no", sa.String(32), nullable=False, unique=True),
        sa.Column("transaction_type", sa.String(20), nullable=False),
        sa.Column("transaction_scene", sa.String(50), nullable=True),
        sa.Column("amount", _AMOUNT, nullable=False),
        sa.Column(
            "remaining_amount", _AMOUNT, server_default=sa.text("0"), nullable=False
        ),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("expires_at", _TZ, nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("consumed_detail", postgresql.JSONB, nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "pool_type IN ('trial', 'subscription', 'paygo')",
            name="ck_quota_txn_pool_type_valid",
        ),
        sa.CheckConstraint(
            "measurement_type IN ('dollar', 'unit')",
            name="ck_quota_txn_measurement_type_valid",
        ),
        sa.CheckConstraint(
            "transaction_type IN ('grant', 'consume')",
            name="ck_quota_txn_type_valid",
        ),
        sa.CheckConstraint(
            "status IN ('active', 'expired', 'deleted')",
            name="ck_quota_txn_status_valid",
        ),
        # Grant balance never negative and never above the granted amount
        sa.CheckConstraint(
            "transaction_type <> 'grant' OR (amount > 0 "
            "AND remaining_amount >= 0 AND remaining_amount <= amount)",
            name="ck_quota_txn_grant_remaining_bounds",
        ),
        sa.CheckConstraint(
            "transaction_type <> 'consume' OR amount < 0",
            name="ck_quota_txn_consume_negative",
        ),
    )
    op.create_index(
        "ix_quota_transactions_consume_fifo",
        "quota_transactions",
        [
            "user_id",
            "pool_type",
            "status",
            "transaction_type",
            "remaining_amount",
            "expires_at",
        ],
    )
    op.create_index(
        "ix_quota_transactions_order_no", "quota_transactions", ["order_no"]
    )
    op.create_index(
        "ix_quota_transactions_subscription_no",
        "quota_transactions",
        ["subscription_no"],
    )
    op.create_index(
        "uq_quota_transactions_grant_order_no",
        "quota_transactions",
        ["order_no"],
        unique=True,
        postgresql_where=sa.text(
            "transaction_type = 'grant' AND order_no IS NOT NULL"
        ),
    )

    # 4. orders
    op.create_table(
        "orders",
        sa.Column("id", _PG_UUID, server_default=_UUID_DEFAULT, primary_key=True),
        sa.Column("order_no", sa.String(64), nullable=False, unique=True),
        _user_fk(),
        sa.Column("user_email", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column("payment_type", sa.String(20), nullable=True),
        sa.Column("payment_provider", sa.String(50), nullable=False),
        sa.Column("transaction_id", sa.String(255), nullable=True),
        sa.Column("subscription_id", sa.String(255), nullable=True),
        sa.Column("subscription_no", sa.String(64), nullable=True),
        sa.Column("quota_pool_type", sa.String(20), nullable=True),
        sa.Column("quota_measurement_type", sa.String(20), nullable=True),
        sa.Column("quota_amount", _AMOUNT, nullable=True),
        sa.Column("quota_valid_days", sa.Integer, nullable=True),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("paid_at", _TZ, nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'created', 'completed', 'paid', 'failed')",
            name="ck_orders_status_valid",
        ),
    )
    op.create_index("ix_orders_user_status", "orders", ["user_id", "status"])
    op.create_index(
        "ix_orders_transaction_provider",
        "orders",
        ["transaction_id", "payment_provider"],
    )

    # 5. subscriptions
    op.create_table(
        "subscriptions",
        sa.Column("id", _PG_UUID, server_default=_UUID_DEFAULT, primary_key=True),
        sa.Column("subscription_no", sa.String(64), nullable=False, unique=True),
        _user_fk(),
        sa.Column("user_email", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("payment_provider", sa.String(50), nullable=False),
        sa.Column("subscription_id", sa.String(255), nullable=False),
        sa.Column("plan_name", sa.String(100), nullable=True),
        sa.Column("interval", sa.String(20), nullable=True),
        sa.Column("current_period_start", _TZ, nullable=True),
        sa.Column("current_period_end", _TZ, nullable=True),
        sa.Column("quota_pool_type", sa.String(20), nullable=True),
        sa.Column("quota_measurement_type", sa.String(20), nullable=True),
        sa.Column("quota_amount", _AMOUNT, nullable=True),
        sa.Column("quota_valid_days", sa.Integer, nullable=True),
        sa.Column("canceled_at", _TZ, nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_subscriptions_user_status", "subscriptions", ["user_id", "status"]
    )
    op.create_index(
        "ix_subscriptions_provider_id",
        "subscriptions",
        ["subscription_id", "payment_provider"],
    )

    # 6. ai_tasks
    op.create_table(
        "ai_tasks",
        sa.Column("id", _PG_UUID, server_default=_UUID_DEFAULT, primary_key=True),
        _user_fk(),
        sa.Column("media_type", sa.String(20), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("model", sa.String(100), nullable=False),
        sa.Column("prompt", sa.Text, nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("scene", sa.String(50), server_default=sa.text("''"), nullable=False),
        sa.Column("cost_amount", _AMOUNT, server_default=sa.text("0"), nullable=False),
        sa.Column(
            "cost_measurement_type",
            sa.String(20),
            server_default=sa.text("'unit'"),
            nullable=False,
        ),
        sa.Column(
            "quota_id",
            _PG_UUID,
            sa.ForeignKey("quota_transactions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("task_id", sa.String(255), nullable=True),
        sa.Column("task_result", postgresql.JSONB, nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_ai_tasks_user_media_type", "ai_tasks", ["user_id", "media_type"]
    )
    op.create_index(
        "ix_ai_tasks_media_type_status", "ai_tasks", ["media_type", "status"]
    )


def downgrade() -> None:
    """Drop ledger tables in reverse dependency order."""
    op.drop_index("ix_ai_tasks_media_type_status", table_name="ai_tasks")
    op.drop_index("ix_ai_tasks_user_media_type", table_name="ai_tasks")
    op.drop_table("ai_tasks")

    op.drop_index("ix_subscriptions_provider_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_status", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_index("ix_orders_transaction_provider", table_name="orders")
    op.drop_index("ix_orders_user_status", table_name="orders")
    op.drop_table("orders")

    op.drop_index(
        "uq_quota_transactions_grant_order_no", table_name="quota_transactions"
    )
    op.drop_index(
        "ix_quota_transactions_subscription_no", table_name="quota_transactions"
    )
    op.drop_index("ix_quota_transactions_order_no", table_name="quota_transactions")
    op.drop_index(
        "ix_quota_transactions_consume_fifo", table_name="quota_transactions"
    )
    op.drop_table("quota_transactions")

    op.drop_table("service_costs")
    op.drop_table("users")
