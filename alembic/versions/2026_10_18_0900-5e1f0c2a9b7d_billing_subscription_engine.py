"""billing_subscription_engine

Revision ID: 5e1f0c2a9b7d
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "5e1f0c2a9b7d"
down_revision = None
branch_labels = None
depends_on = None

LIVE_STATUS_SQL = "status IN ('trial', 'active', 'past_due')"


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Create plan, subscription, event and renewal lease tables."""
    op.create_table(
        "billing_subscription_plans",
        sa.Column("plan_id", sa.String(50), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(15, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("billing_interval", sa.String(20), nullable=False),
        sa.Column("max_businesses", sa.Integer(), nullable=False),
        sa.Column("max_staff_per_business", sa.Integer(), nullable=False),
        sa.Column("max_appointments_per_day", sa.Integer(), nullable=False),
        sa.Column("features", sa.JSON(), nullable=False),
        sa.Column("is_trial_eligible", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_popular", sa.Boolean(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("price >= 0", name="ck_billing_plans_price_non_negative"),
    )
    op.create_index(
        "ix_billing_plans_active_sort", "billing_subscription_plans", ["is_active", "sort_order"]
    )

    op.create_table(
        "billing_business_subscriptions",
        sa.Column("subscription_id", sa.String(50), primary_key=True),
        sa.Column("business_id", sa.String(50), nullable=False),
        sa.Column("plan_id", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("previous_status", sa.String(20), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_renewal", sa.Boolean(), nullable=False),
        sa.Column("payment_method_id", sa.String(100), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pending_plan_id", sa.String(50), nullable=True),
        sa.Column("pending_change_effective_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_payment_count", sa.Integer(), nullable=False),
        sa.Column("last_payment_error", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "current_period_end > current_period_start",
            name="ck_billing_subscriptions_period_order",
        ),
    )
    op.create_index(
        "ix_billing_business_subscriptions_business_id",
        "billing_business_subscriptions",
        ["business_id"],
    )
    op.create_index(
        "uq_billing_subscriptions_live_business",
        "billing_business_subscriptions",
        ["business_id"],
        unique=True,
        sqlite_where=sa.text(LIVE_STATUS_SQL),
        postgresql_where=sa.text(LIVE_STATUS_SQL),
    )
    op.create_index(
        "ix_billing_subscriptions_status_period_end",
        "billing_business_subscriptions",
        ["status", "current_period_end"],
    )

    op.create_table(
        "billing_subscription_events",
        sa.Column("event_id", sa.String(50), primary_key=True),
        sa.Column("subscription_id", sa.String(50), nullable=False),
        sa.Column("business_id", sa.String(50), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("event_data", sa.JSON(), nullable=False),
        sa.Column("user_id", sa.String(50), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_billing_events_subscription", "billing_subscription_events", ["subscription_id"]
    )
    op.create_index(
        "ix_billing_events_business_type",
        "billing_subscription_events",
        ["business_id", "event_type"],
    )
    op.create_index("ix_billing_events_created", "billing_subscription_events", ["created_at"])

    op.create_table(
        "billing_renewal_leases",
        sa.Column("lease_id", sa.String(50), primary_key=True),
        sa.Column("subscription_id", sa.String(50), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("payment_id", sa.String(100), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "subscription_id", "period_end", name="uq_billing_renewal_lease_period"
        ),
    )


def downgrade() -> None:
    op.drop_table("billing_renewal_leases")
    op.drop_index("ix_billing_events_created", table_name="billing_subscription_events")
    op.drop_index("ix_billing_events_business_type", table_name="billing_subscription_events")
    op.drop_index("ix_billing_events_subscription", table_name="billing_subscription_events")
    op.drop_table("billing_subscription_events")
    op.drop_index(
        "ix_billing_subscriptions_status_period_end", table_name="billing_business_subscriptions"
    )
    op.drop_index(
        "uq_billing_subscriptions_live_business", table_name="billing_business_subscriptions"
    )
    op.drop_index(
        "ix_billing_business_subscriptions_business_id",
        table_name="billing_business_subscriptions",
    )
    op.drop_table("billing_business_subscriptions")
    op.drop_index("ix_billing_plans_active_sort", table_name="billing_subscription_plans")
    op.drop_table("billing_subscription_plans")
