"""Create subscription_snapshots table.

Revision ID: 001_subscription_snapshots
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001_subscription_snapshots"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    billing_cycle = sa.Enum("monthly", "yearly", name="billingcycle")

    op.create_table(
        "subscription_snapshots",
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("tier", sa.String(32), nullable=False),
        sa.Column("billing_cycle", billing_cycle, nullable=False),
        sa.Column(
            "status",
            sa.Enum("trial", "active", "past_due", "canceled", name="subscriptionstatus"),
            nullable=False,
        ),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "cancel_at_period_end",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_tier", sa.String(32), nullable=True),
        sa.Column("scheduled_billing_cycle", billing_cycle, nullable=True),
        sa.Column("scheduled_effective_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "payment_method",
            sa.Enum("card", "sepa", "invoice", name="paymentmethod"),
            nullable=False,
            server_default="card",
        ),
        sa.Column("external_customer_id", sa.String(255), nullable=True),
        sa.Column("external_subscription_id", sa.String(255), nullable=True),
        sa.Column(
            "needs_reconciliation",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("tenant_id", name="pk_subscription_snapshots"),
        sa.UniqueConstraint(
            "external_subscription_id", name="uq_subscription_snapshots_external_subscription_id"
        ),
    )
    op.create_index(
        "ix_subscription_snapshots_status", "subscription_snapshots", ["status"]
    )
    op.create_index(
        "ix_subscription_snapshots_current_period_end",
        "subscription_snapshots",
        ["current_period_end"],
    )
    op.create_index(
        "ix_subscription_snapshots_scheduled_effective_date",
        "subscription_snapshots",
        ["scheduled_effective_date"],
    )
    op.create_index(
        "ix_subscription_snapshots_needs_reconciliation",
        "subscription_snapshots",
        ["needs_reconciliation"],
    )
    op.create_index(
        "ix_subscription_snapshots_external_customer_id",
        "subscription_snapshots",
        ["external_customer_id"],
    )


def downgrade() -> None:
    op.drop_index(
        "ix_subscription_snapshots_external_customer_id", table_name="subscription_snapshots"
    )
    op.drop_index(
        "ix_subscription_snapshots_needs_reconciliation", table_name="subscription_snapshots"
    )
    op.drop_index(
        "ix_subscription_snapshots_scheduled_effective_date",
        table_name="subscription_snapshots",
    )
    op.drop_index(
        "ix_subscription_snapshots_current_period_end", table_name="subscription_snapshots"
    )
    op.drop_index("ix_subscription_snapshots_status", table_name="subscription_snapshots")
    op.drop_table("subscription_snapshots")
    sa.Enum(name="paymentmethod").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="subscriptionstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="billingcycle").drop(op.get_bind(), checkfirst=True)
