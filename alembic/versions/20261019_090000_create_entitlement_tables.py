"""Create user_premium and webhook_events tables

Revision ID: 3f9c1e7a2b40
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "3f9c1e7a2b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""

    # ------------------------------------------------------------------
    # 1. Per-user entitlement snapshot
    # ------------------------------------------------------------------
    op.create_table(
        "user_premium",
        sa.Column("app_user_id", sa.String(255), primary_key=True),
        sa.Column("is_premium", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("entitlement_type", sa.String(20), nullable=True),
        sa.Column("subscription_type", sa.String(20), nullable=True),
        sa.Column("subscription_state", sa.String(20), nullable=True),
        sa.Column("product_id", sa.String(255), nullable=True),
        sa.Column("last_event_timestamp_ms", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_event_type", sa.Text(), nullable=True),
        sa.Column("last_event_id", sa.String(255), nullable=True),
        sa.Column("expires_at_ms", sa.BigInteger(), nullable=True),
        sa.Column("purchased_at_ms", sa.BigInteger(), nullable=True),
        sa.Column("expired_at_ms", sa.BigInteger(), nullable=True),
        sa.Column("order_id", sa.String(255), nullable=True),
        sa.Column("base_plan_id", sa.String(255), nullable=True),
        sa.Column("is_in_trial", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("has_used_trial", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("trial_start_at_ms", sa.BigInteger(), nullable=True),
        sa.Column("trial_end_at_ms", sa.BigInteger(), nullable=True),
        sa.Column("trial_consumed_at_ms", sa.BigInteger(), nullable=True),
        sa.Column("original_app_user_id", sa.String(255), nullable=True),
        sa.Column("reconciliation_source", sa.String(32), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "idx_user_premium_premium_expires",
        "user_premium",
        ["is_premium", "expires_at_ms"],
    )

    # ------------------------------------------------------------------
    # 2. Webhook event log (write-once)
    # ------------------------------------------------------------------
    op.create_table(
        "webhook_events",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("app_user_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.Text(), nullable=True),
        sa.Column("event_timestamp_ms", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="processed"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "idx_webhook_events_user_created",
        "webhook_events",
        ["app_user_id", "created_at"],
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("idx_webhook_events_user_created", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_index("idx_user_premium_premium_expires", table_name="user_premium")
    op.drop_table("user_premium")
