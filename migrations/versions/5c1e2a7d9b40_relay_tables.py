"""relay tables

Revision ID: 5c1e2a7d9b40
Revises:
Create Date: 2026-10-17 09:12:44.381204

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5c1e2a7d9b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PK_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    """Create token, link and delivery log tables."""
    op.create_table(
        "relay_token",
        sa.Column("id", PK_TYPE, autoincrement=True, nullable=False),
        sa.Column("fid", sa.BigInteger(), nullable=False),
        sa.Column("handle", sa.String(length=255), nullable=True),
        sa.Column("source_username", sa.String(length=255), nullable=True),
        sa.Column("token", sa.Text(), nullable=False),
        sa.Column("endpoint_url", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("fid"),
    )
    op.create_index("ix_relay_token_source_username", "relay_token", ["source_username"])
    op.create_index("ix_relay_token_is_active", "relay_token", ["is_active"])

    op.create_table(
        "relay_user_link",
        sa.Column("id", PK_TYPE, autoincrement=True, nullable=False),
        sa.Column("source_username", sa.String(length=255), nullable=False),
        sa.Column("fid", sa.BigInteger(), nullable=True),
        sa.Column("handle", sa.String(length=255), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("notifications_enabled", sa.Boolean(), nullable=False),
        sa.Column("notify_votes", sa.Boolean(), nullable=False),
        sa.Column("notify_comments", sa.Boolean(), nullable=False),
        sa.Column("notify_mentions", sa.Boolean(), nullable=False),
        sa.Column("notify_follows", sa.Boolean(), nullable=False),
        sa.Column("notify_reblogs", sa.Boolean(), nullable=False),
        sa.Column("notify_transfers", sa.Boolean(), nullable=False),
        sa.Column("scheduled_enabled", sa.Boolean(), nullable=False),
        sa.Column("scheduled_hour", sa.Integer(), nullable=False),
        sa.Column("scheduled_minute", sa.Integer(), nullable=False),
        sa.Column("timezone", sa.String(length=50), nullable=False),
        sa.Column("max_notifications_per_batch", sa.Integer(), nullable=False),
        sa.Column("last_scheduled_check", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_scheduled_event_id", sa.BigInteger(), nullable=False),
        sa.Column("last_processed_event_id", sa.BigInteger(), nullable=False),
        sa.Column("linked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_notification_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "max_notifications_per_batch >= 1 AND max_notifications_per_batch <= 20",
            name="ck_user_link_batch_size",
        ),
        sa.CheckConstraint("scheduled_hour >= 0 AND scheduled_hour <= 23", name="ck_user_link_hour"),
        sa.CheckConstraint(
            "scheduled_minute >= 0 AND scheduled_minute <= 59", name="ck_user_link_minute"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source_username"),
    )
    op.create_index("ix_relay_user_link_fid", "relay_user_link", ["fid"])

    op.create_table(
        "relay_delivery_log",
        sa.Column("id", PK_TYPE, autoincrement=True, nullable=False),
        sa.Column("source_username", sa.String(length=255), nullable=False),
        sa.Column("fid", sa.BigInteger(), nullable=True),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("title", sa.String(length=32), nullable=False),
        sa.Column("body", sa.String(length=128), nullable=False),
        sa.Column("target_url", sa.Text(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_relay_delivery_log_user_sent", "relay_delivery_log", ["source_username", "sent_at"]
    )
    op.create_index("ix_relay_delivery_log_type", "relay_delivery_log", ["event_type"])


def downgrade() -> None:
    """Drop relay tables."""
    op.drop_index("ix_relay_delivery_log_type", table_name="relay_delivery_log")
    op.drop_index("ix_relay_delivery_log_user_sent", table_name="relay_delivery_log")
    op.drop_table("relay_delivery_log")
    op.drop_index("ix_relay_user_link_fid", table_name="relay_user_link")
    op.drop_table("relay_user_link")
    op.drop_index("ix_relay_token_is_active", table_name="relay_token")
    op.drop_index("ix_relay_token_source_username", table_name="relay_token")
    op.drop_table("relay_token")
