"""exchange schema

Revision ID: 5b1e0c7d2a41
Revises:
Create Date: 2026-10-18 09:12:44.318204

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5b1e0c7d2a41"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create outbox, inbox, block, actor and task tables."""
    op.create_table(
        "local_actor",
        sa.Column("id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("uri", sa.Text(), nullable=False),
        sa.Column("followers_uri", sa.Text(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("uri"),
    )
    op.create_table(
        "follower",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("actor_id", sa.BigInteger(), nullable=False),
        sa.Column("remote_actor", sa.Text(), nullable=False),
        sa.Column("inbox", sa.Text(), nullable=False),
        sa.Column("shared_inbox", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["actor_id"], ["local_actor.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("actor_id", "remote_actor", name="uq_follower_actor_remote"),
    )
    op.create_index("ix_follower_actor_id", "follower", ["actor_id"])

    op.create_table(
        "outbox_item",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("activity_type", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.BigInteger(), nullable=False),
        sa.Column("activity", sa.JSON(), nullable=False),
        sa.Column("status", sa.VARCHAR(length=20), nullable=False),
        sa.Column("batch_offset", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_item_actor_id", "outbox_item", ["actor_id"])

    op.create_table(
        "inbox_item",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("origin_id", sa.Text(), nullable=False),
        sa.Column("activity_type", sa.String(length=64), nullable=False),
        sa.Column("remote_actor", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("visibility", sa.VARCHAR(length=20), nullable=False),
        sa.Column("context", sa.VARCHAR(length=20), nullable=False),
        sa.Column("errors", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_inbox_item_origin_id", "inbox_item", ["origin_id"])
    op.create_table(
        "inbox_recipient",
        sa.Column("inbox_item_id", sa.Integer(), nullable=False),
        sa.Column("actor_id", sa.BigInteger(), nullable=False),
        sa.ForeignKeyConstraint(["inbox_item_id"], ["inbox_item.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("inbox_item_id", "actor_id"),
    )

    op.create_table(
        "site_block",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("kind", "value", name="uq_site_block_kind_value"),
    )
    op.create_table(
        "actor_block",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("actor_id", sa.BigInteger(), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "actor_id", "kind", "value", name="uq_actor_block_actor_kind_value"
        ),
    )
    op.create_index("ix_actor_block_actor_id", "actor_block", ["actor_id"])

    op.create_table(
        "scheduled_task",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_scheduled_task_name", "scheduled_task", ["name"])
    op.create_index("ix_scheduled_task_run_at", "scheduled_task", ["run_at"])


def downgrade() -> None:
    """Drop every exchange table."""
    op.drop_index("ix_scheduled_task_run_at", table_name="scheduled_task")
    op.drop_index("ix_scheduled_task_name", table_name="scheduled_task")
    op.drop_table("scheduled_task")
    op.drop_index("ix_actor_block_actor_id", table_name="actor_block")
    op.drop_table("actor_block")
    op.drop_table("site_block")
    op.drop_table("inbox_recipient")
    op.drop_index("ix_inbox_item_origin_id", table_name="inbox_item")
    op.drop_table("inbox_item")
    op.drop_index("ix_outbox_item_actor_id", table_name="outbox_item")
    op.drop_table("outbox_item")
    op.drop_index("ix_follower_actor_id", table_name="follower")
    op.drop_table("follower")
    op.drop_table("local_actor")
