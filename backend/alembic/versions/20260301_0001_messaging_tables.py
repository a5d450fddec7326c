"""Create message thread/channel/participant/message/delivery/scheduled tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20260301_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "message_threads",
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("reservation_id", sa.String(length=128), nullable=True),
        sa.Column("subject", sa.String(length=256), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="normal"),
        sa.Column("closure_reason", sa.String(length=256), nullable=True),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_message_preview", sa.String(length=160), nullable=True),
        sa.Column("needs_linking", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("thread_id"),
        sa.UniqueConstraint("reservation_id"),
    )
    op.create_index("ix_message_threads_status", "message_threads", ["status"], unique=False)
    op.create_index("ix_message_threads_last_message_at", "message_threads", ["last_message_at"], unique=False)

    op.create_table(
        "thread_channels",
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("external_thread_id", sa.String(length=256), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["thread_id"], ["message_threads.thread_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("thread_id", "channel", "external_thread_id"),
        sa.UniqueConstraint("channel", "external_thread_id", name="uq_thread_channels_external"),
    )

    op.create_table(
        "thread_participants",
        sa.Column("participant_id", sa.String(length=64), nullable=False),
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("participant_type", sa.String(length=16), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("external_address", sa.String(length=256), nullable=True),
        sa.Column("display_name", sa.String(length=256), nullable=True),
        sa.Column("last_read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["thread_id"], ["message_threads.thread_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("participant_id"),
    )
    op.create_index("ix_thread_participants_thread_id", "thread_participants", ["thread_id"], unique=False)

    op.create_table(
        "messages",
        sa.Column("message_id", sa.String(length=64), nullable=False),
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("parent_message_id", sa.String(length=64), nullable=True),
        sa.Column("origin_role", sa.String(length=16), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("author_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["thread_id"], ["message_threads.thread_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("message_id"),
    )
    op.create_index("ix_messages_thread_id", "messages", ["thread_id"], unique=False)
    op.create_index("ix_messages_created_at", "messages", ["created_at"], unique=False)

    op.create_table(
        "message_deliveries",
        sa.Column("delivery_id", sa.String(length=64), nullable=False),
        sa.Column("message_id", sa.String(length=64), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["message_id"], ["messages.message_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("delivery_id"),
        sa.UniqueConstraint("message_id", "channel", name="uq_message_deliveries_message_channel"),
        sa.UniqueConstraint("channel", "provider_message_id", name="uq_message_deliveries_provider"),
    )
    op.create_index("ix_message_deliveries_message_id", "message_deliveries", ["message_id"], unique=False)
    op.create_index(
        "ix_message_deliveries_provider_message_id",
        "message_deliveries",
        ["provider_message_id"],
        unique=False,
    )

    op.create_table(
        "scheduled_messages",
        sa.Column("scheduled_id", sa.String(length=64), nullable=False),
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("template_id", sa.String(length=128), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="queued"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["thread_id"], ["message_threads.thread_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("scheduled_id"),
    )
    op.create_index("ix_scheduled_messages_thread_id", "scheduled_messages", ["thread_id"], unique=False)
    op.create_index("ix_scheduled_messages_run_at", "scheduled_messages", ["run_at"], unique=False)
    op.create_index("ix_scheduled_messages_status", "scheduled_messages", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_scheduled_messages_status", table_name="scheduled_messages")
    op.drop_index("ix_scheduled_messages_run_at", table_name="scheduled_messages")
    op.drop_index("ix_scheduled_messages_thread_id", table_name="scheduled_messages")
    op.drop_table("scheduled_messages")

    op.drop_index("ix_message_deliveries_provider_message_id", table_name="message_deliveries")
    op.drop_index("ix_message_deliveries_message_id", table_name="message_deliveries")
    op.drop_table("message_deliveries")

    op.drop_index("ix_messages_created_at", table_name="messages")
    op.drop_index("ix_messages_thread_id", table_name="messages")
    op.drop_table("messages")

    op.drop_index("ix_thread_participants_thread_id", table_name="thread_participants")
    op.drop_table("thread_participants")

    op.drop_table("thread_channels")

    op.drop_index("ix_message_threads_last_message_at", table_name="message_threads")
    op.drop_index("ix_message_threads_status", table_name="message_threads")
    op.drop_table("message_threads")
