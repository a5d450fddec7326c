"""Add unsend tombstone columns to messages."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20260301_0002"
down_revision = "20260301_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("messages", sa.Column("is_unsent", sa.Boolean(), nullable=True, server_default=sa.false()))
    op.add_column("messages", sa.Column("unsent_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("messages", sa.Column("unsent_by", sa.String(length=128), nullable=True))


def downgrade() -> None:
    op.drop_column("messages", "unsent_by")
    op.drop_column("messages", "unsent_at")
    op.drop_column("messages", "is_unsent")
