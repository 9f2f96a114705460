"""add per-user notification preferences

Revision ID: 20261019_02
Revises: 20261019_01
Create Date: 2026-10-19 12:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_02"
down_revision = "20261019_01"
branch_labels = None
depends_on = None


def _switch(name: str) -> sa.Column:
    return sa.Column(name, sa.Boolean(), server_default=sa.true(), nullable=False)


def upgrade() -> None:
    op.create_table(
        "notification_preferences",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        _switch("push_notifications"),
        _switch("messages"),
        _switch("followers"),
        _switch("likes"),
        _switch("comments"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", name="uq_notification_preference_user"),
        mysql_charset="utf8mb4",
    )


def downgrade() -> None:
    op.drop_table("notification_preferences")
