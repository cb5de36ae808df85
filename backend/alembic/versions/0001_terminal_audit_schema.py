"""Terminal audit schema: blacklist rules, sessions and commands.

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "terminal_blacklist",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("pattern", sa.Text(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=False, server_default=""),
        sa.Column("action", sa.String(length=16), nullable=False, server_default="block"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.BigInteger(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "action IN ('block', 'warn', 'log')",
            name="ck_terminal_blacklist_action",
        ),
    )
    op.create_index("ix_terminal_blacklist_enabled", "terminal_blacklist", ["enabled"])

    op.create_table(
        "terminal_sessions",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("username", sa.String(length=255), nullable=True),
        sa.Column("server_id", sa.BigInteger(), nullable=False),
        sa.Column("server_name", sa.String(length=255), nullable=True),
        sa.Column("stream_id", sa.String(length=128), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("end_reason", sa.String(length=16), nullable=True),
        sa.Column("command_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("recording_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("recording_path", sa.String(length=1024), nullable=True),
        sa.Column("recording_degraded", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("stream_id", name="uq_terminal_sessions_stream_id"),
    )
    op.create_index("ix_terminal_sessions_started", "terminal_sessions", ["started_at", "id"])
    op.create_index(
        "ix_terminal_sessions_user_started", "terminal_sessions", ["user_id", "started_at"]
    )
    op.create_index(
        "ix_terminal_sessions_server_started", "terminal_sessions", ["server_id", "started_at"]
    )

    op.create_table(
        "terminal_commands",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "session_id",
            sa.BigInteger(),
            sa.ForeignKey("terminal_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("server_id", sa.BigInteger(), nullable=False),
        sa.Column("command", sa.Text(), nullable=False),
        sa.Column("working_dir", sa.String(length=1024), nullable=False, server_default=""),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("exit_code", sa.Integer(), nullable=True),
        sa.Column("blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("block_reason", sa.String(length=500), nullable=True),
        sa.Column("action", sa.String(length=16), nullable=False, server_default="none"),
        sa.Column("rule_id", sa.BigInteger(), nullable=True),
        sa.Column("snapshot_version", sa.Integer(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_terminal_commands_user_id", "terminal_commands", ["user_id"])
    op.create_index("ix_terminal_commands_server_id", "terminal_commands", ["server_id"])
    op.create_index("ix_terminal_commands_blocked", "terminal_commands", ["blocked"])
    op.create_index(
        "ix_terminal_commands_session_executed",
        "terminal_commands",
        ["session_id", "executed_at", "id"],
    )
    op.create_index("ix_terminal_commands_executed", "terminal_commands", ["executed_at", "id"])


def downgrade() -> None:
    op.drop_table("terminal_commands")
    op.drop_table("terminal_sessions")
    op.drop_index("ix_terminal_blacklist_enabled", table_name="terminal_blacklist")
    op.drop_table("terminal_blacklist")
