"""TerminalCommand model - append-only record of each evaluated command."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from termaudit.models.base import BaseModel, IdType


class TerminalCommand(BaseModel):
    """One command boundary observed in a session, with its verdict.

    Rows are inserted once and never updated. rule_id is deliberately not a
    foreign key: deleting a rule must not touch the audit trail.
    """

    __tablename__ = "terminal_commands"

    session_id: Mapped[int] = mapped_column(
        IdType,
        ForeignKey("terminal_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    # Denormalized from the session for query locality
    user_id: Mapped[int] = mapped_column(IdType, nullable=False, index=True)
    server_id: Mapped[int] = mapped_column(IdType, nullable=False, index=True)

    command: Mapped[str] = mapped_column(Text, nullable=False)
    working_dir: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    exit_code: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None when blocked

    # Verdict
    blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    block_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    action: Mapped[str] = mapped_column(String(16), nullable=False, default="none")
    rule_id: Mapped[int | None] = mapped_column(IdType, nullable=True)
    snapshot_version: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_terminal_commands_session_executed", "session_id", "executed_at", "id"),
        Index("ix_terminal_commands_executed", "executed_at", "id"),
    )

    def __repr__(self) -> str:
        status = "BLOCKED" if self.blocked else self.action
        return f"<TerminalCommand {self.id} [{status}] {self.command[:50]}>"
