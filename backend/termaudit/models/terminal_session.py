"""TerminalSession model - one row per proxied terminal session."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from termaudit.models.base import BaseModel, IdType, as_utc, utcnow

# Why a session ended
END_REASONS = ("closed", "timeout", "forced", "shutdown")


class TerminalSession(BaseModel):
    """Audit record of a terminal session.

    Only the session tracker mutates a row: it increments command_count and
    sets the terminal fields once when the session ends. ended_at is never
    changed after it has been set.
    """

    __tablename__ = "terminal_sessions"

    user_id: Mapped[int] = mapped_column(IdType, nullable=False)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)  # Denormalized
    server_id: Mapped[int] = mapped_column(IdType, nullable=False)
    server_name: Mapped[str | None] = mapped_column(String(255), nullable=True)  # Denormalized
    stream_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)  # Seconds, set at end
    end_reason: Mapped[str | None] = mapped_column(String(16), nullable=True)

    command_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    recording_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recording_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    recording_degraded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_terminal_sessions_started", "started_at", "id"),
        Index("ix_terminal_sessions_user_started", "user_id", "started_at"),
        Index("ix_terminal_sessions_server_started", "server_id", "started_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    @property
    def duration_seconds(self) -> int:
        """Elapsed seconds; open sessions are measured up to now."""
        if self.ended_at is not None and self.duration is not None:
            return self.duration
        end = as_utc(self.ended_at) or utcnow()
        return max(0, int((end - as_utc(self.started_at)).total_seconds()))

    def __repr__(self) -> str:
        state = "active" if self.is_active else "ended"
        return f"<TerminalSession {self.id} {self.stream_id} {state} ({self.command_count} cmds)>"
