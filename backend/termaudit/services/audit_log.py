"""Audit Log Service - append-only persistence of sessions and commands.

Sessions and commands are only ever inserted. The only updates are the
command counter (incremented in the same transaction as the command
insert) and the terminal fields written once when a session ends. Each
write opens its own transaction so it can be retried as a unit.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from termaudit.core.config import settings
from termaudit.core.database import async_session_maker
from termaudit.core.exceptions import (
    AuditWriteError,
    SessionAlreadyEndedError,
    SessionNotFoundError,
)
from termaudit.core.retry import RetryConfig, retry_async
from termaudit.models.base import as_utc, utcnow
from termaudit.models.terminal_command import TerminalCommand
from termaudit.models.terminal_session import TerminalSession
from termaudit.services.interceptor import Verdict

logger = logging.getLogger(__name__)

# Limits for stored data
MAX_COMMAND_SIZE = 16_000  # chars
MAX_WORKING_DIR_SIZE = 1024  # chars
MAX_REASON_SIZE = 500  # chars

TRUNCATION_MARKER = "...[truncated]"


def truncate(value: str, limit: int) -> str:
    """Cap a stored value at limit chars, marking the cut so the loss is visible."""
    if len(value) <= limit:
        return value
    return value[: limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def audit_retry_config() -> RetryConfig:
    return RetryConfig(
        max_retries=settings.audit_write_max_retries,
        base_delay=settings.audit_write_base_delay,
    )


class AuditLogService:
    """Writes the audit trail."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] | None = None,
        retry_config: RetryConfig | None = None,
    ):
        self._session_factory = session_factory or async_session_maker
        self._retry_config = retry_config or audit_retry_config()

    async def create_session(
        self,
        user_id: int,
        server_id: int,
        stream_id: str,
        recording_enabled: bool = False,
        username: str | None = None,
        server_name: str | None = None,
        started_at: datetime | None = None,
    ) -> TerminalSession:
        """Insert a new active session row."""

        async def _insert() -> TerminalSession:
            async with self._session_factory() as db:
                session = TerminalSession(
                    user_id=user_id,
                    username=username,
                    server_id=server_id,
                    server_name=server_name,
                    stream_id=stream_id,
                    started_at=started_at or utcnow(),
                    command_count=0,
                    recording_enabled=recording_enabled,
                )
                db.add(session)
                await db.flush()
                await db.refresh(session)
                await db.commit()
                return session

        return await retry_async(_insert, config=self._retry_config)

    async def append_command(
        self,
        session: TerminalSession,
        command: str,
        working_dir: str,
        executed_at: datetime,
        verdict: Verdict,
        exit_code: int | None = None,
    ) -> TerminalCommand:
        """Append a command with its verdict and bump the session counter.

        Both happen in one transaction, conditional on the session still
        being active. Transient storage errors are retried with backoff.

        Raises:
            SessionAlreadyEndedError: the session row has ended_at set
            AuditWriteError: storage still failing after every retry
        """
        blocked = verdict.blocked

        async def _append() -> TerminalCommand:
            async with self._session_factory() as db:
                try:
                    bumped = await db.execute(
                        update(TerminalSession)
                        .where(
                            TerminalSession.id == session.id,
                            TerminalSession.ended_at.is_(None),
                        )
                        .values(command_count=TerminalSession.command_count + 1)
                    )
                    if bumped.rowcount == 0:
                        raise SessionAlreadyEndedError(session.id)

                    record = TerminalCommand(
                        session_id=session.id,
                        user_id=session.user_id,
                        server_id=session.server_id,
                        command=truncate(command, MAX_COMMAND_SIZE),
                        working_dir=truncate(working_dir or "", MAX_WORKING_DIR_SIZE),
                        executed_at=executed_at,
                        exit_code=None if blocked else exit_code,
                        blocked=blocked,
                        block_reason=(
                            truncate(verdict.reason or "", MAX_REASON_SIZE) if blocked else None
                        ),
                        action=verdict.action,
                        rule_id=verdict.matched_rule_id,
                        snapshot_version=verdict.snapshot_version,
                    )
                    db.add(record)
                    # No storage calls after commit; a retry would insert the row twice
                    await db.flush()
                    await db.refresh(record)
                    await db.commit()
                    return record
                except Exception:
                    await db.rollback()
                    raise

        try:
            return await retry_async(_append, config=self._retry_config)
        except (SQLAlchemyError, OSError) as e:
            raise AuditWriteError(
                f"Command for session {session.id} not recorded after "
                f"{self._retry_config.max_retries + 1} attempts: {e}"
            ) from e

    async def end_session(
        self,
        session_id: int,
        reason: str = "closed",
        recording_path: str | None = None,
        recording_degraded: bool = False,
        ended_at: datetime | None = None,
    ) -> TerminalSession:
        """Set the terminal fields exactly once.

        Raises:
            SessionNotFoundError: unknown session id
            SessionAlreadyEndedError: ended_at was already set
        """

        async def _end() -> TerminalSession:
            async with self._session_factory() as db:
                session = await db.get(TerminalSession, session_id)
                if session is None:
                    raise SessionNotFoundError(session_id)
                if session.ended_at is not None:
                    raise SessionAlreadyEndedError(session_id)

                end = ended_at or utcnow()
                duration = max(0, int((end - as_utc(session.started_at)).total_seconds()))
                result = await db.execute(
                    update(TerminalSession)
                    .where(
                        TerminalSession.id == session_id,
                        TerminalSession.ended_at.is_(None),
                    )
                    .values(
                        ended_at=end,
                        duration=duration,
                        end_reason=reason,
                        recording_path=recording_path,
                        recording_degraded=recording_degraded,
                        updated_at=utcnow(),
                    )
                )
                if result.rowcount == 0:
                    # Lost a race with another ender
                    await db.rollback()
                    raise SessionAlreadyEndedError(session_id)

                refreshed = await db.execute(
                    select(TerminalSession)
                    .where(TerminalSession.id == session_id)
                    .execution_options(populate_existing=True)
                )
                ended = refreshed.scalar_one()
                # Last storage call; a failure before this point retries the whole unit
                await db.commit()
                return ended

        ended = await retry_async(_end, config=self._retry_config)
        logger.info(
            f"Session {session_id} ended ({reason}, {ended.duration}s)",
            extra={"session_id": session_id},
        )
        return ended

    async def mark_recording_degraded(self, session_id: int) -> None:
        """Set the degraded-recording side flag on a session."""
        async with self._session_factory() as db:
            await db.execute(
                update(TerminalSession)
                .where(TerminalSession.id == session_id)
                .values(recording_degraded=True)
            )
            await db.commit()

    async def find_session(
        self, session_id: int | None = None, stream_id: str | None = None
    ) -> TerminalSession | None:
        """Look up a session row by id or stream id."""
        async with self._session_factory() as db:
            query = select(TerminalSession)
            if session_id is not None:
                query = query.where(TerminalSession.id == session_id)
            else:
                query = query.where(TerminalSession.stream_id == stream_id)
            result = await db.execute(query)
            return result.scalar_one_or_none()
