"""Session tracking - lifecycle of live terminal sessions.

A SessionTracker drives one session from Active to Ended. Command
boundaries within a session are serialized by the tracker's lock;
different sessions never share a lock. The SessionRegistry is the
in-process entry point used by the PTY proxy: it maps stream ids to live
trackers and never raises on the command path.
"""

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from termaudit.core.config import settings
from termaudit.core.exceptions import (
    AuditWriteError,
    RecordingError,
    SessionAlreadyEndedError,
    SessionAlreadyExistsError,
    SessionNotFoundError,
    TermAuditError,
)
from termaudit.models.base import utcnow
from termaudit.models.terminal_session import TerminalSession
from termaudit.services.audit_log import AuditLogService
from termaudit.services.interceptor import Interceptor, Verdict
from termaudit.services.recorder import Recorder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Verdict plus what happened to its audit record.

    durable is False when the command could not be written to the audit
    log. The verdict is still authoritative for the proxy.
    """

    verdict: Verdict
    durable: bool = True
    command_id: int | None = None
    dropped: bool = False  # event for an unknown or ended session


def recording_enabled_for(server_id: int) -> bool:
    """Global recording switch plus the optional server allowlist."""
    if not settings.terminal_recording_enabled:
        return False
    allowed = settings.recording_server_ids
    return not allowed or server_id in allowed


class SessionTracker:
    """One live terminal session."""

    def __init__(
        self,
        session: TerminalSession,
        audit_log: AuditLogService,
        recorder: Recorder,
        interceptor: Interceptor,
        on_end: Callable[["SessionTracker"], None] | None = None,
    ):
        self.session = session
        self.audit_log = audit_log
        self.recorder = recorder
        self.interceptor = interceptor
        self._on_end = on_end
        self._lock = asyncio.Lock()
        self._ended = False
        self.command_count = 0
        self.audit_degraded = False
        self._pending: set[asyncio.Task] = set()

    @property
    def session_id(self) -> int:
        return self.session.id

    @property
    def stream_id(self) -> str:
        return self.session.stream_id

    @property
    def recording_enabled(self) -> bool:
        return self.session.recording_enabled

    @property
    def ended(self) -> bool:
        return self._ended

    async def on_command(
        self,
        command: str,
        working_dir: str = "",
        executed_at: datetime | None = None,
        exit_code: int | None = None,
    ) -> CommandResult:
        """Evaluate a command boundary and append it to the audit log.

        Raises:
            SessionAlreadyEndedError: the session has ended
        """
        async with self._lock:
            if self._ended:
                raise SessionAlreadyEndedError(self.session_id)

            executed_at = executed_at or utcnow()
            snapshot = self.interceptor.snapshot()
            verdict = await asyncio.to_thread(self.interceptor.evaluate, command, snapshot)

            try:
                record = await self.audit_log.append_command(
                    self.session,
                    command=command,
                    working_dir=working_dir,
                    executed_at=executed_at,
                    verdict=verdict,
                    exit_code=exit_code,
                )
            except SessionAlreadyEndedError:
                # Ended elsewhere (forced from another worker)
                self._ended = True
                raise
            except AuditWriteError as e:
                self.audit_degraded = True
                logger.error(
                    f"Audit write failed for session {self.session_id}: {e}",
                    extra={"session_id": self.session_id, "stream_id": self.stream_id},
                )
                return CommandResult(verdict=verdict, durable=False)

            self.command_count += 1
            if verdict.blocked:
                logger.info(
                    f"Blocked command in session {self.session_id} by rule {verdict.matched_rule_id}",
                    extra={
                        "session_id": self.session_id,
                        "rule_id": verdict.matched_rule_id,
                        "snapshot_version": verdict.snapshot_version,
                    },
                )
            return CommandResult(verdict=verdict, command_id=record.id)

    def record(self, data: bytes | str, direction: str = "o") -> bool:
        """Forward raw I/O to the recorder. Never raises."""
        if self._ended or not self.recording_enabled:
            return False
        return self.recorder.append(self.session_id, data, direction)

    def recording_degraded(self, session_id: int) -> None:
        """Recorder callback: flag the live session row as soon as data is lost."""
        task = asyncio.create_task(self._mark_recording_degraded())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _mark_recording_degraded(self) -> None:
        try:
            await self.audit_log.mark_recording_degraded(self.session_id)
        except SQLAlchemyError as e:
            logger.warning(
                f"Could not flag degraded recording for session {self.session_id}: {e}",
                extra={"session_id": self.session_id},
            )

    async def end(self, reason: str = "closed") -> TerminalSession:
        """Finalize the recording and write the terminal fields.

        Raises:
            SessionAlreadyEndedError: end was already called
        """
        async with self._lock:
            if self._ended:
                raise SessionAlreadyEndedError(self.session_id)
            self._ended = True

            try:
                recording_path = None
                degraded = False
                if self.recording_enabled:
                    try:
                        recording_path = await self.recorder.finalize(self.session_id)
                    except RecordingError as e:
                        logger.warning(
                            f"No recording for session {self.session_id}: {e}",
                            extra={"session_id": self.session_id},
                        )
                    except Exception:
                        # The session must still end; the recording is lost
                        logger.exception(
                            f"Recording finalize failed for session {self.session_id}",
                            extra={"session_id": self.session_id},
                        )
                    degraded = self.recorder.is_degraded(self.session_id) or recording_path is None

                if self._pending:
                    await asyncio.gather(*self._pending, return_exceptions=True)

                self.session = await self.audit_log.end_session(
                    self.session_id,
                    reason=reason,
                    recording_path=recording_path,
                    recording_degraded=degraded,
                )
                return self.session
            finally:
                if self._on_end:
                    self._on_end(self)


class SessionRegistry:
    """Process-wide map of stream id to live SessionTracker."""

    _instance: Optional["SessionRegistry"] = None
    _instance_lock: threading.Lock = threading.Lock()

    def __init__(
        self,
        audit_log: AuditLogService | None = None,
        recorder: Recorder | None = None,
        interceptor: Interceptor | None = None,
    ):
        self.audit_log = audit_log or AuditLogService()
        self.recorder = recorder or Recorder.get_instance()
        self.interceptor = interceptor or Interceptor()
        self._by_stream: dict[str, SessionTracker] = {}
        self._by_session: dict[int, SessionTracker] = {}
        self._opening: set[str] = set()

    @classmethod
    def get_instance(cls) -> "SessionRegistry":
        """Get or create singleton instance (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                # Double-check locking pattern
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def __len__(self) -> int:
        return len(self._by_stream)

    def get(self, stream_id: str) -> SessionTracker | None:
        return self._by_stream.get(stream_id)

    def get_by_session_id(self, session_id: int) -> SessionTracker | None:
        return self._by_session.get(session_id)

    async def open_session(
        self,
        user_id: int,
        server_id: int,
        stream_id: str,
        username: str | None = None,
        server_name: str | None = None,
        recording_enabled: bool | None = None,
        width: int = 80,
        height: int = 24,
    ) -> SessionTracker:
        """Create the session row, start recording and register the tracker.

        Raises:
            SessionAlreadyExistsError: stream id is live or already recorded
        """
        if stream_id in self._by_stream or stream_id in self._opening:
            raise SessionAlreadyExistsError(stream_id)
        if recording_enabled is None:
            recording_enabled = recording_enabled_for(server_id)

        self._opening.add(stream_id)
        try:
            try:
                session = await self.audit_log.create_session(
                    user_id=user_id,
                    server_id=server_id,
                    stream_id=stream_id,
                    recording_enabled=recording_enabled,
                    username=username,
                    server_name=server_name,
                )
            except IntegrityError as e:
                raise SessionAlreadyExistsError(stream_id) from e

            tracker = SessionTracker(
                session,
                audit_log=self.audit_log,
                recorder=self.recorder,
                interceptor=self.interceptor,
                on_end=self._unregister,
            )
            if recording_enabled:
                await self.recorder.open(
                    session.id, stream_id, width, height, on_degraded=tracker.recording_degraded
                )
            self._by_stream[stream_id] = tracker
            self._by_session[session.id] = tracker
        finally:
            self._opening.discard(stream_id)

        logger.info(
            f"Opened terminal session {session.id} for user {user_id} on server {server_id} "
            f"(recording={recording_enabled})",
            extra={"session_id": session.id, "stream_id": stream_id},
        )
        return tracker

    async def handle_command(
        self,
        stream_id: str,
        command: str,
        working_dir: str = "",
        exit_code: int | None = None,
        executed_at: datetime | None = None,
    ) -> CommandResult:
        """Proxy entry point for a command boundary. Never raises.

        Events for unknown or ended sessions are dropped and answered with
        an unmatched allow verdict.
        """
        tracker = self._by_stream.get(stream_id)
        if tracker is not None:
            try:
                return await tracker.on_command(command, working_dir, executed_at, exit_code)
            except SessionAlreadyEndedError:
                pass

        logger.warning(
            f"Dropping command for unknown or ended stream {stream_id}",
            extra={"stream_id": stream_id},
        )
        return CommandResult(
            verdict=Verdict.allow_unmatched(self.interceptor.snapshot().version),
            durable=False,
            dropped=True,
        )

    def record_frame(self, stream_id: str, data: bytes | str, direction: str = "o") -> bool:
        tracker = self._by_stream.get(stream_id)
        if tracker is None:
            return False
        return tracker.record(data, direction)

    async def close_session(self, stream_id: str, reason: str = "closed") -> TerminalSession:
        """Normal close or timeout reported by the proxy.

        Raises:
            SessionNotFoundError: no such stream
            SessionAlreadyEndedError: the session already ended
        """
        tracker = self._by_stream.get(stream_id)
        if tracker is not None:
            return await tracker.end(reason)

        session = await self.audit_log.find_session(stream_id=stream_id)
        if session is None:
            raise SessionNotFoundError(stream_id)
        if session.ended_at is not None:
            raise SessionAlreadyEndedError(stream_id)
        # Row left open by a previous process
        return await self.audit_log.end_session(session.id, reason=reason)

    async def terminate(self, session_id: int, reason: str = "forced") -> TerminalSession:
        """Forced disconnect from the admin surface.

        Raises:
            SessionNotFoundError: unknown session id
            SessionAlreadyEndedError: the session already ended
        """
        tracker = self._by_session.get(session_id)
        if tracker is not None:
            session = await tracker.end(reason)
        else:
            session = await self.audit_log.end_session(session_id, reason=reason)
        logger.info(f"Terminated session {session_id}", extra={"session_id": session_id})
        return session

    async def end_all(self, reason: str = "shutdown") -> int:
        """End every live session; returns how many were ended."""
        ended = 0
        for tracker in list(self._by_stream.values()):
            try:
                await tracker.end(reason)
                ended += 1
            except (TermAuditError, SQLAlchemyError) as e:
                logger.warning(
                    f"Could not end session {tracker.session_id}: {e}",
                    extra={"session_id": tracker.session_id},
                )
        if ended:
            logger.info(f"Ended {ended} live terminal sessions ({reason})")
        return ended

    def _unregister(self, tracker: SessionTracker) -> None:
        self._by_stream.pop(tracker.stream_id, None)
        self._by_session.pop(tracker.session_id, None)


def get_session_registry() -> SessionRegistry:
    """Get the session registry singleton."""
    return SessionRegistry.get_instance()
