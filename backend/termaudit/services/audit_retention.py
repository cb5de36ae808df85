"""Audit retention service - optional purge of old terminal audit data.

Disabled unless ``terminal_retention_days`` is positive. Only ended
sessions are purged, together with their commands and recordings.
"""

import asyncio
import threading
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from termaudit.core.config import settings
from termaudit.core.database import async_session_maker
from termaudit.core.logging import get_logger
from termaudit.models.base import utcnow
from termaudit.models.terminal_command import TerminalCommand
from termaudit.models.terminal_session import TerminalSession

logger = get_logger("audit_retention")

# How often to run cleanup (in seconds)
CLEANUP_INTERVAL_SECONDS = 3600  # 1 hour

# Delay before the first run so startup is not slowed down
STARTUP_DELAY_SECONDS = 60


class AuditRetentionService:
    """Background service that purges terminal audit data past retention."""

    _instance: Optional["AuditRetentionService"] = None
    _instance_lock: threading.Lock = threading.Lock()
    _task: asyncio.Task | None = None

    def __init__(
        self,
        retention_days: int | None = None,
        session_factory: Callable[[], AsyncSession] | None = None,
    ):
        self._running = False
        self._retention_days = (
            settings.terminal_retention_days if retention_days is None else retention_days
        )
        self._session_factory = session_factory or async_session_maker

    @classmethod
    def get_instance(cls) -> "AuditRetentionService":
        """Get singleton instance of audit retention service (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                # Double-check locking pattern
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @property
    def retention_days(self) -> int:
        return self._retention_days

    @retention_days.setter
    def retention_days(self, value: int) -> None:
        """Set retention period in days; 0 or less disables purging."""
        self._retention_days = value
        logger.info(f"Terminal audit retention set to {value} days")

    @property
    def enabled(self) -> bool:
        return self._retention_days > 0

    async def start(self):
        """Start the background purge task (no-op when retention is disabled)."""
        if not self.enabled:
            logger.info("Terminal audit retention disabled; keeping all audit data")
            return
        if self._running:
            logger.warning("Audit retention service is already running")
            return

        self._running = True
        AuditRetentionService._task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            f"Audit retention service started (retention: {self._retention_days} days, "
            f"interval: {CLEANUP_INTERVAL_SECONDS}s)"
        )

    async def stop(self):
        """Stop the background purge task."""
        self._running = False
        if AuditRetentionService._task:
            AuditRetentionService._task.cancel()
            try:
                await AuditRetentionService._task
            except asyncio.CancelledError:
                pass
            AuditRetentionService._task = None
            logger.info("Audit retention service stopped")

    async def _cleanup_loop(self):
        await asyncio.sleep(STARTUP_DELAY_SECONDS)

        while self._running:
            try:
                await self.run_cleanup_now()
            except Exception as e:
                logger.error(f"Error in audit retention cleanup: {e}")

            await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)

    async def run_cleanup_now(self) -> int:
        """Purge once.

        Returns:
            Number of sessions deleted
        """
        if not self.enabled:
            return 0

        cutoff = utcnow() - timedelta(days=self._retention_days)
        async with self._session_factory() as db:
            try:
                result = await db.execute(
                    select(TerminalSession.id, TerminalSession.recording_path).where(
                        TerminalSession.started_at < cutoff,
                        TerminalSession.ended_at.is_not(None),
                    )
                )
                expired = result.all()
                if not expired:
                    return 0

                ids = [row.id for row in expired]
                commands = await db.execute(
                    delete(TerminalCommand).where(TerminalCommand.session_id.in_(ids))
                )
                await db.execute(delete(TerminalSession).where(TerminalSession.id.in_(ids)))
                await db.commit()
            except Exception as e:
                logger.exception(f"Error during audit cleanup: {e}")
                await db.rollback()
                raise

        paths = [row.recording_path for row in expired if row.recording_path]
        removed = await asyncio.to_thread(_remove_files, paths)

        logger.info(
            f"Audit retention cleanup: deleted {len(ids)} sessions, {commands.rowcount} commands "
            f"and {removed} recordings older than {self._retention_days} days"
        )
        return len(ids)


def _remove_files(paths: list[str]) -> int:
    removed = 0
    for path in paths:
        try:
            Path(path).unlink()
            removed += 1
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f"Could not remove recording {path}: {e}")
    return removed
