"""Audit Query Service - paginated reads over sessions and commands.

Sort keys are ascending (started_at, id) and (executed_at, id), so rows
inserted while a reader pages through the log land at the end and never
shift earlier pages. ``snapshot_id`` pins a reader to the rows that existed
when it started: only ids <= snapshot_id are visible.
"""

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from termaudit.core.exceptions import SessionNotFoundError
from termaudit.models.terminal_command import TerminalCommand
from termaudit.models.terminal_session import TerminalSession


class AuditQueryService:
    """Read-only access to the terminal audit trail."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_sessions(
        self,
        page: int = 1,
        page_size: int = 20,
        user_id: int | None = None,
        server_id: int | None = None,
        snapshot_id: int | None = None,
    ) -> tuple[list[TerminalSession], int]:
        """List sessions oldest first.

        Returns (sessions, total_count).
        """
        conditions = []
        if user_id is not None:
            conditions.append(TerminalSession.user_id == user_id)
        if server_id is not None:
            conditions.append(TerminalSession.server_id == server_id)
        if snapshot_id is not None:
            conditions.append(TerminalSession.id <= snapshot_id)

        query = (
            select(TerminalSession)
            .where(*conditions)
            .order_by(TerminalSession.started_at.asc(), TerminalSession.id.asc())
        )
        return await self._paginate(query, TerminalSession.id, conditions, page, page_size)

    async def list_commands(
        self,
        page: int = 1,
        page_size: int = 50,
        session_id: int | None = None,
        blocked: bool | None = None,
        snapshot_id: int | None = None,
    ) -> tuple[list[TerminalCommand], int]:
        """List commands in execution order.

        Returns (commands, total_count).
        """
        conditions = []
        if session_id is not None:
            conditions.append(TerminalCommand.session_id == session_id)
        if blocked is not None:
            conditions.append(TerminalCommand.blocked == blocked)
        if snapshot_id is not None:
            conditions.append(TerminalCommand.id <= snapshot_id)

        query = (
            select(TerminalCommand)
            .where(*conditions)
            .order_by(TerminalCommand.executed_at.asc(), TerminalCommand.id.asc())
        )
        return await self._paginate(query, TerminalCommand.id, conditions, page, page_size)

    async def get_session(self, session_id: int) -> TerminalSession:
        """Get a session by id.

        Raises:
            SessionNotFoundError: unknown session id
        """
        result = await self.db.execute(
            select(TerminalSession).where(TerminalSession.id == session_id)
        )
        session = result.scalar_one_or_none()
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def latest_session_id(self) -> int:
        """Highest session id right now (0 when empty), for pinning a window."""
        result = await self.db.execute(select(func.max(TerminalSession.id)))
        return result.scalar() or 0

    async def latest_command_id(self) -> int:
        """Highest command id right now (0 when empty), for pinning a window."""
        result = await self.db.execute(select(func.max(TerminalCommand.id)))
        return result.scalar() or 0

    async def _paginate(self, query: Select, id_column, conditions: list, page: int, page_size: int):
        count_result = await self.db.execute(select(func.count(id_column)).where(*conditions))
        total = count_result.scalar() or 0

        offset = (page - 1) * page_size
        result = await self.db.execute(query.offset(offset).limit(page_size))
        return list(result.scalars().all()), total
