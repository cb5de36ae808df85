"""Rule cache - process-wide, versioned snapshots of compiled blacklist rules.

Readers call ``current()`` and get an immutable RuleSnapshot; they never
touch shared mutable state. Writers build a complete new snapshot and swap
a single reference, so an evaluation holding a snapshot is unaffected by
rule edits made while it runs.

Follows the same singleton pattern as the other process-wide services.
"""

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Optional

import regex
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from termaudit.core.config import settings
from termaudit.core.database import async_session_maker
from termaudit.core.exceptions import SnapshotNotFoundError
from termaudit.models.blacklist_rule import BlacklistRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompiledRule:
    """An enabled rule with its compiled pattern."""

    id: int
    pattern: str
    description: str
    action: str
    compiled: "regex.Pattern" = field(repr=False, compare=False)


@dataclass(frozen=True)
class RuleSnapshot:
    """Immutable view of every enabled rule at one version, ascending by id."""

    version: int
    rules: tuple[CompiledRule, ...] = ()
    published_at: float = 0.0

    def __len__(self) -> int:
        return len(self.rules)


class RuleCache:
    """Holds the current RuleSnapshot plus a short history of recent ones."""

    _instance: Optional["RuleCache"] = None
    _instance_lock: threading.Lock = threading.Lock()

    def __init__(self, history_size: int | None = None):
        self._history_size = history_size or settings.rule_snapshot_history
        self._current = RuleSnapshot(version=0, published_at=time.time())
        self._history: OrderedDict[int, RuleSnapshot] = OrderedDict({0: self._current})
        self._publish_lock = threading.Lock()
        self._refresh_lock = asyncio.Lock()

    @classmethod
    def get_instance(cls) -> "RuleCache":
        """Get or create singleton instance (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                # Double-check locking pattern
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def current(self) -> RuleSnapshot:
        """The latest published snapshot (a single reference read)."""
        return self._current

    @property
    def version(self) -> int:
        return self._current.version

    def get(self, version: int) -> RuleSnapshot:
        """Return a retained snapshot by version."""
        snapshot = self._history.get(version)
        if snapshot is None:
            raise SnapshotNotFoundError(version)
        return snapshot

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def publish(self, rules: Iterable[BlacklistRule]) -> RuleSnapshot:
        """Compile the enabled rules and atomically swap in a new snapshot.

        ``rules`` must be the complete rule set, not a delta.
        """
        previous = {r.id: r for r in self._current.rules}
        compiled_rules: list[CompiledRule] = []

        for rule in sorted(rules, key=lambda r: r.id):
            if not rule.enabled:
                continue
            prior = previous.get(rule.id)
            if prior is not None and prior.pattern == rule.pattern:
                compiled = prior.compiled
            else:
                try:
                    compiled = regex.compile(rule.pattern)
                except regex.error as e:
                    # Stored patterns are validated on write; only legacy rows get here
                    logger.error(
                        f"Skipping rule {rule.id}: stored pattern no longer compiles: {e}",
                        extra={"rule_id": rule.id},
                    )
                    continue
            compiled_rules.append(
                CompiledRule(
                    id=rule.id,
                    pattern=rule.pattern,
                    description=rule.description or "",
                    action=rule.action,
                    compiled=compiled,
                )
            )

        with self._publish_lock:
            snapshot = RuleSnapshot(
                version=self._current.version + 1,
                rules=tuple(compiled_rules),
                published_at=time.time(),
            )
            self._history[snapshot.version] = snapshot
            while len(self._history) > self._history_size:
                self._history.popitem(last=False)
            self._current = snapshot

        logger.info(
            f"Published rule snapshot v{snapshot.version} ({len(snapshot)} enabled rules)",
            extra={"snapshot_version": snapshot.version},
        )
        return snapshot

    async def refresh(self, db: AsyncSession) -> RuleSnapshot:
        """Rebuild the snapshot from committed rules.

        Refreshes are serialized and always read the whole table, so
        concurrent admin edits converge on the latest committed state.
        """
        async with self._refresh_lock:
            result = await db.execute(select(BlacklistRule).order_by(BlacklistRule.id.asc()))
            return self.publish(result.scalars().all())

    async def load(self) -> RuleSnapshot:
        """Load rules with a fresh database session (startup)."""
        async with async_session_maker() as db:
            return await self.refresh(db)


def get_rule_cache() -> RuleCache:
    """Get the rule cache singleton."""
    return RuleCache.get_instance()
