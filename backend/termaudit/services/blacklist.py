"""Blacklist service - rule store for terminal command rules.

Every successful mutation is committed and then published to the rule
cache as a new snapshot. Patterns are validated before anything is
written, so a rejected pattern never reaches the database or the cache.
"""

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from termaudit.core.exceptions import RuleNotFoundError
from termaudit.models.blacklist_rule import RULE_ACTIONS, BlacklistRule
from termaudit.services.rule_cache import RuleCache
from termaudit.services.rule_validation import validate_pattern

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("pattern", "description", "action", "enabled")


class BlacklistService:
    """Service for managing blacklist rules."""

    def __init__(self, db: AsyncSession, cache: RuleCache | None = None):
        self.db = db
        self.cache = cache or RuleCache.get_instance()

    async def create(
        self,
        pattern: str,
        description: str = "",
        action: str = "block",
        enabled: bool = True,
        created_by: int | None = None,
    ) -> BlacklistRule:
        """Validate and store a new rule, then publish a new snapshot.

        Raises:
            InvalidPatternError: pattern failed compilation or the stress check
        """
        self._check_action(action)
        validate_pattern(pattern)

        rule = BlacklistRule(
            pattern=pattern,
            description=description,
            action=action,
            enabled=enabled,
            created_by=created_by,
        )
        self.db.add(rule)
        await self.db.flush()
        await self.db.refresh(rule)
        await self._commit_and_publish()

        logger.info(
            f"Created blacklist rule {rule.id} ({action}, enabled={enabled})",
            extra={"rule_id": rule.id},
        )
        return rule

    async def update(self, rule_id: int, **fields: Any) -> BlacklistRule:
        """Apply a partial update.

        Raises:
            RuleNotFoundError: unknown rule id
            InvalidPatternError: new pattern rejected (rule left unchanged)
        """
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        rule = await self.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)

        if "action" in fields and fields["action"] is not None:
            self._check_action(fields["action"])
        if "pattern" in fields and fields["pattern"] is not None:
            validate_pattern(fields["pattern"])

        for name, value in fields.items():
            if value is not None:
                setattr(rule, name, value)

        await self.db.flush()
        await self.db.refresh(rule)
        await self._commit_and_publish()

        logger.info(f"Updated blacklist rule {rule_id}", extra={"rule_id": rule_id})
        return rule

    async def delete(self, rule_id: int) -> None:
        """Hard delete a rule.

        Raises:
            RuleNotFoundError: unknown rule id
        """
        rule = await self.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)

        await self.db.delete(rule)
        await self.db.flush()
        await self._commit_and_publish()
        logger.info(f"Deleted blacklist rule {rule_id}", extra={"rule_id": rule_id})

    async def list_rules(self) -> list[BlacklistRule]:
        """All rules, ascending by id (also their evaluation priority)."""
        result = await self.db.execute(select(BlacklistRule).order_by(BlacklistRule.id.asc()))
        return list(result.scalars().all())

    async def get(self, rule_id: int) -> BlacklistRule | None:
        """Get a single rule by id."""
        result = await self.db.execute(select(BlacklistRule).where(BlacklistRule.id == rule_id))
        return result.scalar_one_or_none()

    async def _commit_and_publish(self) -> None:
        await self.db.commit()
        await self.cache.refresh(self.db)

    @staticmethod
    def _check_action(action: str) -> None:
        if action not in RULE_ACTIONS:
            raise ValueError(f"action must be one of {', '.join(RULE_ACTIONS)}, got {action!r}")
