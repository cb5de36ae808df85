"""Tests for BlacklistService - rule store with cache publication."""

import pytest
from sqlalchemy import func, select

from termaudit.core.exceptions import InvalidPatternError, RuleNotFoundError
from termaudit.models.blacklist_rule import BlacklistRule
from termaudit.services.blacklist import BlacklistService


@pytest.fixture
def service(db_session, rule_cache):
    return BlacklistService(db_session, rule_cache)


async def count_rules(db_session) -> int:
    result = await db_session.execute(select(func.count(BlacklistRule.id)))
    return result.scalar()


class TestCreate:
    async def test_create_stores_and_publishes(self, service, rule_cache):
        rule = await service.create(r"^rm\s+-rf", description="Recursive delete")

        assert rule.id is not None
        assert rule.action == "block"
        assert rule.enabled is True
        assert rule_cache.version == 1
        assert [r.id for r in rule_cache.current().rules] == [rule.id]

    async def test_catastrophic_pattern_never_stored(self, service, db_session, rule_cache):
        with pytest.raises(InvalidPatternError):
            await service.create(r"(a+)+$")

        assert await count_rules(db_session) == 0
        assert rule_cache.version == 0

    async def test_invalid_action_rejected(self, service, db_session):
        with pytest.raises(ValueError):
            await service.create("^ls", action="drop")

        assert await count_rules(db_session) == 0

    async def test_disabled_rule_not_in_snapshot(self, service, rule_cache):
        await service.create("^ls", enabled=False)

        assert rule_cache.version == 1
        assert len(rule_cache.current()) == 0

    async def test_created_by_recorded(self, service):
        rule = await service.create("^ls", created_by=42)
        assert rule.created_by == 42


class TestUpdate:
    async def test_update_pattern_publishes_new_snapshot(self, service, rule_cache):
        rule = await service.create("^rm")

        updated = await service.update(rule.id, pattern="^shred")

        assert updated.pattern == "^shred"
        assert rule_cache.version == 2
        assert rule_cache.current().rules[0].pattern == "^shred"

    async def test_invalid_pattern_leaves_rule_unchanged(self, service, rule_cache):
        rule = await service.create("^rm")

        with pytest.raises(InvalidPatternError):
            await service.update(rule.id, pattern=r"(\w*)*")

        stored = await service.get(rule.id)
        assert stored.pattern == "^rm"
        assert rule_cache.version == 1

    async def test_disable_removes_rule_from_snapshot(self, service, rule_cache):
        rule = await service.create("^rm")

        await service.update(rule.id, enabled=False)

        assert len(rule_cache.current()) == 0

    async def test_none_values_are_ignored(self, service):
        rule = await service.create("^rm", description="keep me")

        updated = await service.update(rule.id, description=None, action="warn")

        assert updated.description == "keep me"
        assert updated.action == "warn"

    async def test_unknown_rule(self, service):
        with pytest.raises(RuleNotFoundError):
            await service.update(999, enabled=False)

    async def test_unknown_field(self, service):
        rule = await service.create("^rm")
        with pytest.raises(ValueError):
            await service.update(rule.id, created_by=1)


class TestDeleteAndList:
    async def test_delete_removes_rule(self, service, db_session, rule_cache):
        rule = await service.create("^rm")

        await service.delete(rule.id)

        assert await count_rules(db_session) == 0
        assert len(rule_cache.current()) == 0

    async def test_delete_unknown_rule(self, service):
        with pytest.raises(RuleNotFoundError):
            await service.delete(12345)

    async def test_list_in_evaluation_order(self, service):
        first = await service.create("^a")
        second = await service.create("^b", enabled=False)
        third = await service.create("^c")

        rules = await service.list_rules()

        assert [r.id for r in rules] == [first.id, second.id, third.id]
