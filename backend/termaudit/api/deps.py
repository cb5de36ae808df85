"""Shared FastAPI dependencies for the terminal API."""

from fastapi import Header

from termaudit.services.recorder import Recorder
from termaudit.services.rule_cache import RuleCache
from termaudit.services.session_tracker import SessionRegistry


async def get_user_id(x_user_id: int = Header(..., alias="X-User-ID", ge=1)) -> int:
    """Authenticated user id, forwarded by the front proxy."""
    return x_user_id


async def get_optional_user_id(
    x_user_id: int | None = Header(None, alias="X-User-ID", ge=1),
) -> int | None:
    return x_user_id


def get_registry() -> SessionRegistry:
    return SessionRegistry.get_instance()


def get_recorder() -> Recorder:
    return Recorder.get_instance()


def get_rule_cache() -> RuleCache:
    return RuleCache.get_instance()
