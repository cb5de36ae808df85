"""Pydantic schemas for terminal blacklist rules."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

RuleAction = Literal["block", "warn", "log"]


class BlacklistRuleCreate(BaseModel):
    """Schema for creating a blacklist rule."""

    pattern: str = Field(..., min_length=1, max_length=1024)
    description: str = Field("", max_length=500)
    action: RuleAction = "block"
    enabled: bool = True


class BlacklistRuleUpdate(BaseModel):
    """Schema for a partial rule update; omitted fields are unchanged."""

    pattern: str | None = Field(None, min_length=1, max_length=1024)
    description: str | None = Field(None, max_length=500)
    action: RuleAction | None = None
    enabled: bool | None = None


class BlacklistRuleResponse(BaseModel):
    """Schema for blacklist rule response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    pattern: str
    description: str
    action: str
    enabled: bool
    created_by: int | None = None
    created_at: datetime
    updated_at: datetime


class BlacklistRuleListResponse(BaseModel):
    """All rules in evaluation order plus the live snapshot version."""

    items: list[BlacklistRuleResponse]
    total: int
    snapshot_version: int
