"""Pydantic schemas for terminal sessions, commands and the proxy boundary."""

from datetime import datetime
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class TerminalSessionResponse(BaseModel):
    """Schema for a single terminal session."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    username: str | None = None
    server_id: int
    server_name: str | None = None
    stream_id: str
    started_at: datetime
    ended_at: datetime | None = None
    duration: int = Field(validation_alias=AliasChoices("duration_seconds", "duration"))
    end_reason: str | None = None
    command_count: int
    recording_enabled: bool
    recording_degraded: bool = False
    is_active: bool


class TerminalSessionListResponse(BaseModel):
    """Schema for paginated session list."""

    items: list[TerminalSessionResponse]
    total: int
    page: int
    page_size: int
    pages: int
    snapshot_id: int


class TerminalCommandResponse(BaseModel):
    """Schema for a single audited command."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    session_id: int
    user_id: int
    server_id: int
    command: str
    working_dir: str
    executed_at: datetime
    exit_code: int | None = None
    blocked: bool
    block_reason: str | None = None
    action: str
    rule_id: int | None = None
    snapshot_version: int | None = None


class TerminalCommandListResponse(BaseModel):
    """Schema for paginated command list."""

    items: list[TerminalCommandResponse]
    total: int
    page: int
    page_size: int
    pages: int
    snapshot_id: int


# --- PTY proxy boundary ---


class SessionOpenRequest(BaseModel):
    server_id: int
    stream_id: str = Field(..., min_length=1, max_length=128)
    username: str | None = Field(None, max_length=255)
    server_name: str | None = Field(None, max_length=255)
    recording_enabled: bool | None = None  # None = server policy
    width: int = Field(80, ge=1, le=1000)
    height: int = Field(24, ge=1, le=1000)


class SessionOpenResponse(BaseModel):
    session_id: int
    stream_id: str
    recording_enabled: bool


class CommandCheckRequest(BaseModel):
    stream_id: str = Field(..., min_length=1, max_length=128)
    command: str
    working_dir: str = ""
    exit_code: int | None = None
    executed_at: datetime | None = None


class CommandCheckResponse(BaseModel):
    """Verdict relayed to the proxy."""

    blocked: bool
    reason: str | None = None
    action: str
    decision: Literal["allow", "deny", "allow-with-warning"]
    rule_id: int | None = None
    snapshot_version: int
    durable: bool


class FrameRequest(BaseModel):
    data: str  # base64 encoded raw bytes
    direction: Literal["o", "i"] = "o"


class FrameResponse(BaseModel):
    accepted: bool


class SessionCloseRequest(BaseModel):
    reason: Literal["closed", "timeout"] = "closed"
