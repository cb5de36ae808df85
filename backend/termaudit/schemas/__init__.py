# TermAudit Pydantic Schemas
from termaudit.schemas.blacklist import (
    BlacklistRuleCreate,
    BlacklistRuleListResponse,
    BlacklistRuleResponse,
    BlacklistRuleUpdate,
)
from termaudit.schemas.terminal_audit import (
    CommandCheckRequest,
    CommandCheckResponse,
    FrameRequest,
    FrameResponse,
    SessionCloseRequest,
    SessionOpenRequest,
    SessionOpenResponse,
    TerminalCommandListResponse,
    TerminalCommandResponse,
    TerminalSessionListResponse,
    TerminalSessionResponse,
)

__all__ = [
    # Blacklist
    "BlacklistRuleCreate",
    "BlacklistRuleListResponse",
    "BlacklistRuleResponse",
    "BlacklistRuleUpdate",
    # Proxy boundary
    "CommandCheckRequest",
    "CommandCheckResponse",
    "FrameRequest",
    "FrameResponse",
    "SessionCloseRequest",
    "SessionOpenRequest",
    "SessionOpenResponse",
    # Audit
    "TerminalCommandListResponse",
    "TerminalCommandResponse",
    "TerminalSessionListResponse",
    "TerminalSessionResponse",
]
