# TermAudit Models
from termaudit.models.base import BaseModel
from termaudit.models.blacklist_rule import BlacklistRule
from termaudit.models.terminal_command import TerminalCommand
from termaudit.models.terminal_session import TerminalSession

__all__ = [
    "BaseModel",
    "BlacklistRule",
    "TerminalCommand",
    "TerminalSession",
]
