# TermAudit Services
from termaudit.services.audit_log import AuditLogService
from termaudit.services.audit_query import AuditQueryService
from termaudit.services.audit_retention import AuditRetentionService
from termaudit.services.blacklist import BlacklistService
from termaudit.services.interceptor import Interceptor, ProxyDecision, Verdict
from termaudit.services.recorder import Recorder, get_recorder
from termaudit.services.rule_cache import RuleCache, RuleSnapshot, get_rule_cache
from termaudit.services.session_tracker import (
    SessionRegistry,
    SessionTracker,
    get_session_registry,
)

__all__ = [
    "AuditLogService",
    "AuditQueryService",
    "AuditRetentionService",
    "BlacklistService",
    "Interceptor",
    "ProxyDecision",
    "Recorder",
    "RuleCache",
    "RuleSnapshot",
    "SessionRegistry",
    "SessionTracker",
    "Verdict",
    "get_recorder",
    "get_rule_cache",
    "get_session_registry",
]
