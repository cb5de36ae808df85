"""Interceptor - evaluates a single command against one rule snapshot."""

import logging
from dataclasses import dataclass, field
from enum import Enum

from termaudit.core.config import settings
from termaudit.services.rule_cache import RuleCache, RuleSnapshot

logger = logging.getLogger(__name__)


class ProxyDecision(str, Enum):
    """What the PTY proxy is told to do with a command."""

    ALLOW = "allow"
    DENY = "deny"
    ALLOW_WITH_WARNING = "allow-with-warning"


@dataclass(frozen=True)
class Verdict:
    """Outcome of evaluating one command.

    action is one of block, warn, log or none. reason carries the matched
    rule's description.
    """

    allowed: bool
    action: str = "none"
    matched_rule_id: int | None = None
    reason: str | None = None
    snapshot_version: int = 0
    timed_out_rule_ids: tuple[int, ...] = field(default=())

    @property
    def blocked(self) -> bool:
        return self.action == "block"

    @property
    def decision(self) -> ProxyDecision:
        if self.action == "block":
            return ProxyDecision.DENY
        if self.action == "warn":
            return ProxyDecision.ALLOW_WITH_WARNING
        return ProxyDecision.ALLOW

    @classmethod
    def allow_unmatched(cls, snapshot_version: int = 0) -> "Verdict":
        return cls(allowed=True, action="none", snapshot_version=snapshot_version)


class Interceptor:
    """Evaluates commands against the rule cache.

    Pure with respect to the snapshot: no I/O and no shared state is
    mutated. Each rule gets its own match timeout; a timeout counts as a
    non-match for that rule only, so the worst case is bounded by
    timeout x number of enabled rules.
    """

    def __init__(self, cache: RuleCache | None = None, match_timeout_ms: float | None = None):
        self._cache = cache or RuleCache.get_instance()
        self._timeout = (match_timeout_ms or settings.rule_match_timeout_ms) / 1000

    def snapshot(self, version: int | None = None) -> RuleSnapshot:
        """Pin a snapshot: the current one, or a retained older version."""
        if version is None:
            return self._cache.current()
        return self._cache.get(version)

    def evaluate(
        self,
        command: str,
        snapshot: RuleSnapshot | int | None = None,
    ) -> Verdict:
        """Evaluate ``command``; first matching rule by ascending id wins."""
        if not isinstance(snapshot, RuleSnapshot):
            snapshot = self.snapshot(snapshot)

        timed_out: list[int] = []
        for rule in snapshot.rules:
            try:
                # concurrent=True releases the GIL so sessions evaluate in parallel
                match = rule.compiled.search(command, timeout=self._timeout, concurrent=True)
            except TimeoutError:
                timed_out.append(rule.id)
                logger.warning(
                    f"Rule {rule.id} exceeded its {self._timeout * 1000:.1f}ms match budget; "
                    "treating as no match (pattern may need tightening)",
                    extra={"rule_id": rule.id, "snapshot_version": snapshot.version},
                )
                continue

            if match is None:
                continue

            return Verdict(
                allowed=rule.action != "block",
                action=rule.action,
                matched_rule_id=rule.id,
                reason=rule.description,
                snapshot_version=snapshot.version,
                timed_out_rule_ids=tuple(timed_out),
            )

        return Verdict(
            allowed=True,
            action="none",
            snapshot_version=snapshot.version,
            timed_out_rule_ids=tuple(timed_out),
        )
