"""BlacklistRule model - regex rules evaluated against terminal commands."""

from sqlalchemy import Boolean, CheckConstraint, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from termaudit.models.base import BaseModel, IdType

RULE_ACTIONS = ("block", "warn", "log")


class BlacklistRule(BaseModel):
    """A command blacklist rule.

    Only validated patterns are ever stored. Rules are evaluated in
    ascending id order and the first match wins.
    """

    __tablename__ = "terminal_blacklist"

    pattern: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    action: Mapped[str] = mapped_column(String(16), nullable=False, default="block")
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    created_by: Mapped[int | None] = mapped_column(IdType, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "action IN ('block', 'warn', 'log')",
            name="ck_terminal_blacklist_action",
        ),
    )

    def __repr__(self) -> str:
        state = "on" if self.enabled else "off"
        return f"<BlacklistRule {self.id} {self.action} {state}: {self.pattern[:50]}>"
