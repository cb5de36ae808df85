"""Blacklist pattern validation.

Admin-supplied patterns run against every command in every live session, so
they are vetted once at write time:

1. Compile with the ``regex`` engine (the same engine used for matching).
2. Static check: an unbounded quantifier applied to a group whose body is
   itself unboundedly repeated (``(a+)+``, ``(\\w*)*``, ``(x+){2,}``) is the
   classic catastrophic-backtracking shape and is rejected outright.
3. Dynamic stress check: a fixed battery of adversarial inputs must finish
   within a total time budget, using the engine's own match timeout.

Anything that fails raises InvalidPatternError; nothing unsafe reaches the
rule cache.
"""

import logging
import time
from dataclasses import dataclass

import regex

from termaudit.core.config import settings
from termaudit.core.exceptions import InvalidPatternError

logger = logging.getLogger(__name__)

# Length of each synthetic stress input
STRESS_INPUT_LENGTH = 512

# Filler characters always included in the battery
GENERIC_FILLERS = ("a", "0", " ", "/", "-", "x")

# Terminators appended to fillers to force failing matches at the end
STRESS_TERMINATORS = ("\x00", "!")

# Cap on characters harvested from the pattern itself
MAX_PATTERN_FILLERS = 6

QUANTIFIER_CHARS = "*+?{"


@dataclass
class _GroupFrame:
    atomic: bool = False
    unbounded: bool = False  # body contains an unbounded, backtracking repeat


def _skip_char_class(pattern: str, i: int) -> int:
    """Return the index just past the character class starting at ``i``."""
    n = len(pattern)
    j = i + 1
    if j < n and pattern[j] == "^":
        j += 1
    if j < n and pattern[j] == "]":
        j += 1
    depth = 1
    while j < n and depth:
        c = pattern[j]
        if c == "\\":
            j += 2
            continue
        if c == "[":
            depth += 1  # regex V1 nested sets
        elif c == "]":
            depth -= 1
        j += 1
    return j


def _parse_quantifier(pattern: str, i: int) -> tuple[bool, int] | None:
    """Parse a quantifier at ``i``.

    Returns ``(unbounded, next_index)`` or None when the character is a
    literal (e.g. a ``{`` that does not open a repeat count).
    """
    c = pattern[i]
    if c in "*+":
        unbounded, j = True, i + 1
    elif c == "?":
        unbounded, j = False, i + 1
    else:
        close = pattern.find("}", i)
        if close == -1:
            return None
        body = pattern[i + 1 : close]
        lo, sep, hi = body.partition(",")
        if not (lo.strip().isdigit() or (sep and lo.strip() == "")):
            return None
        if hi.strip() and not hi.strip().isdigit():
            return None
        unbounded, j = bool(sep) and not hi.strip(), close + 1
    # Possessive repeats never backtrack; lazy ones still do
    if j < len(pattern) and pattern[j] == "+":
        return False, j + 1
    if j < len(pattern) and pattern[j] == "?":
        j += 1
    return unbounded, j


def find_nested_quantifier(pattern: str) -> str | None:
    """Return the offending fragment if ``pattern`` nests unbounded repeats."""
    stack = [_GroupFrame()]
    opens: list[int] = []
    last_group: _GroupFrame | None = None
    last_group_start = 0
    i = 0
    n = len(pattern)

    while i < n:
        c = pattern[i]

        if c == "\\":
            if i + 1 < n and pattern[i + 1] in "pPN" and i + 2 < n and pattern[i + 2] == "{":
                end = pattern.find("}", i)
                i = n if end == -1 else end + 1
            else:
                i += 2
            last_group = None
            continue

        if c == "[":
            i = _skip_char_class(pattern, i)
            last_group = None
            continue

        if c == "(":
            if pattern.startswith("(?#", i):
                end = pattern.find(")", i)
                i = n if end == -1 else end + 1
                continue
            stack.append(_GroupFrame(atomic=pattern.startswith("(?>", i)))
            opens.append(i)
            i += 1
            if i < n and pattern[i] == "?":
                # Skip the group prefix: (?:  (?P<name>  (?<=  (?i)  ...
                i += 1
                while i < n and pattern[i] not in "()[\\|" + QUANTIFIER_CHARS:
                    i += 1
            last_group = None
            continue

        if c == ")":
            if len(stack) > 1:
                frame = stack.pop()
                last_group_start = opens.pop()
                if frame.unbounded and not frame.atomic:
                    stack[-1].unbounded = True
                last_group = frame
            i += 1
            continue

        if c in QUANTIFIER_CHARS:
            parsed = _parse_quantifier(pattern, i)
            if parsed is None:
                last_group = None
                i += 1
                continue
            unbounded, next_i = parsed
            if unbounded:
                if last_group is not None and last_group.unbounded and not last_group.atomic:
                    return pattern[last_group_start:next_i]
                stack[-1].unbounded = True
            last_group = None
            i = next_i
            continue

        last_group = None
        i += 1

    return None


def build_stress_battery(pattern: str) -> list[str]:
    """Fixed-size adversarial inputs: long runs of characters the pattern
    is likely to consume, ending in a character that forces failure."""
    harvested: list[str] = []
    for ch in pattern:
        if (ch.isalnum() or ch in " -_./=") and ch not in harvested:
            harvested.append(ch)
        if len(harvested) >= MAX_PATTERN_FILLERS:
            break

    fillers = list(dict.fromkeys(harvested + list(GENERIC_FILLERS)))
    battery = [f * STRESS_INPUT_LENGTH + t for f in fillers for t in STRESS_TERMINATORS]
    # Interleaved run covering alternations such as (a|ab)
    if len(harvested) > 1:
        run = "".join(harvested)
        battery.append((run * (STRESS_INPUT_LENGTH // len(run) + 1))[:STRESS_INPUT_LENGTH] + "\x00")
    return battery


def run_stress_check(compiled: "regex.Pattern", pattern: str, budget_seconds: float) -> None:
    """Run the stress battery against ``compiled`` within ``budget_seconds``."""
    deadline = time.perf_counter() + budget_seconds
    for sample in build_stress_battery(pattern):
        remaining = deadline - time.perf_counter()
        if remaining <= 0:
            raise InvalidPatternError(pattern, "stress check exceeded its time budget")
        try:
            compiled.search(sample, timeout=remaining)
        except TimeoutError as e:
            raise InvalidPatternError(
                pattern, "stress check timed out (possible catastrophic backtracking)"
            ) from e


def validate_pattern(pattern: str) -> "regex.Pattern":
    """Validate a blacklist pattern and return its compiled form.

    Raises:
        InvalidPatternError: empty, too long, does not compile, nests
            unbounded quantifiers, or fails the timed stress check.
    """
    if not pattern or not pattern.strip():
        raise InvalidPatternError(pattern, "pattern must not be empty")
    if len(pattern) > settings.rule_pattern_max_length:
        raise InvalidPatternError(
            pattern, f"pattern exceeds {settings.rule_pattern_max_length} characters"
        )

    try:
        compiled = regex.compile(pattern)
    except (regex.error, RecursionError, OverflowError) as e:
        raise InvalidPatternError(pattern, f"does not compile: {e}") from e

    nested = find_nested_quantifier(pattern)
    if nested is not None:
        raise InvalidPatternError(
            pattern, f"nested unbounded quantifier {nested!r} can backtrack catastrophically"
        )

    run_stress_check(compiled, pattern, settings.rule_stress_budget_ms / 1000)
    logger.debug(f"Pattern accepted: {pattern!r}")
    return compiled
