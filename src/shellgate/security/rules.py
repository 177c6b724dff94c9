"""Rule Set - User-supplied allowlist and blocklist rules.

A rule string is one of:

- ``/pattern/flags``: a regular expression (searched, not anchored).
  Supported flags are ``i``, ``m`` and ``s``; ``g``, ``u`` and ``y`` are
  accepted and ignored.
- anything else: tried first as an exact string, then as a shell-style
  glob, so a literal and a glob share one slot.

A rule that fails to compile never matches. It does not abort loading
or classification.
"""

import fnmatch
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from shellgate.security.errors import ConfigError
from shellgate.telemetry.logger import get_logger

logger = get_logger(__name__)

_REGEX_RULE = re.compile(r"^/(.+)/([gimsuy]*)$", re.DOTALL)
_GLOB_CHARS = set("*?[")

_REGEX_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
}


class RuleKind(str, Enum):
    """How a rule's pattern is matched."""

    EXACT = "exact"
    GLOB = "glob"
    REGEX = "regex"


@dataclass(frozen=True)
class Rule:
    """A single match rule.

    Attributes:
        pattern: The rule as written by the user
        kind: How the pattern is interpreted
        regex: Compiled expression for regex rules (None if invalid)
        valid: False when the rule failed to compile and never matches
    """

    pattern: str
    kind: RuleKind
    regex: Optional[re.Pattern[str]] = field(default=None, compare=False, repr=False)
    valid: bool = True

    @classmethod
    def parse(cls, pattern: str, strict: bool = False) -> "Rule":
        """Build a rule from its string form.

        Args:
            pattern: Rule string
            strict: Raise ConfigError instead of returning a dead rule

        Returns:
            The parsed Rule

        Raises:
            ConfigError: If strict and the pattern is not a usable rule
        """
        if not isinstance(pattern, str) or not pattern:
            if strict:
                raise ConfigError(f"Rule must be a non-empty string: {pattern!r}", str(pattern))
            return cls(pattern=str(pattern), kind=RuleKind.EXACT, valid=False)

        match = _REGEX_RULE.match(pattern)
        if match:
            source, flag_chars = match.groups()
            flags = 0
            for char in flag_chars:
                flags |= _REGEX_FLAGS.get(char, 0)
            try:
                compiled = re.compile(source, flags)
            except re.error as e:
                if strict:
                    raise ConfigError(f"Invalid regex rule {pattern}: {e}", pattern) from e
                return cls(pattern=pattern, kind=RuleKind.REGEX, valid=False)
            return cls(pattern=pattern, kind=RuleKind.REGEX, regex=compiled)

        kind = RuleKind.GLOB if _GLOB_CHARS & set(pattern) else RuleKind.EXACT
        return cls(pattern=pattern, kind=kind)

    def matches(self, value: str) -> bool:
        """Check whether this rule matches a command or path string."""
        if not self.valid:
            return False

        if self.kind is RuleKind.REGEX:
            assert self.regex is not None
            return self.regex.search(value) is not None

        if value == self.pattern:
            return True

        if self.kind is RuleKind.GLOB:
            return fnmatch.fnmatchcase(value, self.pattern)

        return False


def _load_rules(patterns: Iterable[Any], section: str) -> tuple[Rule, ...]:
    rules = []
    for pattern in patterns:
        try:
            rule = Rule.parse(pattern, strict=True)
        except ConfigError as e:
            logger.warning(
                "Ignoring malformed rule",
                section=section,
                pattern=e.pattern,
                error=str(e),
            )
            rule = Rule.parse(pattern)
        rules.append(rule)
    return tuple(rules)


@dataclass(frozen=True)
class RuleSet:
    """User-supplied rules, partitioned by purpose.

    Attributes:
        allow_commands: Command patterns that mark a command as allowlisted
        allow_paths: Working-directory patterns that allowlist medium verdicts
        block_commands: Command patterns that are always critical
    """

    allow_commands: tuple[Rule, ...] = ()
    allow_paths: tuple[Rule, ...] = ()
    block_commands: tuple[Rule, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "RuleSet":
        """Build a rule set from ``{allowlist: {commands, paths}, blocklist: {commands}}``.

        Missing sections are treated as empty. Malformed rules are kept
        as rules that never match.
        """
        data = data or {}
        allowlist = data.get("allowlist") or {}
        blocklist = data.get("blocklist") or {}

        rule_set = cls(
            allow_commands=_load_rules(allowlist.get("commands") or [], "allowlist.commands"),
            allow_paths=_load_rules(allowlist.get("paths") or [], "allowlist.paths"),
            block_commands=_load_rules(blocklist.get("commands") or [], "blocklist.commands"),
        )

        logger.debug(
            "RuleSet loaded",
            allow_commands=len(rule_set.allow_commands),
            allow_paths=len(rule_set.allow_paths),
            block_commands=len(rule_set.block_commands),
        )
        return rule_set

    def match_allowed_command(self, command: str) -> Optional[Rule]:
        """Return the first allowlist command rule matching the command."""
        return _first_match(self.allow_commands, command)

    def match_allowed_path(self, working_dir: str) -> Optional[Rule]:
        """Return the first allowlist path rule matching the working directory."""
        if not working_dir:
            return None
        return _first_match(self.allow_paths, working_dir)

    def match_blocked_command(self, command: str) -> Optional[Rule]:
        """Return the first blocklist rule matching the command."""
        return _first_match(self.block_commands, command)


def _first_match(rules: Iterable[Rule], value: str) -> Optional[Rule]:
    for rule in rules:
        if rule.matches(value):
            return rule
    return None
