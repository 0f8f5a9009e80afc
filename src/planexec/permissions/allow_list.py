"""Allow-list rules for agent tool use.

Rules use the Claude Code ``--allowedTools`` syntax:

- ``Edit``: the whole tool is approved.
- ``Bash(git commit:*)``: shell commands starting with ``git commit``.
- ``Bash(make)``: exactly the command ``make``.

A prefix ending in a word character only matches when the command continues
with whitespace or ends there, so ``git commit`` approves
``git commit -m x`` but not ``git commit-tree``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)

BASH_TOOL = "Bash"


@dataclass(frozen=True)
class ParsedRule:
    """One allow-list entry."""

    tool: str
    prefix: Optional[str] = None
    exact: Optional[str] = None

    def to_rule(self) -> str:
        if self.prefix is not None:
            return f"{self.tool}({self.prefix}:*)"
        if self.exact is not None:
            return f"{self.tool}({self.exact})"
        return self.tool


def parse_rule(rule: str) -> Optional[ParsedRule]:
    """Parse a rule string. Returns None for empty or malformed rules."""
    if not isinstance(rule, str):
        return None
    rule = rule.strip()
    if not rule:
        return None

    if "(" not in rule:
        return ParsedRule(tool=rule)

    tool, _, rest = rule.partition("(")
    if not rest.endswith(")"):
        logger.debug(f"Skipping malformed tool rule: {rule}")
        return None
    body = rest[:-1].strip()
    if tool != BASH_TOOL:
        logger.debug(f"Ignoring parameterized rule for non-shell tool: {rule}")
        return None
    if not body:
        return None
    if body.endswith(":*"):
        prefix = body[:-2].strip()
        return ParsedRule(tool=tool, prefix=prefix) if prefix else None
    return ParsedRule(tool=tool, exact=body)


def command_matches_prefix(command: str, prefix: str) -> bool:
    """Prefix match with a word boundary after word-character prefixes."""
    command = command.strip()
    if not prefix or not command.startswith(prefix):
        return False
    if len(command) == len(prefix):
        return True
    last = prefix[-1]
    if last.isalnum() or last == "_":
        return command[len(prefix)].isspace()
    return True


@dataclass
class AllowList:
    """Mutable approval state owned by one executor."""

    tools: set[str] = field(default_factory=set)
    bash_prefixes: list[str] = field(default_factory=list)
    bash_exact: set[str] = field(default_factory=set)

    @classmethod
    def from_rules(cls, rules: Iterable[str]) -> AllowList:
        allow_list = cls()
        for rule in rules:
            allow_list.add_rule(rule)
        return allow_list

    def add_rule(self, rule: str) -> bool:
        """Add a rule string. Returns True when it changed the list."""
        parsed = parse_rule(rule)
        if parsed is None:
            return False
        if parsed.prefix is not None:
            return self.allow_bash_prefix(parsed.prefix)
        if parsed.exact is not None:
            if parsed.exact in self.bash_exact:
                return False
            self.bash_exact.add(parsed.exact)
            return True
        return self.allow_tool(parsed.tool)

    def allow_tool(self, tool: str) -> bool:
        if tool in self.tools:
            return False
        self.tools.add(tool)
        return True

    def allow_bash_prefix(self, prefix: str) -> bool:
        prefix = prefix.strip()
        if not prefix or prefix in self.bash_prefixes:
            return False
        self.bash_prefixes.append(prefix)
        return True

    def is_allowed(self, tool: str, tool_input: Any) -> bool:
        """Whether a request is approved without asking."""
        if tool in self.tools:
            return True
        if tool != BASH_TOOL or not isinstance(tool_input, dict):
            return False
        command = tool_input.get("command")
        if not isinstance(command, str):
            return False
        if command.strip() in self.bash_exact:
            return True
        return any(command_matches_prefix(command, prefix) for prefix in self.bash_prefixes)

    def to_rules(self) -> list[str]:
        rules = sorted(self.tools)
        rules.extend(ParsedRule(BASH_TOOL, prefix=p).to_rule() for p in self.bash_prefixes)
        rules.extend(ParsedRule(BASH_TOOL, exact=e).to_rule() for e in sorted(self.bash_exact))
        return rules
