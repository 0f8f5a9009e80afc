"""Decides whether an agent may run a tool.

Decision order for a request:

1. The tool is approved as a whole.
2. A shell command matches an approved prefix or exact command.
3. Deleting files this run created, when that auto-approval is enabled and
   every target of the ``rm`` was created in this run.
4. Otherwise the user is asked. A timed-out prompt falls back to the
   configured default; any other prompt failure denies.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import yaml

from ..errors import PromptTimeoutError
from ..interactive import prompt_select
from ..output import StructuredEventType, get_output
from .allow_list import BASH_TOOL, AllowList, ParsedRule
from .settings_file import add_allow_rule
from .store import SharedPermissionStore

logger = logging.getLogger(__name__)

ALLOW = "allow"
SESSION_ALLOW = "session_allow"
ALWAYS_ALLOW = "always_allow"
DISALLOW = "disallow"

PERMISSION_CHOICES = [
    {"name": "Allow", "value": ALLOW},
    {"name": "Allow for Session", "value": SESSION_ALLOW},
    {"name": "Always Allow", "value": ALWAYS_ALLOW},
    {"name": "Disallow", "value": DISALLOW},
]

MAX_INPUT_PREVIEW = 500

# Anything that could chain a second command onto an rm
SHELL_OPERATOR_RE = re.compile(r"[;&|<>`\n]|\$\(")
GLOB_CHARS = ("*", "?", "[")

Prompter = Callable[..., Awaitable[Any]]


def parse_rm_command(command: str, working_directory: Path) -> list[str]:
    """Absolute paths an ``rm`` command deletes.

    Flags and glob patterns are skipped. Commands that are not a plain
    ``rm`` (pipelines, chained commands, unbalanced quotes) yield no paths.
    """
    stripped = command.strip()
    if not re.match(r"^rm(\s|$)", stripped) or SHELL_OPERATOR_RE.search(stripped):
        return []
    try:
        tokens = shlex.split(stripped)
    except ValueError:
        return []
    if not tokens or tokens[0] != "rm":
        return []

    paths = []
    for token in tokens[1:]:
        if not token.strip() or token.startswith("-"):
            continue
        if any(char in token for char in GLOB_CHARS):
            continue
        paths.append(os.path.normpath(os.path.join(str(working_directory), token)))
    return paths


def format_tool_input(tool_input: Any) -> str:
    """YAML rendering of a tool input, truncated for display."""
    formatted = yaml.safe_dump(tool_input, sort_keys=False, allow_unicode=True)
    if len(formatted) > MAX_INPUT_PREVIEW:
        formatted = formatted[:MAX_INPUT_PREVIEW] + "..."
    return formatted


def prefix_candidates(command: str) -> list[dict]:
    """Choices for the "Always Allow" prefix sub-prompt."""
    first_line = command.strip().splitlines()[0] if command.strip() else ""
    words = first_line.split()
    choices = [
        {"name": " ".join(words[:i]), "value": {"exact": False, "command": " ".join(words[:i])}}
        for i in range(1, len(words) + 1)
    ]
    choices.append({"name": "Exact command", "value": {"exact": True, "command": command.strip()}})
    return choices


@dataclass
class PermissionOptions:
    """Settings for interactive permission decisions."""

    default_response: str = "no"
    timeout: Optional[float] = None  # seconds
    auto_approve_created_file_deletion: bool = False
    working_directory: Optional[Path] = None


class PermissionBroker:
    """Answers permission requests for one executor run.

    Args:
        allow_list: Approval state owned by the executor; mutated by session
            and permanent approvals.
        options: Prompt and auto-approval settings.
        tracked_files: Absolute paths of files created or edited this run.
        project_root: Root holding ``.claude/settings.local.json``.
        store: Shared cross-workspace store for permanent approvals.
        repository_id: Key for the shared store.
        prompter: ``prompt_select`` compatible coroutine function.
    """

    def __init__(
        self,
        allow_list: AllowList,
        options: PermissionOptions,
        tracked_files: set[str],
        project_root: Path,
        store: Optional[SharedPermissionStore] = None,
        repository_id: Optional[str] = None,
        prompter: Optional[Prompter] = None,
    ):
        self.allow_list = allow_list
        self.options = options
        self.tracked_files = tracked_files
        self.project_root = Path(project_root)
        self.store = store
        self.repository_id = repository_id or str(self.project_root)
        self.prompter = prompter or prompt_select

    def check_automatic(self, tool_name: str, tool_input: Any) -> Optional[str]:
        """Return the reason a request is approved without asking, or None."""
        if self.allow_list.is_allowed(tool_name, tool_input):
            return "allow list"

        if (
            self.options.auto_approve_created_file_deletion
            and tool_name == BASH_TOOL
            and isinstance(tool_input, dict)
            and isinstance(tool_input.get("command"), str)
        ):
            working_directory = self.options.working_directory or self.project_root
            paths = parse_rm_command(tool_input["command"], working_directory)
            if paths and all(path in self.tracked_files for path in paths):
                return f"deleting files created in this run: {', '.join(paths)}"

        return None

    async def decide(self, tool_name: str, tool_input: Any) -> bool:
        """Approve or deny one request."""
        reason = self.check_automatic(tool_name, tool_input)
        if reason is not None:
            logger.info(f"Tool {tool_name} automatically approved ({reason})")
            self._record(tool_name, True, "automatic")
            return True

        approved, source = await self._ask_user(tool_name, tool_input)
        self._record(tool_name, approved, source)
        return approved

    def _record(self, tool_name: str, approved: bool, source: str) -> None:
        get_output().emit(
            StructuredEventType.PERMISSION_DECISION,
            {"toolName": tool_name, "approved": approved, "source": source},
        )

    async def _ask_user(self, tool_name: str, tool_input: Any) -> tuple[bool, str]:
        output = get_output()
        output.console.bell()
        output.emit(
            StructuredEventType.INPUT_REQUIRED,
            {"prompt": f"Claude permission request for tool {tool_name}"},
        )
        message = (
            f"Claude wants to run a tool:\n\nTool: {tool_name}\nInput:\n"
            f"{format_tool_input(tool_input)}\n\nAllow this tool to run?"
        )

        try:
            choice = await self.prompter(message, PERMISSION_CHOICES, timeout=self.options.timeout)
            approved = choice in (ALLOW, SESSION_ALLOW, ALWAYS_ALLOW)
            if choice == SESSION_ALLOW:
                self._allow_for_session(tool_name, tool_input)
            elif choice == ALWAYS_ALLOW:
                await self._allow_always(tool_name, tool_input)
            return approved, "user"
        except PromptTimeoutError:
            approved = self.options.default_response == "yes"
            logger.info(f"Permission prompt timed out, using default: {self.options.default_response}")
            return approved, "timeout"
        except Exception as exc:
            logger.warning(f"Permission prompt for {tool_name} failed, denying: {exc}")
            return False, "error"

    def _allow_for_session(self, tool_name: str, tool_input: Any) -> None:
        command = tool_input.get("command") if isinstance(tool_input, dict) else None
        if tool_name == BASH_TOOL and isinstance(command, str) and command.split():
            prefix = command.split()[0]
            self.allow_list.allow_bash_prefix(prefix)
            logger.info(f'{BASH_TOOL} prefix "{prefix}" added to allowed list for current session only')
        else:
            self.allow_list.allow_tool(tool_name)
            logger.info(f"Tool {tool_name} added to allowed list for current session only")

    async def _allow_always(self, tool_name: str, tool_input: Any) -> None:
        command = tool_input.get("command") if isinstance(tool_input, dict) else None
        if tool_name == BASH_TOOL and isinstance(command, str) and command.strip():
            selected = await self.prompter(
                "Select the command prefix to always allow:",
                prefix_candidates(command),
                timeout=self.options.timeout,
            )
            if selected.get("exact"):
                rule = ParsedRule(BASH_TOOL, exact=selected["command"]).to_rule()
            else:
                rule = ParsedRule(BASH_TOOL, prefix=selected["command"]).to_rule()
        else:
            rule = tool_name

        if self.allow_list.add_rule(rule):
            logger.info(f"{rule} added to always allowed list")
        else:
            logger.info(f"{rule} was already in the allowed list")

        add_allow_rule(self.project_root, rule)
        if self.store is not None:
            self.store.add_rule(self.repository_id, rule)
