"""Launching and supervising one Claude Code subprocess.

Builds the command line and environment, streams stdout through
:class:`ClaudeFormatter`, feeds the prompt and any follow-up input over
stream-json stdin, and collects what the executor needs afterwards: the
last assistant text, the structured output of the result message and the
files the session wrote.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

from ..claude_format import ClaudeFormatter
from ..input_multiplexer import InputMultiplexer
from ..models import StreamMessage
from ..output import get_output
from ..permissions.mcp_setup import PERMISSION_PROMPT_TOOL
from ..process import (
    DEFAULT_INACTIVITY_TIMEOUT,
    DEFAULT_INITIAL_INACTIVITY_TIMEOUT,
    SpawnResult,
    ensure_completed,
    spawn_and_stream,
)
from ..terminal import get_terminal
from ..tunnel.client import get_tunnel_client
from ..tunnel.server import TunnelServerHandle
from .base import tunnel_env

logger = logging.getLogger(__name__)

DEFAULT_CLAUDE_MODEL = "opus"
KNOWN_MODEL_FAMILIES = ("haiku", "sonnet", "opus")
FILE_WRITING_TOOLS = ("Write", "Edit", "MultiEdit")

JS_TASK_RUNNERS = ("npm", "pnpm", "yarn", "bun")


def default_allowed_tools() -> list[str]:
    """Tools Claude may use without asking."""
    tools = [
        "Edit",
        "MultiEdit",
        "Write",
        "WebFetch",
        "WebSearch",
        "Bash(cat:*)",
        "Bash(cd:*)",
        "Bash(cp:*)",
        "Bash(find:*)",
        "Bash(grep:*)",
        "Bash(ls:*)",
        "Bash(mkdir:*)",
        "Bash(mv:*)",
        "Bash(pwd)",
        "Bash(rg:*)",
        "Bash(sed:*)",
        "Bash(awk:*)",
        "Bash(rm test-:*)",
        "Bash(rm -f test-:*)",
        "Bash(git diff:*)",
        "Bash(git status:*)",
        "Bash(git log:*)",
        "Bash(git commit:*)",
        "Bash(git add:*)",
        "Bash(jj diff:*)",
        "Bash(jj status)",
        "Bash(jj log:*)",
        "Bash(jj commit:*)",
    ]
    for runner in JS_TASK_RUNNERS:
        tools.extend(
            [
                f"Bash({runner} test:*)",
                f"Bash({runner} run build:*)",
                f"Bash({runner} run check:*)",
                f"Bash({runner} run typecheck:*)",
                f"Bash({runner} run lint:*)",
                f"Bash({runner} install)",
                f"Bash({runner} add:*)",
            ]
        )
    tools.extend(
        [
            "Bash(cargo add:*)",
            "Bash(cargo build)",
            "Bash(cargo test:*)",
            "Bash(planexec run:*)",
            "Bash(planexec subagent:*)",
        ]
    )
    return tools


def build_allowed_tools(
    include_default_tools: bool = True,
    config_allowed_tools: Iterable[str] = (),
    shared_permissions: Iterable[str] = (),
    disallowed_tools: Iterable[str] = (),
) -> list[str]:
    """Merge defaults, config and shared-store rules, minus disallowed ones, without duplicates."""
    disallowed = set(disallowed_tools)
    candidates = list(default_allowed_tools() if include_default_tools else [])
    candidates.extend(config_allowed_tools)
    candidates.extend(shared_permissions)

    tools: list[str] = []
    for tool in candidates:
        if tool in disallowed or tool in tools:
            continue
        tools.append(tool)
    return tools


def resolve_model(model: Optional[str]) -> str:
    """Pass through known Claude model names; anything else gets the default."""
    if model and any(family in model for family in KNOWN_MODEL_FAMILIES):
        return model
    return DEFAULT_CLAUDE_MODEL


@dataclass
class ClaudeLaunch:
    """Command-line settings for one Claude subprocess."""

    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    allow_all_tools: bool = False
    model: Optional[str] = None
    mcp_config_path: Optional[Path] = None
    extra_args: list[str] = field(default_factory=list)

    def to_args(self) -> list[str]:
        args = ["claude", "--no-session-persistence"]

        if self.mcp_config_path is not None:
            args.extend(["--mcp-config", str(self.mcp_config_path)])
            args.extend(["--permission-prompt-tool", PERMISSION_PROMPT_TOOL])

        if self.allow_all_tools:
            args.append("--dangerously-skip-permissions")
        elif self.allowed_tools:
            args.extend(["--allowedTools", ",".join(self.allowed_tools)])

        if self.disallowed_tools:
            args.extend(["--disallowedTools", ",".join(self.disallowed_tools)])

        args.extend(["--model", resolve_model(self.model)])
        args.extend(["--verbose", "--output-format", "stream-json", "--input-format", "stream-json"])
        args.extend(self.extra_args)
        return args


def build_claude_env(tunnel: Optional[TunnelServerHandle], notify_suppress: bool = True) -> dict[str, Optional[str]]:
    """Environment overrides for a Claude child."""
    env: dict[str, Optional[str]] = {
        "CLAUDECODE": "",
        "PLANEXEC_EXECUTOR": "claude",
        "PLANEXEC_NOTIFY_SUPPRESS": "1" if notify_suppress else "0",
        "CLAUDE_BASH_MAINTAIN_PROJECT_WORKING_DIR": "true",
    }
    env.update(tunnel_env(tunnel))
    return env


@dataclass
class ClaudeRunResult:
    """What one Claude subprocess produced."""

    spawn: Optional[SpawnResult] = None
    rendered: list[str] = field(default_factory=list)
    last_assistant: Optional[StreamMessage] = None
    structured_output: Any = None
    session_id: Optional[str] = None

    @property
    def last_assistant_text(self) -> str:
        return self.last_assistant.raw_text if self.last_assistant else ""


def _track_paths(paths: Iterable[str], cwd: Path, tracked_files: set[str]) -> None:
    for path in paths:
        tracked_files.add(os.path.normpath(os.path.join(str(cwd), path)))


async def run_claude_subprocess(
    prompt: str,
    cwd: Path,
    launch: ClaudeLaunch,
    label: str,
    tracked_files: Optional[set[str]] = None,
    tunnel: Optional[TunnelServerHandle] = None,
    interactive: bool = True,
    close_on_result: bool = True,
    inactivity_timeout: Optional[float] = DEFAULT_INACTIVITY_TIMEOUT,
    initial_inactivity_timeout: Optional[float] = DEFAULT_INITIAL_INACTIVITY_TIMEOUT,
    notify_suppress: bool = True,
) -> ClaudeRunResult:
    """Run Claude on ``prompt`` until it exits.

    Args:
        prompt: First user turn.
        cwd: Working directory.
        launch: Command-line settings.
        label: Name used in log messages ("orchestrator", "review", ...).
        tracked_files: Set receiving absolute paths Claude writes.
        tunnel: Tunnel server children should forward to.
        interactive: Accept follow-up input from the terminal or remote monitor.
        close_on_result: Close stdin on the result message; otherwise the
            session continues until input ends.
        inactivity_timeout: Seconds without output before killing Claude.
        initial_inactivity_timeout: Same, before the first output.
        notify_suppress: Value of PLANEXEC_NOTIFY_SUPPRESS for the child.

    Returns:
        ClaudeRunResult.

    Raises:
        ExecutorError: Claude could not be started.
        ProcessFailedError: Claude died before producing its result.
    """
    tracked = tracked_files if tracked_files is not None else set()
    formatter = ClaudeFormatter()
    minutes = round((inactivity_timeout or 0) / 60)

    run = await spawn_and_stream(
        launch.to_args(),
        cwd,
        formatter,
        env_overrides=build_claude_env(tunnel, notify_suppress),
        inactivity_timeout=inactivity_timeout,
        initial_inactivity_timeout=initial_inactivity_timeout,
        on_inactivity_kill=lambda: logger.error(
            f"Claude {label} timed out after {minutes} minutes; terminating."
        ),
        stdin=True,
    )

    client = get_tunnel_client()
    multiplexer = InputMultiplexer(
        run,
        terminal=get_terminal() if interactive else None,
        tunnel_client=client if interactive and client is not None and client.connected else None,
        headless=get_output().headless if interactive else None,
        tunnel_server=tunnel.server if tunnel is not None else None,
        close_on_result=close_on_result,
    )

    result = ClaudeRunResult()
    try:
        await multiplexer.start(prompt)
        async for message in run.messages():
            if message.text:
                result.rendered.append(message.text)
            if message.file_paths:
                _track_paths(message.file_paths, cwd, tracked)
            if message.type == "assistant" and message.raw_text:
                result.last_assistant = message
            if message.session_id:
                result.session_id = message.session_id
            if message.is_result:
                result.structured_output = message.structured_output
                multiplexer.on_result()
        result.spawn = await run.wait()
    finally:
        await multiplexer.stop()
        if run.process.returncode is None:
            await run.terminate()

    ensure_completed(result.spawn, f"Claude {label}")
    return result
