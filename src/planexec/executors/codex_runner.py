"""Running one role step through the Codex CLI, with resume-based retries."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from ..codex_format import CodexFormatter
from ..config import CodexSettings
from ..errors import ExecutorError
from ..process import SpawnResult, spawn_and_stream
from ..tunnel.server import TunnelServerHandle
from .base import child_tunnel, tunnel_env

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
INITIAL_INACTIVITY_TIMEOUT = 60
SIGNAL_EXIT_CODES = (137, 143)


def build_codex_args(
    prompt: str,
    reasoning_level: str,
    allow_all_tools: bool,
    model: Optional[str] = None,
    resume_thread_id: Optional[str] = None,
) -> list[str]:
    """Command line for a fresh run, or a resumed one when a thread id is given."""
    args = [
        "codex",
        "--enable",
        "web_search_request",
        "exec",
        "-c",
        f"model_reasoning_effort={reasoning_level}",
    ]
    if allow_all_tools:
        args.append("--dangerously-bypass-approvals-and-sandbox")
    else:
        args.extend(["--sandbox", "workspace-write"])
    if model:
        args.extend(["--model", model])

    if resume_thread_id:
        args.extend(["--json", "resume", resume_thread_id, "continue"])
    else:
        args.extend(["--json", prompt])
    return args


def build_codex_env(tunnel: Optional[TunnelServerHandle], notify_suppress: bool = True) -> dict[str, Optional[str]]:
    """Environment overrides for a Codex child."""
    env: dict[str, Optional[str]] = {
        "PLANEXEC_EXECUTOR": "codex",
        "AGENT": os.environ.get("AGENT", "1"),
        "PLANEXEC_NOTIFY_SUPPRESS": "1" if notify_suppress else "0",
    }
    env.update(tunnel_env(tunnel))
    return env


def failure_reason(result: SpawnResult) -> Optional[str]:
    """Why an attempt should be retried, or None when it succeeded."""
    if result.killed_by_inactivity:
        return "was terminated after inactivity"
    if result.exit_code == 137:
        return "received SIGKILL"
    if result.exit_code in SIGNAL_EXIT_CODES:
        return "terminated unexpectedly"
    if result.exit_code != 0:
        return f"exited with code {result.exit_code}"
    return None


async def execute_codex_step(
    prompt: str,
    cwd: Path,
    settings: CodexSettings,
    allow_all_tools: bool = False,
    model: Optional[str] = None,
    reasoning_level: Optional[str] = None,
    notify_suppress: bool = True,
) -> str:
    """Run ``prompt`` through Codex and return its final agent message.

    Failed attempts are retried up to :data:`MAX_ATTEMPTS` times, resuming
    the captured thread so the agent keeps its context.

    Args:
        prompt: Full prompt for this step.
        cwd: Working directory.
        settings: Codex settings (model, reasoning level, inactivity timeout).
        allow_all_tools: Bypass the sandbox and approvals.
        model: Overrides ``settings.model``.
        reasoning_level: Overrides ``settings.reasoning_level``.
        notify_suppress: Value of PLANEXEC_NOTIFY_SUPPRESS for the child.

    Returns:
        The last FAILED agent message when there is one, else the final
        agent message.

    Raises:
        ExecutorError: Every attempt failed, or no agent message was produced.
    """
    level = reasoning_level or settings.reasoning_level
    model = model or settings.model
    inactivity_timeout = settings.inactivity_timeout_ms / 1000
    minutes = max(1, round(settings.inactivity_timeout_ms / 60000))

    thread_id: Optional[str] = None
    formatter = CodexFormatter()
    reason: Optional[str] = None

    for attempt in range(1, MAX_ATTEMPTS + 1):
        if attempt > 1 and not thread_id:
            logger.warning("Codex retry requested but no thread id was captured; issuing a fresh run.")
        formatter = CodexFormatter()
        args = build_codex_args(
            prompt,
            level,
            allow_all_tools,
            model=model,
            resume_thread_id=thread_id if attempt > 1 else None,
        )

        def on_kill(attempt: int = attempt) -> None:
            logger.warning(
                f"Codex produced no output for {minutes} minute(s); terminating attempt {attempt}/{MAX_ATTEMPTS}."
            )

        async with child_tunnel() as tunnel:
            env = build_codex_env(tunnel, notify_suppress)
            run = await spawn_and_stream(
                args,
                cwd,
                formatter,
                env_overrides=env,
                inactivity_timeout=inactivity_timeout,
                initial_inactivity_timeout=INITIAL_INACTIVITY_TIMEOUT,
                on_inactivity_kill=on_kill,
            )
            result = await run.wait()

        thread_id = formatter.thread_id or thread_id
        reason = failure_reason(result)
        if reason is None:
            break
        if attempt < MAX_ATTEMPTS:
            logger.warning(f"Codex attempt {attempt}/{MAX_ATTEMPTS} {reason}; retrying...")
    else:
        raise ExecutorError(f"codex failed after {MAX_ATTEMPTS} attempts ({reason}).")

    message = formatter.failed_agent_message or formatter.final_agent_message
    if not message:
        logger.error("Codex returned no final agent message. Enable debug logs for details.")
        raise ExecutorError("No final agent message found in Codex output.")
    return message
