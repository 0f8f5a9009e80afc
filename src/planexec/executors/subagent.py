"""Single role agents invoked by an orchestrating session.

An orchestrator Claude session runs ``planexec subagent <role>`` through
its Bash tool. The subagent runs as a tunnel child of that session's
planexec process, so its output and prompts travel up to the root.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from ..errors import ExecutorError
from ..models import ExecutionRequest
from .codex_modes import RoleSequence, StepFailed
from .orchestration_prompts import ROLE_INSTRUCTIONS, role_prompt

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

SUBAGENT_ROLES: tuple[str, ...] = tuple(ROLE_INSTRUCTIONS)


async def run_subagent(
    role: str,
    instructions: str,
    config: Config,
    executor_name: str = "claude",
    cwd: Optional[Path] = None,
    plan_id: str = "",
    plan_file: str = "",
    model: Optional[str] = None,
    interactive: bool = True,
) -> str:
    """Run one role agent and return its final message.

    Codex implementers get the same planning-only retries as in
    role-sequenced runs.

    Raises:
        ExecutorError: Unknown role or executor, or the agent produced nothing.
    """
    if role not in ROLE_INSTRUCTIONS:
        raise ExecutorError(f"Unknown subagent role: {role} (expected one of {', '.join(SUBAGENT_ROLES)})")

    prompt = role_prompt(role, instructions, plan_id=plan_id, plan_file=plan_file)
    request = ExecutionRequest(
        context=instructions,
        plan_id=plan_id,
        plan_file_path=plan_file,
        mode="bare",
        capture_output="result",
        model=model,
        interactive=interactive,
    )
    logger.info(f"Starting {role} subagent ({executor_name})")

    if executor_name == "codex":
        from .codex_cli import CodexCliExecutor

        codex = CodexCliExecutor(config, cwd)

        async def step_runner(text: str) -> str:
            return await codex.run_step(text, model=model)

        if role == "implementer":
            try:
                return await RoleSequence(request, codex.cwd, step_runner).run_implementer(prompt)
            except StepFailed as failure:
                # The orchestrator reads FAILED reports from stdout
                return failure.output
        return await step_runner(prompt)

    if executor_name == "claude":
        from .claude_code import ClaudeCodeExecutor

        claude = ClaudeCodeExecutor(config, cwd)
        result = await claude.run_prompt(prompt, request, role)
        if not result.last_assistant_text:
            raise ExecutorError(f"The {role} subagent produced no final message.")
        return result.last_assistant_text

    raise ExecutorError(f"Unknown executor: {executor_name}")
