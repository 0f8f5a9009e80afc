"""Role-sequenced executor backed by the Codex CLI."""

from __future__ import annotations

import logging
from typing import Optional

from ..models import ExecutionRequest, ExecutorOutput
from ..output import StructuredEventType, get_output
from .base import Executor
from .codex_modes import RoleSequence
from .codex_runner import execute_codex_step

logger = logging.getLogger(__name__)


class CodexCliExecutor(Executor):
    """Runs each role as its own ``codex exec`` call."""

    name = "codex"

    async def run_step(self, prompt: str, model: Optional[str] = None) -> str:
        return await execute_codex_step(
            prompt,
            self.cwd,
            self.config.codex,
            allow_all_tools=self.config.allow_all_tools,
            model=model,
            notify_suppress=self.config.notify_suppress,
        )

    async def execute(self, request: ExecutionRequest) -> Optional[ExecutorOutput]:
        output = get_output()
        output.emit(
            StructuredEventType.AGENT_SESSION_START,
            {"executor": self.name, "mode": request.mode, "planId": request.plan_id},
        )

        success = False
        try:
            sequence = RoleSequence(
                request,
                self.cwd,
                lambda prompt: self.run_step(prompt, model=request.model),
            )
            result = await sequence.run()
            success = result is None or result.success
            return result
        finally:
            output.emit(
                StructuredEventType.AGENT_SESSION_END,
                {"executor": self.name, "mode": request.mode, "success": success},
            )
