"""Single-process executor backed by the Claude Code CLI.

One Claude session receives the whole (optionally wrapped) context and
drives any role agents itself through ``planexec subagent``. Permission
requests for tools outside the allow list are brokered back to this
process over a stdio MCP server.
"""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Optional

from ..failure_detection import build_failure_details, detect_failed, infer_source_role
from ..models import ExecutionRequest, ExecutorOutput
from ..output import StructuredEventType, get_output
from ..permissions.allow_list import AllowList
from ..permissions.broker import PermissionBroker, PermissionOptions
from ..permissions.mcp_setup import setup_permissions_mcp
from ..permissions.settings_file import load_allow_rules
from ..permissions.store import SharedPermissionStore
from ..process import DEFAULT_INACTIVITY_TIMEOUT, DEFAULT_INITIAL_INACTIVITY_TIMEOUT, ORCHESTRATOR_INACTIVITY_TIMEOUT
from ..repository import get_git_remote, get_git_root
from .base import Executor, child_tunnel
from .claude_subprocess import ClaudeLaunch, ClaudeRunResult, build_allowed_tools, run_claude_subprocess
from .orchestration_prompts import role_prompt, wrap_with_orchestration

logger = logging.getLogger(__name__)

REVIEW_JSON_SCHEMA = {
    "type": "object",
    "properties": {
        "verdict": {"type": "string", "enum": ["ACCEPTABLE", "NEEDS_FIXES"]},
        "summary": {"type": "string"},
        "issues": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "severity": {"type": "string", "enum": ["critical", "major", "minor", "info"]},
                    "file": {"type": "string"},
                    "line": {"type": "integer"},
                    "description": {"type": "string"},
                    "suggestion": {"type": "string"},
                },
                "required": ["severity", "description"],
            },
        },
    },
    "required": ["verdict", "issues"],
}

REVIEW_JSON_INSTRUCTIONS = (
    "Return the review as structured output matching the provided JSON schema. "
    "Put every issue in `issues`; use an empty list when there are none."
)


def _ms_to_seconds(value: Optional[int], default: float) -> float:
    return value / 1000 if value else default


class ClaudeCodeExecutor(Executor):
    """Runs requests through one ``claude`` subprocess per call."""

    name = "claude"

    def __init__(self, config, cwd: Optional[Path] = None):
        super().__init__(config, cwd)
        self.project_root = get_git_root(self.cwd) or self.cwd
        self.repository_id = get_git_remote(self.project_root) or str(self.project_root)
        self.store = SharedPermissionStore(config.permissions_store_path)
        # Absolute paths written by Claude during this executor's lifetime
        self.tracked_files: set[str] = set()

    # =========================================================================
    # Launch settings
    # =========================================================================

    def allowed_tools(self) -> list[str]:
        settings = self.config.claude
        return build_allowed_tools(
            include_default_tools=settings.include_default_tools,
            config_allowed_tools=settings.allowed_tools,
            shared_permissions=self.store.get_rules(self.repository_id),
            disallowed_tools=settings.disallowed_tools,
        )

    def brokering_enabled(self, request: ExecutionRequest) -> bool:
        """Permission brokering needs someone to answer and something to ask about."""
        return (
            self.config.claude.permissions_mcp.enabled
            and not self.config.allow_all_tools
            and request.interactive
        )

    def build_broker(self, allowed_tools: list[str]) -> PermissionBroker:
        settings = self.config.claude.permissions_mcp
        allow_list = AllowList.from_rules(list(allowed_tools) + load_allow_rules(self.project_root))
        return PermissionBroker(
            allow_list,
            PermissionOptions(
                default_response=settings.default_response,
                timeout=settings.timeout_seconds,
                auto_approve_created_file_deletion=settings.auto_approve_created_file_deletion,
                working_directory=self.cwd,
            ),
            tracked_files=self.tracked_files,
            project_root=self.project_root,
            store=self.store,
            repository_id=self.repository_id,
        )

    def build_prompt(self, request: ExecutionRequest) -> str:
        if request.mode == "bare":
            return request.context
        if request.mode == "review":
            return role_prompt(
                "reviewer",
                request.context,
                plan_id=request.plan_id,
                plan_file=request.plan_file_path,
                extra_instructions=REVIEW_JSON_INSTRUCTIONS,
            )
        return wrap_with_orchestration(
            request.context,
            plan_id=request.plan_id,
            plan_file=request.plan_file_path,
            mode=request.mode,
            executor=self.name,
        )

    # =========================================================================
    # Execution
    # =========================================================================

    async def run_prompt(
        self,
        prompt: str,
        request: ExecutionRequest,
        label: str,
        close_on_result: bool = True,
        inactivity_timeout: float = DEFAULT_INACTIVITY_TIMEOUT,
        extra_args: tuple[str, ...] = (),
    ) -> ClaudeRunResult:
        """Run one Claude subprocess with brokering and output forwarding set up."""
        settings = self.config.claude
        allowed_tools = self.allowed_tools()
        launch = ClaudeLaunch(
            allowed_tools=allowed_tools,
            disallowed_tools=list(settings.disallowed_tools),
            allow_all_tools=self.config.allow_all_tools,
            model=request.model or settings.model,
            extra_args=list(extra_args),
        )

        async with AsyncExitStack() as stack:
            if self.brokering_enabled(request):
                launch.mcp_config_path = await stack.enter_async_context(
                    setup_permissions_mcp(self.build_broker(allowed_tools))
                )
            tunnel = await stack.enter_async_context(child_tunnel())
            return await run_claude_subprocess(
                prompt,
                self.cwd,
                launch,
                label,
                tracked_files=self.tracked_files,
                tunnel=tunnel,
                interactive=request.interactive,
                close_on_result=close_on_result,
                inactivity_timeout=_ms_to_seconds(settings.inactivity_timeout_ms, inactivity_timeout),
                initial_inactivity_timeout=_ms_to_seconds(
                    settings.initial_inactivity_timeout_ms, DEFAULT_INITIAL_INACTIVITY_TIMEOUT
                ),
                notify_suppress=self.config.notify_suppress,
            )

    async def execute(self, request: ExecutionRequest) -> Optional[ExecutorOutput]:
        orchestrated = request.mode in ("normal", "simple", "tdd")
        extra_args: tuple[str, ...] = ()
        if request.mode == "review":
            extra_args = ("--json-schema", json.dumps(REVIEW_JSON_SCHEMA))

        output = get_output()
        output.emit(
            StructuredEventType.AGENT_SESSION_START,
            {"executor": self.name, "mode": request.mode, "planId": request.plan_id},
        )

        success = False
        try:
            result = await self.run_prompt(
                self.build_prompt(request),
                request,
                "orchestrator" if orchestrated else request.mode,
                # Bare sessions keep going until the user stops sending input
                close_on_result=request.mode != "bare",
                inactivity_timeout=ORCHESTRATOR_INACTIVITY_TIMEOUT if orchestrated else DEFAULT_INACTIVITY_TIMEOUT,
                extra_args=extra_args,
            )
            executor_output = self.build_output(request, result)
            success = executor_output is None or executor_output.success
            return executor_output
        finally:
            output.emit(
                StructuredEventType.AGENT_SESSION_END,
                {"executor": self.name, "mode": request.mode, "success": success},
            )

    def build_output(self, request: ExecutionRequest, result: ClaudeRunResult) -> Optional[ExecutorOutput]:
        """Turn a finished Claude run into the executor's return value."""
        report = detect_failed(result.last_assistant_text)
        if report.failed:
            source = infer_source_role(report.summary)
            details = build_failure_details(report, source, raw=result.last_assistant_text)
            logger.error(f"Agent reported failure ({source}): {report.summary}")
            get_output().emit(
                StructuredEventType.FAILURE_REPORT,
                {"summary": report.summary, **details.to_dict()},
            )
            return ExecutorOutput(
                content=result.last_assistant_text.strip(),
                metadata={"phase": "orchestrator"},
                success=False,
                failure_details=details,
            )

        if request.mode == "review":
            return ExecutorOutput(
                content=result.last_assistant_text.strip(),
                structured=result.structured_output,
                metadata={"phase": "review", "jsonOutput": True},
            )

        if request.capture_output == "all":
            return ExecutorOutput(content="\n\n".join(result.rendered).strip())
        if request.capture_output == "result":
            return ExecutorOutput(content=result.last_assistant_text.strip())
        return None
