"""Role-sequenced orchestration: one agent call per role, driven from here.

Used by the Codex executor, which has no long-lived session to delegate
to. Each mode runs a fixed sequence of role steps, passing context from
one to the next:

- normal: implementer, tester, reviewer, then fixer / re-review rounds;
- tdd: normal with test-first instructions for the implementer;
- simple: implementer, then verifier;
- review: reviewer only;
- bare: the raw context as a single step.

The implementer step is retried when it only produced a plan without
touching the repository.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from pathlib import Path
from typing import Awaitable, Callable, Optional

from ..errors import PlanexecError
from ..failure_detection import build_failure_details, detect_failed, detect_planning_without_implementation
from ..models import AgentRole, ExecutionRequest, ExecutorOutput, FailureDetails, OutputStep
from ..output import StructuredEventType, get_output
from ..repository import capture_repository_state
from .context_composition import (
    compose_fix_review_context,
    compose_reviewer_context,
    compose_tester_context,
    compose_verifier_context,
    get_fixer_prompt,
    parse_review_verdict,
)
from .orchestration_prompts import role_prompt

logger = logging.getLogger(__name__)

# A step runner takes a full prompt and returns the agent's final message
StepRunner = Callable[[str], Awaitable[str]]

MAX_IMPLEMENTER_ATTEMPTS = 4
MAX_FIX_ITERATIONS = 7
MAX_LOGGED_INDICATORS = 2
MAX_INDICATOR_LENGTH = 120

PLANNING_RETRY_SUFFIXES = (
    "Please implement the changes now, not just plan them.",
    "IMPORTANT: Execute the actual code changes immediately.",
    "CRITICAL: You must write actual code files NOW.",
)

TDD_INSTRUCTIONS = """Work test-first:
1. Write failing tests for the behavior described in the task before touching the implementation.
2. Run them and confirm they fail for the expected behavioral reasons.
3. Implement the behavior until those tests pass, without weakening the tests."""

STEP_TITLES: dict[str, str] = {
    "implementer": "Implementer",
    "tester": "Tester",
    "reviewer": "Reviewer",
    "verifier": "Verifier",
    "fixer": "Fixer",
    "bare": "Agent",
}


class StepFailed(PlanexecError):
    """A role step declared a FAILED report."""

    def __init__(self, role: AgentRole, summary: str, details: FailureDetails, output: str):
        super().__init__(f"{role} reported a failure: {summary}")
        self.role = role
        self.summary = summary
        self.details = details
        self.output = output


class StepRecorder:
    """Collects step outputs under numbered titles ("Tester", "Tester #2", ...)."""

    def __init__(self) -> None:
        self.steps: list[OutputStep] = []
        self._roles: list[str] = []
        self._counts: Counter = Counter()

    def record(self, role: str, body: str) -> OutputStep:
        self._counts[role] += 1
        title = STEP_TITLES.get(role, role.capitalize())
        if self._counts[role] > 1:
            title = f"{title} #{self._counts[role]}"
        step = OutputStep(title=title, body=body.strip())
        self.steps.append(step)
        self._roles.append(role)
        return step

    def final_content(self) -> str:
        """Last reviewer or verifier message, else the last message."""
        for role, step in zip(reversed(self._roles), reversed(self.steps)):
            if role in ("reviewer", "verifier"):
                return step.body
        return self.steps[-1].body if self.steps else ""


def _format_indicators(indicators: list[str]) -> str:
    shown = [line[:MAX_INDICATOR_LENGTH] for line in indicators[:MAX_LOGGED_INDICATORS]]
    return " | ".join(shown) if shown else "<no indicators captured>"


class RoleSequence:
    """Runs one request as a sequence of role steps.

    Args:
        request: The execution request.
        cwd: Repository the agents work in; fingerprinted around implementer attempts.
        step_runner: Coroutine function running one prompt to completion.
    """

    def __init__(self, request: ExecutionRequest, cwd: Path, step_runner: StepRunner):
        self.request = request
        self.cwd = Path(cwd)
        self.step_runner = step_runner
        self.recorder = StepRecorder()
        self.step_number = 0

    def _prompt(self, role: str, context: str, extra_instructions: str = "") -> str:
        return role_prompt(
            role,
            context,
            plan_id=self.request.plan_id,
            plan_file=self.request.plan_file_path,
            extra_instructions=extra_instructions,
        )

    # =========================================================================
    # Steps
    # =========================================================================

    async def run_step(
        self,
        role: AgentRole,
        prompt: str,
        message: str,
        attempt: Optional[int] = None,
        end_summary: Optional[str] = None,
    ) -> str:
        """Run one role step, emitting start/end events and recording its output.

        Raises:
            StepFailed: The agent declared a FAILED report.
        """
        output = get_output()
        title = STEP_TITLES.get(role, role.capitalize())
        self.step_number += 1
        start = {"phase": role, "stepNumber": self.step_number, "message": message}
        if attempt is not None:
            start["attempt"] = attempt
        output.emit(StructuredEventType.AGENT_STEP_START, start)
        logger.info(message)

        try:
            result = await self.step_runner(prompt)
        except PlanexecError as exc:
            output.emit(
                StructuredEventType.AGENT_STEP_END,
                {"phase": role, "success": False, "summary": str(exc)},
            )
            raise

        self.recorder.record(role, result)

        report = detect_failed(result)
        if report.failed:
            details = build_failure_details(report, role, raw=result)
            output.emit(
                StructuredEventType.AGENT_STEP_END,
                {"phase": role, "success": False, "summary": f"{title} reported failure: {report.summary}"},
            )
            output.emit(StructuredEventType.FAILURE_REPORT, {"summary": report.summary, **details.to_dict()})
            logger.error(f"{title} reported failure: {report.summary}")
            raise StepFailed(role, report.summary, details, result)

        output.emit(
            StructuredEventType.AGENT_STEP_END,
            {"phase": role, "success": True, "summary": end_summary or f"{title} output captured."},
        )
        return result

    async def run_implementer(self, prompt: str) -> str:
        """Run the implementer, retrying while it only plans.

        Each attempt is bracketed by repository fingerprints. An attempt that
        left the repository untouched and reads like a plan is retried with
        progressively firmer instructions, up to MAX_IMPLEMENTER_ATTEMPTS.
        """
        planning_only_attempts = 0
        result = ""

        for attempt in range(1, MAX_IMPLEMENTER_ATTEMPTS + 1):
            attempt_prompt = prompt
            if attempt > 1:
                attempt_prompt = f"{prompt}\n\n{PLANNING_RETRY_SUFFIXES[attempt - 2]}"

            before = await asyncio.to_thread(capture_repository_state, self.cwd)
            result = await self.run_step(
                "implementer",
                attempt_prompt,
                "Running implementer..." if attempt == 1 else f"Running implementer (attempt {attempt})...",
                attempt=attempt,
            )
            after = await asyncio.to_thread(capture_repository_state, self.cwd)

            detection = detect_planning_without_implementation(result, before, after)
            if detection.repository_status_unavailable:
                logger.warning(
                    f"Could not verify repository state after implementer attempt "
                    f"{attempt}/{MAX_IMPLEMENTER_ATTEMPTS}; skipping planning-only detection for this attempt."
                )
                return result

            if not detection.detected:
                if planning_only_attempts:
                    logger.info(
                        f"Implementer produced repository changes after {planning_only_attempts} "
                        f"planning-only attempt(s) (resolved on attempt {attempt}/{MAX_IMPLEMENTER_ATTEMPTS})."
                    )
                return result

            planning_only_attempts += 1
            get_output().emit(
                StructuredEventType.LLM_STATUS,
                {
                    "phase": "implementer",
                    "status": "planning_only",
                    "attempt": attempt,
                    "commitChanged": detection.commit_changed,
                    "workingTreeChanged": detection.working_tree_changed,
                    "indicators": detection.planning_indicators[:MAX_LOGGED_INDICATORS],
                },
            )
            logger.warning(
                f"Implementer attempt {attempt}/{MAX_IMPLEMENTER_ATTEMPTS} produced planning output without "
                f"repository changes (commit changed: {detection.commit_changed}, working tree changed: "
                f"{detection.working_tree_changed}). Indicators: {_format_indicators(detection.planning_indicators)}"
            )
            if attempt < MAX_IMPLEMENTER_ATTEMPTS:
                logger.info(
                    f"Retrying implementer with more explicit instructions "
                    f"(attempt {attempt + 1}/{MAX_IMPLEMENTER_ATTEMPTS})..."
                )

        logger.warning(
            f"Implementer planned without executing changes after exhausting "
            f"{MAX_IMPLEMENTER_ATTEMPTS} attempts; continuing to tester."
        )
        return result

    def _verdict(self, review: str, iteration: int) -> str:
        verdict = parse_review_verdict(review)
        get_output().emit(StructuredEventType.REVIEW_VERDICT, {"verdict": verdict, "iteration": iteration})
        logger.info(f"Review verdict: {verdict}")
        return verdict

    # =========================================================================
    # Modes
    # =========================================================================

    async def run_normal(self, tdd: bool = False) -> None:
        context = self.request.context
        implementer = await self.run_implementer(
            self._prompt("implementer", context, TDD_INSTRUCTIONS if tdd else "")
        )
        tester = await self.run_step(
            "tester",
            self._prompt("tester", compose_tester_context(context, implementer)),
            "Running tester...",
        )
        review = await self.run_step(
            "reviewer",
            self._prompt("reviewer", compose_reviewer_context(context, implementer, tester)),
            "Running reviewer...",
        )

        iteration = 0
        verdict = self._verdict(review, iteration)
        while verdict == "NEEDS_FIXES":
            if iteration >= MAX_FIX_ITERATIONS:
                logger.warning(
                    f"Maximum fix iterations reached ({MAX_FIX_ITERATIONS}) and reviewer still reports issues. "
                    "Exiting with warnings."
                )
                return
            iteration += 1
            logger.info(f"Issues: {review}")
            fixer = await self.run_step(
                "fixer",
                get_fixer_prompt(implementer, tester, review),
                f"Running fixer (iteration {iteration}/{MAX_FIX_ITERATIONS})...",
                end_summary="Fixer output captured. Re-running reviewer...",
            )
            review = await self.run_step(
                "reviewer",
                compose_fix_review_context(context, review, fixer),
                "Re-running reviewer...",
            )
            verdict = self._verdict(review, iteration)

    async def run_simple(self) -> None:
        context = self.request.context
        implementer = await self.run_implementer(self._prompt("implementer", context))
        await self.run_step(
            "verifier",
            self._prompt("verifier", compose_verifier_context(context, implementer)),
            "Running verifier...",
        )

    async def run_review(self) -> None:
        await self.run_step("reviewer", self._prompt("reviewer", self.request.context), "Running reviewer...")

    async def run_bare(self) -> None:
        await self.run_step("bare", self.request.context, "Running agent...")

    async def run(self) -> Optional[ExecutorOutput]:
        """Run the request's mode.

        Returns:
            Aggregated output when capture is enabled, a failed output when a
            step declared FAILED, otherwise None.
        """
        mode = self.request.mode
        try:
            if mode == "simple":
                await self.run_simple()
            elif mode == "review":
                await self.run_review()
            elif mode == "bare":
                await self.run_bare()
            else:
                await self.run_normal(tdd=mode == "tdd")
        except StepFailed as failure:
            return ExecutorOutput(
                content=failure.output.strip(),
                steps=list(self.recorder.steps),
                metadata={"phase": failure.role},
                success=False,
                failure_details=failure.details,
            )

        if self.request.capture_output in ("result", "all"):
            return ExecutorOutput(
                content=self.recorder.final_content(),
                steps=list(self.recorder.steps),
                metadata={"phase": mode},
            )
        return None
