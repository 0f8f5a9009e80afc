"""Context handed from one role agent to the next in role-sequenced runs."""

from __future__ import annotations

import re
from typing import Literal, Sequence

from .orchestration_prompts import FAILED_PROTOCOL_INSTRUCTIONS

ReviewVerdict = Literal["ACCEPTABLE", "NEEDS_FIXES"]

VERDICT_RE = re.compile(r"VERDICT:\s*\**\s*(ACCEPTABLE|NEEDS_FIXES)", re.IGNORECASE)


def _bullets(titles: Sequence[str]) -> str:
    return "- " + "\n- ".join(titles)


def compose_tester_context(context: str, implementer_output: str, newly_completed: Sequence[str] = ()) -> str:
    """Original context plus what the implementer reported."""
    composed = f"{context}\n\n### Implementer Output\n{implementer_output}"
    if newly_completed:
        composed += f"\n\n### Newly Completed Tasks\n{_bullets(newly_completed)}"
    return composed


def compose_reviewer_context(
    context: str,
    implementer_output: str,
    tester_output: str,
    completed: Sequence[str] = (),
    pending: Sequence[str] = (),
) -> str:
    composed = context
    if completed:
        composed += f"\n\n### Completed Tasks\n{_bullets(completed)}"
    if pending:
        composed += f"\n\n### Pending Tasks\n{_bullets(pending)}"
    composed += f"\n\n### Initial Implementation Output\n{implementer_output}"
    composed += f"\n\n### Initial Testing Output\n{tester_output}"
    return composed


def compose_verifier_context(
    context: str,
    implementer_output: str,
    previously_completed: Sequence[str] = (),
    pending: Sequence[str] = (),
    newly_completed: Sequence[str] = (),
) -> str:
    composed = context
    if previously_completed:
        composed += f"\n\n### Completed Tasks Before This Run\n{_bullets(previously_completed)}"
    if pending:
        composed += f"\n\n### Pending Tasks Prior to Verification\n{_bullets(pending)}"
    if newly_completed:
        composed += f"\n\n### Newly Completed Tasks From Implementer\n{_bullets(newly_completed)}"
    composed += f"\n\n### Implementer Output Summary\n{implementer_output}"
    return composed


def compose_fix_review_context(context: str, review_issues: str, fixer_output: str) -> str:
    """Prompt for re-reviewing after a fixer pass."""
    return f"""You are a fix verification assistant. The reviewer found issues in an
implementation and the implementer attempted to fix them. Decide whether the
issues were addressed.

## Original Task Context

{context}

## Previous Review Issues

{review_issues}

## Implementer's Response

{fixer_output}

## Instructions

1. Check each previous issue against the current code.
2. Issues the implementer explains as intentional or out of scope count as addressed when the explanation holds up.
3. Only report issues that are still unresolved.

End your response with exactly one verdict line:

**VERDICT:** NEEDS_FIXES | ACCEPTABLE

Use ACCEPTABLE when every issue is resolved or adequately explained, NEEDS_FIXES otherwise,
followed by the remaining issues."""


def get_fixer_prompt(
    implementer_output: str,
    tester_output: str,
    review_instructions: str,
    completed: Sequence[str] = (),
) -> str:
    """Prompt for the fixer agent after a NEEDS_FIXES verdict."""
    tasks = _bullets(completed) if completed else "(none)"
    return f"""You are a fixer agent focused on addressing reviewer-identified issues precisely and minimally.

## Completed Tasks (in scope)
{tasks}

## Initial Implementation Notes
{implementer_output}

## Testing Agent Output
{tester_output}

## Review Instructions
{review_instructions}

## Your Job
1. Make only the changes required to address the review instructions.
2. Prefer small, safe changes and keep behavior consistent with the tasks in scope.
3. Run the relevant tests and fix failures you introduce.
4. Summarize what you changed. If an issue is out of scope or intentional, explain why.

{FAILED_PROTOCOL_INSTRUCTIONS}"""


def parse_review_verdict(text: str) -> ReviewVerdict:
    """Last verdict line in ``text``; NEEDS_FIXES when none is present."""
    matches = VERDICT_RE.findall(text or "")
    if not matches:
        return "NEEDS_FIXES"
    return "ACCEPTABLE" if matches[-1].upper() == "ACCEPTABLE" else "NEEDS_FIXES"
