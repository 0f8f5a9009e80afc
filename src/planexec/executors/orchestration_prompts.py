"""Prompt templates for orchestrated runs and single-role agents.

The orchestrator templates wrap a task context with instructions for a
single long-lived Claude session that delegates each role to
``planexec subagent``. The role templates are used directly by the
role-sequenced executor and by ``planexec subagent``.
"""

from __future__ import annotations

import logging
from typing import Optional

from jinja2 import StrictUndefined, Template, UndefinedError

from ..errors import ExecutorError

logger = logging.getLogger(__name__)

SUBAGENT_TIMEOUT_MS = 30 * 60 * 1000

FAILED_PROTOCOL_INSTRUCTIONS = """## Failure Protocol

If the requirements conflict, are impossible, or cannot be satisfied without
changes outside your scope, stop and report instead of guessing. Start your
final message with a line of this form:

FAILED: <one sentence summary>

Then include these sections:

Requirements:
<what was asked>

Problems:
<why it cannot be done as asked>

Possible solutions:
<options for the user>"""


# =============================================================================
# Orchestrator templates
# =============================================================================

_SUBAGENT_COMMAND = (
    "planexec subagent {{ role }}{% if plan_id %} --plan-id {{ plan_id }}{% endif %}"
    "{% if plan_file %} --plan-file {{ plan_file }}{% endif %}"
    '{% if executor %} --executor {{ executor }}{% endif %} --input "<instructions>"'
)

_PROGRESS_SECTION = """
## Progress Updates
{% if plan_file %}
Update the plan file at: {{ plan_file }}
{% else %}
Update the plan file referenced in the task context, if there is one.
{% endif %}
After each successful iteration, update its `## Current Progress` section in
place: what changed, why, and what comes next. Keep lessons learned from review
feedback. Do not add timestamps.
"""

_FAILURE_PROTOCOL = """
## Failure Protocol

- Watch every subagent output for a line starting with "FAILED:".
- If one appears, stop orchestration immediately.
- Your first line must be: FAILED: <agent> reported a failure — <one sentence summary>
  where <agent> is one of: {{ agents | join(" | ") }}
- Then include the subagent's report verbatim (requirements, problems, possible solutions).
- Do not continue to later phases after a failure.
"""

ORCHESTRATION_TEMPLATE = (
    """# Multi-Agent Orchestration Instructions

You are the orchestrator for a multi-agent development workflow. Coordinate the
specialized subagents below to complete the task described at the end. Do not
write code, tests or reviews yourself.

## Available Agents

Invoke each subagent through the Bash tool with a timeout of at least {{ timeout_ms }} ms:
{% for role in roles %}- **{{ role | capitalize }}**: `"""
    + _SUBAGENT_COMMAND
    + """`
{% endfor %}
Large instructions can be written to a file and passed with `--input-file <path>`.

## Workflow Instructions

{% if tdd %}1. **TDD Test Phase**: have the tdd-tests agent write tests first and confirm they fail for the expected reasons.
2. **Implementation Phase**: pass the TDD test output to the implementer and have it make the tests pass.
3. **Testing Phase**: have the tester extend and run the tests, fixing failures.
4. **Review Phase**: run the reviewer on the work done in this run.
5. **Iteration**: if the review finds issues or tests fail, return to step 2 with the feedback.
{% else %}1. **Implementation Phase**: tell the implementer which tasks to work on and give it relevant context.
2. **Testing Phase**: have the tester write tests for the new behavior, run them and fix failures. Tests must exercise the real implementation.
3. **Review Phase**: run the reviewer on the work done in this run. Reviews focus on problems; do not expect praise.
4. **Iteration**: if the review finds issues or tests fail, return to step 1 with the feedback.
{% endif %}
Include relevant output from earlier subagents when invoking the next one.
"""
    + _FAILURE_PROTOCOL
    + _PROGRESS_SECTION
    + """
## Task Context

Below is the original task to complete through this workflow:

---

{{ context }}"""
)

SIMPLE_ORCHESTRATION_TEMPLATE = (
    """# Two-Phase Orchestration Instructions

You are coordinating a streamlined implement → verify workflow for the task
below. Do not implement, verify or edit files yourself.

## Available Agents

Invoke each subagent through the Bash tool with a timeout of at least {{ timeout_ms }} ms:
{% for role in roles %}- **{{ role | capitalize }}**: `"""
    + _SUBAGENT_COMMAND
    + """`
{% endfor %}
## Workflow Instructions

1. **Implementation Phase**: explore the repository, decide on an approach and hand the work to the implementer.
2. **Verification Phase**: have the verifier make sure tests cover the new behavior and that type checking, linting and the test suite pass.
3. **Iteration**: if verification fails, return to the implementer with the issues found.
"""
    + _FAILURE_PROTOCOL
    + _PROGRESS_SECTION
    + """
## Task Context

Below is the original task context to execute with this workflow:

---

{{ context }}"""
)


def _render(template: str, **values) -> str:
    try:
        return Template(template, undefined=StrictUndefined, trim_blocks=False).render(**values)
    except UndefinedError as e:
        raise ExecutorError(f"Prompt template is missing a value: {e}") from e


def wrap_with_orchestration(
    context: str,
    plan_id: str = "",
    plan_file: str = "",
    mode: str = "normal",
    executor: Optional[str] = None,
) -> str:
    """Wrap ``context`` with orchestrator instructions for ``mode`` (normal, simple or tdd)."""
    values = {
        "context": context,
        "plan_id": plan_id,
        "plan_file": plan_file,
        "executor": executor,
        "timeout_ms": SUBAGENT_TIMEOUT_MS,
    }
    if mode == "simple":
        roles = ["implementer", "verifier"]
        return _render(
            SIMPLE_ORCHESTRATION_TEMPLATE,
            roles=roles,
            agents=["implementer", "verifier", "orchestrator"],
            **values,
        )

    tdd = mode == "tdd"
    roles = (["tdd-tests"] if tdd else []) + ["implementer", "tester", "reviewer"]
    agents = roles + ["fixer", "orchestrator"]
    return _render(ORCHESTRATION_TEMPLATE, roles=roles, agents=agents, tdd=tdd, **values)


# =============================================================================
# Role templates
# =============================================================================

ROLE_INSTRUCTIONS = {
    "implementer": """You are the implementer. Make the code changes the task calls for.

- Follow the repository's existing conventions and patterns.
- Once you decide how to implement the tasks, do so immediately. No need to wait for approval.
- Keep changes focused on the tasks in scope.
- In your final message, include the titles of the tasks you completed.""",
    "tdd-tests": """You are the TDD test writer. Write tests for the behavior the task describes before it is implemented.

- Run the tests and confirm they fail for the expected behavioral reasons, not syntax, import or setup errors.
- Do not implement the behavior itself.
- Summarize which tests you added and how they fail.""",
    "tester": """You are the tester. Make sure the implemented behavior is covered by tests that pass.

- Tests must exercise the real implementation code, not a reproduction of it.
- Add tests for new or changed behavior and edge cases.
- Run the test suite and fix failing tests. Report any failures that point to implementation bugs.""",
    "verifier": """You are the verifier. Confirm the implementation is complete and the project is healthy.

- Make sure tests exist for new or changed behavior, adding them where gaps remain.
- Run type checking, linting and the test suite.
- Summarize every command you ran and any failures.""",
    "reviewer": """You are the reviewer. Review the changes made for the tasks in scope.

- Focus on correctness bugs, security problems, resource leaks and missing tests.
- Reference files and lines for each issue.
- Do not modify files.
- End with a verdict line: `VERDICT: ACCEPTABLE` or `VERDICT: NEEDS_FIXES`.""",
    "fixer": """You are the fixer. Address the reviewer-identified issues precisely and minimally.

- Make only the changes required by the fix instructions.
- Prefer small, safe changes over broad refactors.
- Run the relevant tests.
- Summarize what you changed. If you could not address an issue, explain why.""",
}

ROLE_TEMPLATE = """{{ instructions }}{% if extra %}

{{ extra }}{% endif %}
{% if plan_file %}
The plan file for this work is at: {{ plan_file }}{% if plan_id %} (plan {{ plan_id }}){% endif %}
{% endif %}
{{ failed_protocol }}

## Task Context

{{ context }}"""


def role_prompt(
    role: str,
    context: str,
    plan_id: str = "",
    plan_file: str = "",
    extra_instructions: str = "",
) -> str:
    """Full prompt for one role agent.

    Raises:
        ExecutorError: Unknown role.
    """
    instructions = ROLE_INSTRUCTIONS.get(role)
    if instructions is None:
        raise ExecutorError(f"Unknown agent role: {role}")
    return _render(
        ROLE_TEMPLATE,
        instructions=instructions,
        extra=extra_instructions.strip(),
        plan_id=plan_id,
        plan_file=plan_file,
        failed_protocol=FAILED_PROTOCOL_INSTRUCTIONS,
        context=context,
    )
