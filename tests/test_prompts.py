"""Tests for orchestration prompts and role context composition."""

from __future__ import annotations

import pytest

from planexec.errors import ExecutorError
from planexec.executors.context_composition import (
    compose_fix_review_context,
    compose_reviewer_context,
    compose_tester_context,
    compose_verifier_context,
    get_fixer_prompt,
    parse_review_verdict,
)
from planexec.executors.orchestration_prompts import (
    ROLE_INSTRUCTIONS,
    SUBAGENT_TIMEOUT_MS,
    role_prompt,
    wrap_with_orchestration,
)

CONTEXT = "## Task\nAdd a --json flag to the export command."


class TestWrapWithOrchestration:
    """Tests for wrap_with_orchestration."""

    def test_normal_mode(self) -> None:
        """Test the multi-agent template."""
        prompt = wrap_with_orchestration(CONTEXT, plan_id="42", plan_file="plans/42.md")

        assert prompt.startswith("# Multi-Agent Orchestration Instructions")
        assert prompt.rstrip().endswith("Add a --json flag to the export command.")
        assert "planexec subagent implementer --plan-id 42 --plan-file plans/42.md" in prompt
        assert "planexec subagent tester" in prompt
        assert "planexec subagent reviewer" in prompt
        assert "tdd-tests" not in prompt
        assert str(SUBAGENT_TIMEOUT_MS) in prompt
        assert "implementer | tester | reviewer | fixer | orchestrator" in prompt
        assert "Update the plan file at: plans/42.md" in prompt

    def test_tdd_mode(self) -> None:
        """Test that TDD adds the test-first agent and phase."""
        prompt = wrap_with_orchestration(CONTEXT, mode="tdd")

        assert "planexec subagent tdd-tests" in prompt
        assert "TDD Test Phase" in prompt
        assert "--plan-id" not in prompt

    def test_simple_mode(self) -> None:
        """Test the two-phase template."""
        prompt = wrap_with_orchestration(CONTEXT, mode="simple", executor="codex")

        assert prompt.startswith("# Two-Phase Orchestration Instructions")
        assert "planexec subagent implementer --executor codex" in prompt
        assert "planexec subagent verifier --executor codex" in prompt
        assert "planexec subagent reviewer" not in prompt
        assert "implementer | verifier | orchestrator" in prompt

    def test_context_is_not_templated(self) -> None:
        """Test that template syntax inside the context is kept verbatim."""
        prompt = wrap_with_orchestration("Render {{ name }} and {% raw %}")
        assert "Render {{ name }} and {% raw %}" in prompt


class TestRolePrompt:
    """Tests for role_prompt."""

    def test_every_role_renders(self) -> None:
        """Test each known role with the failure protocol."""
        for role in ROLE_INSTRUCTIONS:
            prompt = role_prompt(role, CONTEXT)
            assert "## Failure Protocol" in prompt
            assert prompt.rstrip().endswith("export command.")

    def test_plan_and_extra_instructions(self) -> None:
        """Test optional sections."""
        prompt = role_prompt("implementer", CONTEXT, plan_id="7", plan_file="p.md", extra_instructions="Work test-first.")

        assert "Work test-first." in prompt
        assert "The plan file for this work is at: p.md (plan 7)" in prompt

    def test_unknown_role(self) -> None:
        """Test that an unknown role raises."""
        with pytest.raises(ExecutorError):
            role_prompt("designer", CONTEXT)


class TestContextComposition:
    """Tests for context handed between role steps."""

    def test_tester_context(self) -> None:
        """Test implementer output and completed tasks."""
        composed = compose_tester_context(CONTEXT, "Changed export.py", newly_completed=["Add flag"])

        assert composed.startswith(CONTEXT)
        assert "### Implementer Output\nChanged export.py" in composed
        assert "### Newly Completed Tasks\n- Add flag" in composed

    def test_reviewer_context(self) -> None:
        """Test task lists and both step outputs."""
        composed = compose_reviewer_context(CONTEXT, "impl", "tests", completed=["A"], pending=["B", "C"])

        assert "### Completed Tasks\n- A" in composed
        assert "### Pending Tasks\n- B\n- C" in composed
        assert composed.index("### Initial Implementation Output") < composed.index("### Initial Testing Output")

    def test_verifier_context(self) -> None:
        """Test that the implementer summary comes last."""
        composed = compose_verifier_context(CONTEXT, "impl summary")

        assert composed.endswith("### Implementer Output Summary\nimpl summary")
        assert "Completed Tasks Before This Run" not in composed

    def test_fix_review_context(self) -> None:
        """Test the re-review prompt."""
        composed = compose_fix_review_context(CONTEXT, "Missing tests", "Added tests")

        assert "fix verification assistant" in composed
        assert "Missing tests" in composed
        assert "Added tests" in composed
        assert "**VERDICT:** NEEDS_FIXES | ACCEPTABLE" in composed

    def test_fixer_prompt(self) -> None:
        """Test the fixer prompt carries earlier outputs."""
        prompt = get_fixer_prompt("impl", "tests", "Fix the off-by-one", completed=["Task 1"])

        assert prompt.startswith("You are a fixer agent")
        assert "- Task 1" in prompt
        assert "Fix the off-by-one" in prompt
        assert "FAILED:" in prompt


class TestParseReviewVerdict:
    """Tests for parse_review_verdict."""

    def test_plain_and_bold(self) -> None:
        """Test verdict line variants."""
        assert parse_review_verdict("All good.\nVERDICT: ACCEPTABLE") == "ACCEPTABLE"
        assert parse_review_verdict("**VERDICT:** ACCEPTABLE") == "ACCEPTABLE"
        assert parse_review_verdict("verdict: needs_fixes") == "NEEDS_FIXES"

    def test_last_verdict_wins(self) -> None:
        """Test a response quoting an earlier verdict."""
        text = "Previous review said VERDICT: NEEDS_FIXES\n\nNow fixed.\nVERDICT: ACCEPTABLE"
        assert parse_review_verdict(text) == "ACCEPTABLE"

    def test_missing_verdict(self) -> None:
        """Test the conservative default."""
        assert parse_review_verdict("Looks fine to me.") == "NEEDS_FIXES"
        assert parse_review_verdict("") == "NEEDS_FIXES"
