"""Detection of declared agent failures and planning-only implementer turns.

Two independent checks live here:

1. Declared failure: an agent emits a ``FAILED:`` report, optionally followed
   by ``Requirements:``, ``Problems:`` and ``Possible solutions:`` sections.
   The report may appear anywhere in a message body.
2. Planning-only turns: the implementer described what it intends to do but
   the repository fingerprint did not move.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from .models import AgentRole, FailureDetails
from .repository import RepositoryState

logger = logging.getLogger(__name__)


# =============================================================================
# Declared failures
# =============================================================================

# Leading markdown decoration (quotes, headings, emphasis, bullets) is tolerated
FAILED_LINE_RE = re.compile(r"^[\s>#*_`-]*FAILED:[*_`]*\s*(.*)$")

SECTION_RE = re.compile(
    r"^[\s>#*_`-]*(requirements|problems|possible solutions|solutions)[*_`]*\s*:[*_`]*\s*(.*)$",
    re.IGNORECASE,
)

SECTION_KEYS = {
    "requirements": "requirements",
    "problems": "problems",
    "possible solutions": "solutions",
    "solutions": "solutions",
}

# Phrases naming the agent responsible for a failure, checked in order
ROLE_PATTERNS: list[tuple[re.Pattern, AgentRole]] = [
    (re.compile(r"\bimplementer\b", re.IGNORECASE), "implementer"),
    (re.compile(r"\btester\b", re.IGNORECASE), "tester"),
    (re.compile(r"\bverifier\b", re.IGNORECASE), "verifier"),
    (re.compile(r"\bfixer\b", re.IGNORECASE), "fixer"),
    (re.compile(r"\breview(?:er)?\b", re.IGNORECASE), "reviewer"),
]

ROLE_VERB_RE = re.compile(
    r"\b(implementer|tester|verifier|fixer|reviewer|review)\s+"
    r"(?:agent\s+|step\s+)?"
    r"(?:reported|reports|detected|detects|failed|found|hit|encountered|"
    r"could not|cannot|can't|unable|is unable|was unable|blocked)",
    re.IGNORECASE,
)


@dataclass
class FailedReport:
    """Result of scanning a message for a FAILED report."""

    failed: bool
    summary: str = ""
    details: Optional[FailureDetails] = None


def _clean_summary(summary: str) -> str:
    return summary.strip().rstrip("*_`").strip()


def find_failed_line(text: str) -> Optional[tuple[int, str]]:
    """Locate the first FAILED line.

    Args:
        text: Full message body.

    Returns:
        Tuple of (line index, summary) or None when no report is present.
    """
    if not text or "FAILED:" not in text:
        return None
    for index, line in enumerate(text.splitlines()):
        match = FAILED_LINE_RE.match(line)
        if match:
            return index, _clean_summary(match.group(1))
    return None


def _parse_sections(lines: list[str]) -> dict[str, str]:
    sections: dict[str, list[str]] = {}
    current: Optional[str] = None
    for line in lines:
        match = SECTION_RE.match(line)
        if match:
            current = SECTION_KEYS[match.group(1).lower()]
            sections.setdefault(current, [])
            inline = match.group(2).strip()
            if inline:
                sections[current].append(inline)
            continue
        if current is not None:
            sections[current].append(line)
    return {key: "\n".join(body).strip() for key, body in sections.items()}


def detect_failed(text: str) -> FailedReport:
    """Scan the whole of ``text`` for a FAILED report.

    The first FAILED line wins. Sections are read from the lines following it.

    Args:
        text: Message body, possibly with other text before the report.

    Returns:
        FailedReport; ``details`` is None when the report has no sections.
    """
    located = find_failed_line(text)
    if located is None:
        return FailedReport(failed=False)

    index, summary = located
    lines = text.splitlines()
    sections = _parse_sections(lines[index + 1:])

    details = None
    if sections:
        details = FailureDetails(
            requirements=sections.get("requirements", ""),
            problems=sections.get("problems", ""),
            solutions=sections.get("solutions", ""),
            raw=text,
        )

    return FailedReport(failed=True, summary=summary, details=details)


def infer_source_role(text: str, default: AgentRole = "orchestrator") -> AgentRole:
    """Infer which agent reported a failure from its summary.

    Phrases like "Reviewer reported ..." or "Verifier detected ..." name the
    role. A summary that merely opens with a role name also counts.

    Args:
        text: Failure summary (or first line of the report).
        default: Role to use when nothing is recognized.

    Returns:
        The inferred role.
    """
    if not text:
        return default

    match = ROLE_VERB_RE.search(text)
    if match:
        word = match.group(1).lower()
        return "reviewer" if word == "review" else word  # type: ignore[return-value]

    head = text.strip().split(None, 1)
    if head:
        first = head[0].strip(":,*_`").lower()
        for pattern, role in ROLE_PATTERNS:
            if pattern.fullmatch(first):
                return role

    return default


def build_failure_details(report: FailedReport, source_agent: AgentRole, raw: str = "") -> FailureDetails:
    """Produce FailureDetails for a detected report, attributing it to ``source_agent``."""
    if report.details is not None:
        return FailureDetails(
            requirements=report.details.requirements,
            problems=report.details.problems,
            solutions=report.details.solutions,
            source_agent=source_agent,
            raw=raw or report.details.raw,
        )
    return FailureDetails(
        requirements="",
        problems=report.summary or "FAILED",
        source_agent=source_agent,
        raw=raw,
    )


# =============================================================================
# Planning-only detection
# =============================================================================

PLANNING_VERBS = (
    r"investigate|outline|explore|analy[sz]e|examine|research|plan|design|"
    r"look into|review|identify|propose|consider"
)

PLANNING_MARKERS: list[re.Pattern] = [
    re.compile(r"^\s*(?:#+\s*)?[*_]*plan[*_]*\s*:", re.IGNORECASE),
    re.compile(
        r"^\s*(?:#+\s*)?[*_]*(?:implementation plan|proposed plan|proposed changes|next steps)\b",
        re.IGNORECASE,
    ),
    re.compile(rf"^\s*(?:[-*]|\d+[.)])\s*(?:{PLANNING_VERBS})\b", re.IGNORECASE),
    re.compile(
        rf"\b(?:i will|i'll|i am going to|i'm going to|let me|we will|we'll|next,? i(?: will)?)\s+"
        rf"(?:first\s+|now\s+)?(?:{PLANNING_VERBS})\b",
        re.IGNORECASE,
    ),
]


@dataclass
class PlanningDetection:
    """Outcome of comparing an implementer attempt against the repository."""

    detected: bool
    commit_changed: bool = False
    working_tree_changed: bool = False
    planning_indicators: list[str] = field(default_factory=list)
    repository_status_unavailable: bool = False


def find_planning_indicators(output: str) -> list[str]:
    """Return the lines of ``output`` that read like a plan rather than work done."""
    indicators: list[str] = []
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if any(pattern.search(stripped) for pattern in PLANNING_MARKERS):
            if stripped not in indicators:
                indicators.append(stripped)
    return indicators


def detect_planning_without_implementation(
    output: str,
    before: Optional[RepositoryState],
    after: Optional[RepositoryState],
) -> PlanningDetection:
    """Decide whether an implementer attempt only planned.

    Detection requires an unchanged commit, an unchanged working tree and at
    least one planning marker in the output. When either fingerprint is
    unavailable the check is skipped rather than guessed.

    Args:
        output: Final message of the implementer attempt.
        before: Repository fingerprint captured before the attempt.
        after: Repository fingerprint captured after the attempt.

    Returns:
        PlanningDetection result.
    """
    if before is None or after is None or before.status_check_failed or after.status_check_failed:
        return PlanningDetection(detected=False, repository_status_unavailable=True)

    commit_changed = before.commit_hash != after.commit_hash
    working_tree_changed = (
        before.has_changes != after.has_changes or before.diff_hash != after.diff_hash
    )
    indicators = find_planning_indicators(output)

    detected = not commit_changed and not working_tree_changed and bool(indicators)
    if detected:
        logger.debug(f"Planning indicators: {indicators[:3]}")

    return PlanningDetection(
        detected=detected,
        commit_changed=commit_changed,
        working_tree_changed=working_tree_changed,
        planning_indicators=indicators,
    )
