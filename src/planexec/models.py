"""Core data types shared by the runner, detectors and executors."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

# Type aliases for the run-level selectors
ExecutionMode = Literal["normal", "simple", "tdd", "review", "bare"]
CaptureMode = Literal["none", "result", "all"]
AgentRole = Literal[
    "implementer",
    "tester",
    "reviewer",
    "verifier",
    "fixer",
    "orchestrator",
    "bare",
]

EXECUTION_MODES: tuple[str, ...] = ("normal", "simple", "tdd", "review", "bare")
CAPTURE_MODES: tuple[str, ...] = ("none", "result", "all")


@dataclass(frozen=True)
class ExecutionRequest:
    """Everything an executor needs for one run. Immutable for the run."""

    context: str
    plan_id: str = ""
    plan_title: str = ""
    plan_file_path: str = ""
    mode: ExecutionMode = "normal"
    capture_output: CaptureMode = "none"
    model: Optional[str] = None
    interactive: bool = True


@dataclass
class StreamMessage:
    """One parsed line of agent output."""

    type: str
    text: Optional[str] = None  # rendered for display
    raw_text: str = ""  # concatenated text blocks, no decoration
    file_paths: list[str] = field(default_factory=list)
    failed: bool = False
    failed_summary: Optional[str] = None
    structured_output: Any = None
    session_id: Optional[str] = None

    @property
    def is_result(self) -> bool:
        """Whether this is the terminal result message of a session."""
        return self.type == "result"


@dataclass
class FailureDetails:
    """Details of a declared FAILED report."""

    requirements: str = ""
    problems: str = ""
    solutions: str = ""
    source_agent: AgentRole = "orchestrator"
    raw: str = ""

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "requirements": self.requirements,
            "problems": self.problems,
            "solutions": self.solutions,
            "sourceAgent": self.source_agent,
        }


@dataclass
class OutputStep:
    """A titled section of aggregated executor output."""

    title: str
    body: str


@dataclass
class ExecutorOutput:
    """The single value an executor hands back to its caller."""

    content: str = ""
    steps: list[OutputStep] = field(default_factory=list)
    structured: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    failure_details: Optional[FailureDetails] = None

    def to_markdown(self) -> str:
        """Render the output as a markdown summary."""
        lines = [
            "# Execution Summary",
            "",
            f"**Status:** {'Success' if self.success else 'Failed'}",
            "",
        ]

        if self.failure_details:
            details = self.failure_details
            lines.append(f"**Failure source:** {details.source_agent}")
            lines.append("")
            for heading, body in (
                ("Requirements", details.requirements),
                ("Problems", details.problems),
                ("Possible solutions", details.solutions),
            ):
                if body:
                    lines.extend([f"## {heading}", "", body, ""])

        for step in self.steps:
            lines.extend([f"## {step.title}", "", step.body, ""])

        if not self.steps and self.content:
            lines.append(self.content)

        return "\n".join(lines).rstrip() + "\n"
