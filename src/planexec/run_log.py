"""JSON run log.

Subscribes to the output sink's structured events and writes one JSON
file per run, recording agent steps, implementer attempts, planning-only
detections, permission decisions and the final outcome.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from .models import ExecutorOutput
from .output import OutputSink, StructuredEventType

logger = logging.getLogger(__name__)


@dataclass
class RunStats:
    """Counters for one run."""

    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    steps_started: int = 0
    steps_failed: int = 0
    implementer_attempts: int = 0
    planning_only_detections: int = 0
    fix_iterations: int = 0
    permissions_approved: int = 0
    permissions_denied: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "steps": {
                "started": self.steps_started,
                "failed": self.steps_failed,
            },
            "implementer": {
                "attempts": self.implementer_attempts,
                "planning_only": self.planning_only_detections,
            },
            "fix_iterations": self.fix_iterations,
            "permissions": {
                "approved": self.permissions_approved,
                "denied": self.permissions_denied,
            },
        }


class RunLogger:
    """Collects a run's structured events into ``<log-dir>/<timestamp>_<plan>.json``."""

    def __init__(self, log_dir: Path, plan_name: str = "run", executor: str = "", mode: str = ""):
        """Initialize the run logger.

        Args:
            log_dir: Directory for log files. Created if missing.
            plan_name: Plan id or title, used in the file name.
            executor: Executor name.
            mode: Execution mode.
        """
        self.log_dir = Path(log_dir)
        self.stats = RunStats()
        self.log_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        safe_plan = "".join(c if c.isalnum() else "_" for c in plan_name[:30]) or "run"
        self.log_file = self.log_dir / f"{timestamp}_{safe_plan}.json"

        self.log_data: dict = {
            "session": {
                "id": timestamp,
                "plan": plan_name,
                "executor": executor,
                "mode": mode,
                "start_time": self.stats.start_time.isoformat(),
            },
            "steps": [],
            "planning_only": [],
            "failures": [],
            "verdicts": [],
            "permissions": [],
        }
        self._sink: Optional[OutputSink] = None
        logger.debug(f"Run logger initialized: {self.log_file}")

    def attach(self, sink: OutputSink) -> None:
        self._sink = sink
        sink.subscribe(self.handle_event)

    def detach(self) -> None:
        if self._sink is not None:
            self._sink.unsubscribe(self.handle_event)
            self._sink = None

    def handle_event(self, message: dict) -> None:
        """Fold one structured event message into the log."""
        kind = message.get("type")
        timestamp = message.get("timestamp") or datetime.now().isoformat()

        if kind == StructuredEventType.AGENT_STEP_START.value:
            self.stats.steps_started += 1
            if message.get("phase") == "implementer":
                self.stats.implementer_attempts += 1
            if message.get("phase") == "fixer":
                self.stats.fix_iterations += 1
            self.log_data["steps"].append({
                "phase": message.get("phase"),
                "attempt": message.get("attempt"),
                "message": message.get("message"),
                "start_time": timestamp,
            })
        elif kind == StructuredEventType.AGENT_STEP_END.value:
            if not message.get("success", True):
                self.stats.steps_failed += 1
            for step in reversed(self.log_data["steps"]):
                if step["phase"] == message.get("phase") and "end_time" not in step:
                    step["end_time"] = timestamp
                    step["success"] = message.get("success")
                    step["summary"] = message.get("summary")
                    break
        elif kind == StructuredEventType.LLM_STATUS.value and message.get("status") == "planning_only":
            self.stats.planning_only_detections += 1
            self.log_data["planning_only"].append({
                "attempt": message.get("attempt"),
                "commit_changed": message.get("commitChanged"),
                "working_tree_changed": message.get("workingTreeChanged"),
                "indicators": message.get("indicators") or [],
                "timestamp": timestamp,
            })
        elif kind == StructuredEventType.FAILURE_REPORT.value:
            self.log_data["failures"].append({
                "summary": message.get("summary"),
                "source_agent": message.get("sourceAgent"),
                "timestamp": timestamp,
            })
        elif kind == StructuredEventType.REVIEW_VERDICT.value:
            self.log_data["verdicts"].append({
                "verdict": message.get("verdict"),
                "iteration": message.get("iteration"),
                "timestamp": timestamp,
            })
        elif kind == StructuredEventType.PERMISSION_DECISION.value:
            if message.get("approved"):
                self.stats.permissions_approved += 1
            else:
                self.stats.permissions_denied += 1
            self.log_data["permissions"].append({
                "tool": message.get("toolName"),
                "approved": message.get("approved"),
                "source": message.get("source"),
                "timestamp": timestamp,
            })

    def log_error(self, error: str) -> None:
        self.log_data.setdefault("errors", []).append({
            "timestamp": datetime.now().isoformat(),
            "error": error,
        })

    def finalize(self, success: bool, result: Optional[ExecutorOutput] = None) -> None:
        """Finalize the log and write it to disk."""
        self.detach()
        self.stats.end_time = datetime.now()

        session = self.log_data["session"]
        session["end_time"] = self.stats.end_time.isoformat()
        session["success"] = success
        if result is not None:
            session["content"] = result.content
            if result.failure_details is not None:
                session["failure"] = result.failure_details.to_dict()
        self.log_data["stats"] = self.stats.to_dict()

        try:
            with open(self.log_file, "w", encoding="utf-8") as f:
                json.dump(self.log_data, f, indent=2)
            logger.info(f"Run log written to: {self.log_file}")
        except OSError as e:
            logger.error(f"Failed to write run log: {e}")
