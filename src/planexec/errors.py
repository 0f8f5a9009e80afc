"""Exception hierarchy for planexec."""

from __future__ import annotations

from typing import Optional


class PlanexecError(Exception):
    """Base class for all planexec errors."""

    pass


class ProcessFailedError(PlanexecError):
    """An agent subprocess died or was killed before producing a result message."""

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        killed_by_inactivity: bool = False,
    ):
        super().__init__(message)
        self.exit_code = exit_code
        self.killed_by_inactivity = killed_by_inactivity


class ExecutorError(PlanexecError):
    """An executor could not run (missing CLI, bad configuration, exhausted retries)."""

    pass


class PromptTimeoutError(PlanexecError):
    """An interactive prompt received no answer before its deadline."""

    pass


class PromptUnavailableError(PlanexecError):
    """No terminal, tunnel or remote monitor is available to answer a prompt."""

    pass


class TunnelError(PlanexecError):
    """Transport failure on the tunnel or headless connection."""

    pass
