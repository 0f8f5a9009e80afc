"""Agent executors: Claude (single-process orchestration) and Codex (role-sequenced)."""

from .base import EXECUTOR_NAMES, Executor, build_executor

__all__ = ["EXECUTOR_NAMES", "Executor", "build_executor"]
