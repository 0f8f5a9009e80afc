"""Main entry point for running planexec as a module.

Usage:
    python -m planexec --help
    python -m planexec run context.md --executor codex --mode simple
    python -m planexec monitor --port 8765
"""

from __future__ import annotations

from .cli import app

if __name__ == "__main__":
    app()
