"""Shared test fixtures for planexec tests."""

from __future__ import annotations

import io
from pathlib import Path
from typing import Generator

import git
import pytest
from rich.console import Console

from planexec.config import Config
from planexec.output import OutputSink, set_output
from planexec.terminal import set_terminal
from planexec.tunnel.client import set_tunnel_client


@pytest.fixture(autouse=True)
def output_sink() -> Generator[OutputSink, None, None]:
    """Install a quiet output sink and clear process-wide singletons."""
    sink = OutputSink(
        console=Console(file=io.StringIO(), highlight=False),
        err_console=Console(file=io.StringIO(), highlight=False),
    )
    set_output(sink)
    set_tunnel_client(None)
    set_terminal(None)
    yield sink
    set_output(None)
    set_tunnel_client(None)
    set_terminal(None)


@pytest.fixture
def captured_events(output_sink: OutputSink) -> list[dict]:
    """Structured events emitted through the sink during the test."""
    events: list[dict] = []
    output_sink.subscribe(events.append)
    return events


@pytest.fixture
def git_repo(tmp_path: Path) -> git.Repo:
    """Create a temporary git repository with one commit."""
    repo = git.Repo.init(tmp_path)

    # Configure git user for commits
    repo.config_writer().set_value("user", "name", "Test User").release()
    repo.config_writer().set_value("user", "email", "test@example.com").release()

    test_file = tmp_path / "app.py"
    test_file.write_text("# Initial file\n")
    repo.index.add(["app.py"])
    repo.index.commit("Initial commit")

    return repo


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config rooted at a temp directory with a private permission store."""
    return Config(
        repo_path=tmp_path,
        permissions_store_path=tmp_path / "store" / "permissions.yaml",
    )
