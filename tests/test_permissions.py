"""Tests for permission brokering."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from fastmcp import FastMCP

from planexec.errors import PromptTimeoutError
from planexec.permissions.allow_list import AllowList, command_matches_prefix, parse_rule
from planexec.permissions.broker import (
    ALLOW,
    ALWAYS_ALLOW,
    DISALLOW,
    SESSION_ALLOW,
    PermissionBroker,
    PermissionOptions,
    parse_rm_command,
    prefix_candidates,
)
from planexec.permissions.mcp_server import (
    PermissionSocketClient,
    approval_response,
    create_permissions_mcp,
)
from planexec.permissions.mcp_setup import build_mcp_config, setup_permissions_mcp
from planexec.permissions.settings_file import add_allow_rule, load_allow_rules, settings_path
from planexec.permissions.store import SharedPermissionStore


# =============================================================================
# Allow list
# =============================================================================


class TestAllowList:
    """Tests for rule parsing and matching."""

    def test_parse_rule(self) -> None:
        """Test the supported rule forms."""
        assert parse_rule("Edit").tool == "Edit"
        assert parse_rule("Bash(git commit:*)").prefix == "git commit"
        assert parse_rule("Bash(make)").exact == "make"
        assert parse_rule("") is None
        assert parse_rule("Bash(unclosed") is None
        assert parse_rule("Read(src/*)") is None

    def test_prefix_word_boundary(self) -> None:
        """Test that a prefix stops at a word boundary."""
        assert command_matches_prefix("git commit -m 'x'", "git commit")
        assert command_matches_prefix("git commit", "git commit")
        assert not command_matches_prefix("git commit-tree abc", "git commit")
        assert not command_matches_prefix("git commit-to-branch", "git commit")
        assert not command_matches_prefix("git committer", "git commit")
        assert command_matches_prefix("./scripts/run.sh", "./scripts/")

    def test_is_allowed(self) -> None:
        """Test tool, prefix and exact approvals."""
        allow_list = AllowList.from_rules(["Edit", "Bash(npm test:*)", "Bash(make)"])

        assert allow_list.is_allowed("Edit", {"file_path": "a.py"})
        assert allow_list.is_allowed("Bash", {"command": "npm test -- --watch=false"})
        assert allow_list.is_allowed("Bash", {"command": "make"})
        assert not allow_list.is_allowed("Bash", {"command": "make install"})
        assert not allow_list.is_allowed("Bash", {"command": "npm testing"})
        assert not allow_list.is_allowed("Write", {"file_path": "a.py"})
        assert not allow_list.is_allowed("Bash", "npm test")

    def test_rules_round_trip(self) -> None:
        """Test that to_rules reproduces the added rules."""
        rules = ["Edit", "Bash(npm test:*)", "Bash(make)"]
        assert sorted(AllowList.from_rules(rules).to_rules()) == sorted(rules)

    def test_add_rule_idempotent(self) -> None:
        """Test adding the same rule twice."""
        allow_list = AllowList()
        assert allow_list.add_rule("Bash(ls:*)") is True
        assert allow_list.add_rule("Bash(ls:*)") is False


# =============================================================================
# rm parsing
# =============================================================================


class TestParseRmCommand:
    """Tests for parse_rm_command."""

    def test_plain_rm(self, tmp_path: Path) -> None:
        """Test flags are skipped and paths resolved."""
        paths = parse_rm_command("rm -f build/out.txt 'notes file.md'", tmp_path)
        assert paths == [str(tmp_path / "build" / "out.txt"), str(tmp_path / "notes file.md")]

    def test_rejected_forms(self, tmp_path: Path) -> None:
        """Test commands that must never be auto-approved."""
        assert parse_rm_command("rm a.txt && rm -rf /", tmp_path) == []
        assert parse_rm_command("rm a.txt; ls", tmp_path) == []
        assert parse_rm_command("rm $(cat list)", tmp_path) == []
        assert parse_rm_command("rm 'unbalanced", tmp_path) == []
        assert parse_rm_command("rmdir build", tmp_path) == []
        assert parse_rm_command("rm *.pyc", tmp_path) == []


# =============================================================================
# Persistence
# =============================================================================


class TestSettingsFile:
    """Tests for .claude/settings.local.json handling."""

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test the empty default."""
        assert load_allow_rules(tmp_path) == []

    def test_add_rule_preserves_other_keys(self, tmp_path: Path) -> None:
        """Test that unrelated settings survive a write."""
        path = settings_path(tmp_path)
        path.parent.mkdir()
        path.write_text(json.dumps({"env": {"A": "1"}, "permissions": {"allow": ["Edit"]}}))

        assert add_allow_rule(tmp_path, "Bash(ls:*)") is True
        assert add_allow_rule(tmp_path, "Bash(ls:*)") is False

        data = json.loads(path.read_text())
        assert data["env"] == {"A": "1"}
        assert data["permissions"]["allow"] == ["Edit", "Bash(ls:*)"]
        assert data["permissions"]["deny"] == []

    def test_corrupt_file(self, tmp_path: Path) -> None:
        """Test that unreadable settings fall back to empty."""
        path = settings_path(tmp_path)
        path.parent.mkdir()
        path.write_text("{broken")

        assert load_allow_rules(tmp_path) == []


class TestSharedPermissionStore:
    """Tests for SharedPermissionStore."""

    def test_rules_per_repository(self, tmp_path: Path) -> None:
        """Test that rules are keyed by repository."""
        store = SharedPermissionStore(tmp_path / "nested" / "permissions.yaml")

        assert store.add_rule("git@host:a/one.git", "Bash(npm test:*)") is True
        assert store.add_rule("git@host:a/one.git", "Bash(npm test:*)") is False
        store.add_rule("git@host:a/two.git", "Edit")

        reopened = SharedPermissionStore(tmp_path / "nested" / "permissions.yaml")
        assert reopened.get_rules("git@host:a/one.git") == ["Bash(npm test:*)"]
        assert reopened.get_rules("git@host:a/two.git") == ["Edit"]
        assert reopened.get_rules("unknown") == []


# =============================================================================
# Broker
# =============================================================================


@pytest.fixture
def broker(tmp_path: Path) -> PermissionBroker:
    """A broker with an empty allow list and a mocked prompter."""
    return PermissionBroker(
        allow_list=AllowList.from_rules(["Read"]),
        options=PermissionOptions(default_response="no", working_directory=tmp_path),
        tracked_files=set(),
        project_root=tmp_path,
        store=SharedPermissionStore(tmp_path / "store.yaml"),
        repository_id="repo",
        prompter=AsyncMock(return_value=ALLOW),
    )


class TestPermissionBroker:
    """Tests for PermissionBroker.decide."""

    @pytest.mark.asyncio
    async def test_allow_list_skips_prompt(self, broker: PermissionBroker, captured_events: list[dict]) -> None:
        """Test automatic approval from the allow list."""
        assert await broker.decide("Read", {"file_path": "a.py"}) is True

        broker.prompter.assert_not_called()
        decision = [e for e in captured_events if e["type"] == "permission_decision"][0]
        assert decision["source"] == "automatic"

    @pytest.mark.asyncio
    async def test_user_allow_and_disallow(self, broker: PermissionBroker) -> None:
        """Test one-off answers leave the allow list unchanged."""
        assert await broker.decide("Write", {"file_path": "a.py"}) is True

        broker.prompter.return_value = DISALLOW
        assert await broker.decide("Write", {"file_path": "a.py"}) is False
        assert broker.allow_list.to_rules() == ["Read"]

    @pytest.mark.asyncio
    async def test_session_allow_bash(self, broker: PermissionBroker) -> None:
        """Test that a session approval covers the first command word."""
        broker.prompter.return_value = SESSION_ALLOW

        assert await broker.decide("Bash", {"command": "pytest -q tests"}) is True
        assert broker.allow_list.is_allowed("Bash", {"command": "pytest -x"})
        assert load_allow_rules(broker.project_root) == []

    @pytest.mark.asyncio
    async def test_always_allow_prefix(self, broker: PermissionBroker) -> None:
        """Test that a permanent approval reaches both persistence layers."""
        broker.prompter.side_effect = [ALWAYS_ALLOW, {"exact": False, "command": "npm run"}]

        assert await broker.decide("Bash", {"command": "npm run build"}) is True

        assert broker.allow_list.is_allowed("Bash", {"command": "npm run lint"})
        assert load_allow_rules(broker.project_root) == ["Bash(npm run:*)"]
        assert broker.store.get_rules("repo") == ["Bash(npm run:*)"]

    @pytest.mark.asyncio
    async def test_always_allow_tool(self, broker: PermissionBroker) -> None:
        """Test a permanent approval of a whole tool."""
        broker.prompter.return_value = ALWAYS_ALLOW

        assert await broker.decide("WebFetch", {"url": "https://example.com"}) is True
        assert load_allow_rules(broker.project_root) == ["WebFetch"]
        assert broker.prompter.await_count == 1

    @pytest.mark.asyncio
    async def test_timeout_uses_default(self, broker: PermissionBroker, captured_events: list[dict]) -> None:
        """Test the configured default on prompt timeout."""
        broker.prompter.side_effect = PromptTimeoutError("timed out")
        assert await broker.decide("Write", {}) is False

        broker.options.default_response = "yes"
        assert await broker.decide("Write", {}) is True

        sources = [e["source"] for e in captured_events if e["type"] == "permission_decision"]
        assert sources == ["timeout", "timeout"]

    @pytest.mark.asyncio
    async def test_prompt_error_denies(self, broker: PermissionBroker) -> None:
        """Test that an unexpected prompt failure denies."""
        broker.prompter.side_effect = RuntimeError("no terminal")
        broker.options.default_response = "yes"

        assert await broker.decide("Write", {}) is False

    @pytest.mark.asyncio
    async def test_created_file_deletion(self, broker: PermissionBroker, tmp_path: Path) -> None:
        """Test all-or-nothing auto-approval of deleting created files."""
        broker.options.auto_approve_created_file_deletion = True
        broker.tracked_files.add(str(tmp_path / "scratch.txt"))
        broker.prompter.return_value = DISALLOW

        assert await broker.decide("Bash", {"command": "rm scratch.txt"}) is True
        assert await broker.decide("Bash", {"command": "rm scratch.txt other.txt"}) is False
        assert broker.prompter.await_count == 1

    def test_prefix_candidates(self) -> None:
        """Test the prefix sub-prompt choices."""
        choices = prefix_candidates("git push origin main")

        assert [c["name"] for c in choices] == [
            "git", "git push", "git push origin", "git push origin main", "Exact command",
        ]
        assert choices[-1]["value"] == {"exact": True, "command": "git push origin main"}


# =============================================================================
# Socket and MCP server
# =============================================================================


class TestPermissionSocket:
    """Tests for the executor-side socket and the MCP-side client."""

    @pytest.mark.asyncio
    async def test_request_round_trip(self, broker: PermissionBroker) -> None:
        """Test decisions travelling over the permission socket."""
        broker.prompter.return_value = DISALLOW

        async with setup_permissions_mcp(broker) as config_path:
            config = json.loads(config_path.read_text())
            socket_path = config["mcpServers"]["permissions"]["args"][-1]
            client = PermissionSocketClient(socket_path)

            approved, denied = await asyncio.gather(
                client.request("Read", {"file_path": "a.py"}, timeout=5),
                client.request("Write", {"file_path": "a.py"}, timeout=5),
            )

        assert approved is True
        assert denied is False
        assert not config_path.exists()

    def test_mcp_config(self) -> None:
        """Test the MCP server launch command."""
        server = build_mcp_config("/tmp/perm.sock")["mcpServers"]["permissions"]

        assert server["type"] == "stdio"
        assert server["args"] == ["-m", "planexec", "permissions-mcp", "/tmp/perm.sock"]

    def test_approval_response(self) -> None:
        """Test the JSON returned to Claude."""
        allow = json.loads(approval_response("Bash", {"command": "ls"}, True))
        deny = json.loads(approval_response("Bash", {"command": "ls"}, False))

        assert allow == {"behavior": "allow", "updatedInput": {"command": "ls"}}
        assert deny["behavior"] == "deny"
        assert "Bash" in deny["message"]

    def test_create_server(self) -> None:
        """Test that the MCP server builds."""
        assert isinstance(create_permissions_mcp("/tmp/perm.sock"), FastMCP)
