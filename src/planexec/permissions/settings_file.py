"""The project-local ``.claude/settings.local.json`` permission file."""

from __future__ import annotations

import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

SETTINGS_RELATIVE_PATH = Path(".claude") / "settings.local.json"


def settings_path(project_root: Path) -> Path:
    return Path(project_root) / SETTINGS_RELATIVE_PATH


def _default_settings() -> dict:
    return {"permissions": {"allow": [], "deny": []}}


def load_settings(project_root: Path) -> dict:
    """Read the settings file, falling back to an empty permission set."""
    path = settings_path(project_root)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return _default_settings()
    except (OSError, json.JSONDecodeError) as exc:
        logger.debug(f"Could not read {path}: {exc}")
        return _default_settings()
    if not isinstance(data, dict):
        return _default_settings()
    permissions = data.setdefault("permissions", {})
    if not isinstance(permissions, dict):
        data["permissions"] = permissions = {}
    permissions.setdefault("allow", [])
    permissions.setdefault("deny", [])
    return data


def load_allow_rules(project_root: Path) -> list[str]:
    allow = load_settings(project_root)["permissions"]["allow"]
    return [rule for rule in allow if isinstance(rule, str)]


def add_allow_rule(project_root: Path, rule: str) -> bool:
    """Append ``rule`` to the allow list unless present.

    Returns:
        True when the file was written.
    """
    settings = load_settings(project_root)
    allow = settings["permissions"]["allow"]
    if rule in allow:
        return False
    allow.append(rule)

    path = settings_path(project_root)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(settings, indent=2), encoding="utf-8")
    except OSError as exc:
        logger.warning(f"Could not save permission to {path}: {exc}")
        return False
    return True
