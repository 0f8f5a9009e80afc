"""Cross-workspace permission store.

Rules approved with "Always Allow" are recorded per repository in a YAML
file shared by every checkout of that repository, so a new workspace starts
with the approvals earlier ones collected. Adding a rule is idempotent.
"""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_STORE_PATH = Path("~/.config/planexec/permissions.yaml")


class SharedPermissionStore:
    """YAML-backed allow rules keyed by repository id."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path or DEFAULT_STORE_PATH).expanduser()

    def _load(self) -> dict:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            return {}
        except (OSError, yaml.YAMLError) as exc:
            logger.debug(f"Could not read permission store {self.path}: {exc}")
            return {}
        return data if isinstance(data, dict) else {}

    def get_rules(self, repository_id: str) -> list[str]:
        """Allow rules recorded for a repository."""
        entry = (self._load().get("repositories") or {}).get(repository_id) or {}
        return [rule for rule in entry.get("allow") or [] if isinstance(rule, str)]

    def add_rule(self, repository_id: str, rule: str) -> bool:
        """Record an allow rule. Returns False when already present or on write failure."""
        data = self._load()
        repositories = data.setdefault("repositories", {})
        entry = repositories.setdefault(repository_id, {})
        allow = entry.setdefault("allow", [])
        if rule in allow:
            return False
        allow.append(rule)
        entry["updated_at"] = datetime.now().isoformat()

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".permissions-", suffix=".yaml")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, sort_keys=False)
            os.replace(temp_path, self.path)
        except OSError as exc:
            logger.warning(f"Could not save shared permission: {exc}")
            return False
        return True
