"""Project-level tool permissions in ``.claude/settings.local.json``.

This is the same file the Claude CLI reads, so a grant the user makes
with "allow for project" also applies to engine runs outside steward.
Only ``permissions.allow`` is touched; every other key is preserved.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from steward.engine.permissions import is_bare_bash
from steward.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

SETTINGS_DIR = ".claude"
FILENAME = "settings.local.json"


class ProjectPermissionStore:
    """Load and extend a project's allow-list."""

    def __init__(self, project_root: Path | str) -> None:
        self._path = Path(project_root) / SETTINGS_DIR / FILENAME

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load %s", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def load(self) -> list[str]:
        """Permission strings currently allowed for the project."""
        permissions = self._read().get("permissions")
        if not isinstance(permissions, dict):
            return []
        allow = permissions.get("allow")
        if not isinstance(allow, list):
            return []
        return [p for p in allow if isinstance(p, str)]

    def add(self, tools: Iterable[str]) -> list[str]:
        """Append new permission strings; returns the ones actually added.

        A bare ``Bash`` grant is refused since it would allow every
        command.
        """
        data = self._read()
        permissions = data.get("permissions")
        if not isinstance(permissions, dict):
            permissions = {}
        allow = permissions.get("allow")
        if not isinstance(allow, list):
            allow = []

        added = []
        for tool in tools:
            if is_bare_bash(tool):
                logger.warning("Refusing to persist bare %r to %s", tool, self._path)
                continue
            if tool in allow or tool in added:
                continue
            added.append(tool)
        if not added:
            return []

        permissions["allow"] = allow + added
        data["permissions"] = permissions
        atomic_write_json(self._path, data)
        logger.info("Project permissions added to %s: %s", self._path, ", ".join(added))
        return added
