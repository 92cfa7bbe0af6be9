"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via STEWARD_* env vars,
or with an ``engine:`` section in a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".steward"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes"}


@dataclass
class EngineConfig:
    """Session engine configuration."""

    # Persistence
    db_path: str = str(DEFAULT_HOME / "steward.db")

    # Engine defaults for new tasks
    default_backend: str = "claude-code"
    default_model: str | None = None
    default_interaction_mode: str = "ask"

    # Max wait for a human answer to a permission/question request.
    # Set to 0 (or a negative value) to wait indefinitely.
    permission_timeout_seconds: float = 0.0

    # Event bus queue size
    event_queue_size: int = 5000

    # Logging
    log_level: str = "INFO"
    log_dir: str = str(DEFAULT_HOME / "logs")

    # OpenCode: either reuse a running server or spawn one
    opencode_url: str | None = None
    opencode_command: str = "opencode"
    opencode_startup_timeout_seconds: float = 30.0

    # Claude: which settings files the SDK reads (user, project, local)
    claude_setting_sources: list[str] = field(
        default_factory=lambda: ["user", "project", "local"]
    )
    # Also write "project" allow decisions to .claude/settings.local.json
    persist_project_permissions: bool = True

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from STEWARD_* environment variables."""
        steward_vars = {
            k: v for k, v in os.environ.items() if k.startswith("STEWARD_")
        }
        if steward_vars:
            logger.info(
                "EngineConfig.from_env: STEWARD_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(steward_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no STEWARD_* env vars set, using defaults")

        sources = os.getenv("STEWARD_CLAUDE_SETTING_SOURCES")
        config = cls(
            db_path=os.getenv("STEWARD_DB_PATH", cls.db_path),
            default_backend=os.getenv("STEWARD_DEFAULT_BACKEND", cls.default_backend),
            default_model=os.getenv("STEWARD_DEFAULT_MODEL") or None,
            default_interaction_mode=os.getenv(
                "STEWARD_INTERACTION_MODE", cls.default_interaction_mode
            ),
            permission_timeout_seconds=float(os.getenv(
                "STEWARD_PERMISSION_TIMEOUT", str(cls.permission_timeout_seconds)
            )),
            event_queue_size=int(os.getenv(
                "STEWARD_EVENT_QUEUE_SIZE", str(cls.event_queue_size)
            )),
            log_level=os.getenv("STEWARD_LOG_LEVEL", cls.log_level),
            log_dir=os.getenv("STEWARD_LOG_DIR", cls.log_dir),
            opencode_url=os.getenv("STEWARD_OPENCODE_URL") or None,
            opencode_command=os.getenv("STEWARD_OPENCODE_COMMAND", cls.opencode_command),
            opencode_startup_timeout_seconds=float(os.getenv(
                "STEWARD_OPENCODE_STARTUP_TIMEOUT",
                str(cls.opencode_startup_timeout_seconds),
            )),
            persist_project_permissions=_env_bool(
                "STEWARD_PERSIST_PROJECT_PERMISSIONS", cls.persist_project_permissions
            ),
        )
        if sources is not None:
            config.claude_setting_sources = [s.strip() for s in sources.split(",") if s.strip()]
        logger.info(
            "EngineConfig.from_env: backend=%s db=%s log_level=%s",
            config.default_backend, config.db_path, config.log_level,
        )
        return config
