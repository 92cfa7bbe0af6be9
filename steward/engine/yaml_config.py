"""YAML configuration loader.

Example YAML:
    engine:
      db_path: ~/.steward/steward.db
      default_backend: opencode
      default_model: anthropic/claude-sonnet-4-5
      permission_timeout_seconds: 600
      log_level: DEBUG

    opencode:
      url: http://127.0.0.1:4096

    claude:
      setting_sources: [project, local]

Values in the file override STEWARD_* env vars, which override defaults.
"""
from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)

_SECTION_ALIASES: dict[str, dict[str, str]] = {
    "opencode": {
        "url": "opencode_url",
        "command": "opencode_command",
        "startup_timeout_seconds": "opencode_startup_timeout_seconds",
    },
    "claude": {
        "setting_sources": "claude_setting_sources",
    },
}

_PATH_FIELDS = frozenset({"db_path", "log_dir"})


def _coerce(field_type: Any, value: Any) -> Any:
    if value is None:
        return None
    if field_type in ("float", float):
        return float(value)
    if field_type in ("int", int):
        return int(value)
    if field_type in ("bool", bool):
        return bool(value)
    return value


def apply_overrides(config: EngineConfig, overrides: dict[str, Any]) -> EngineConfig:
    """Return a copy of ``config`` with recognised keys replaced."""
    fields = {f.name: f for f in dataclasses.fields(config)}
    changes: dict[str, Any] = {}
    for key, value in overrides.items():
        f = fields.get(key)
        if f is None:
            logger.warning("apply_overrides: ignoring unknown config key %r", key)
            continue
        value = _coerce(f.type, value)
        if key in _PATH_FIELDS and isinstance(value, str):
            value = os.path.expanduser(value)
        changes[key] = value
    return dataclasses.replace(config, **changes)


def load_yaml_config(path: str | Path, base: EngineConfig | None = None) -> EngineConfig:
    """Load and parse a YAML config file on top of ``base`` (or env)."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        logger.info("load_yaml_config: successfully read and parsed %s", path)
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s",
            path, exc
        )
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")

    overrides: dict[str, Any] = dict(raw.get("engine") or {})
    for section, aliases in _SECTION_ALIASES.items():
        values = raw.get(section) or {}
        for key, value in values.items():
            target = aliases.get(key)
            if target is None:
                logger.warning("load_yaml_config: ignoring unknown key %s.%s", section, key)
                continue
            overrides[target] = value

    config = apply_overrides(base or EngineConfig.from_env(), overrides)
    logger.info(
        "load_yaml_config: backend=%s db=%s permission_timeout=%.1fs",
        config.default_backend, config.db_path, config.permission_timeout_seconds,
    )
    return config
