"""YAML configuration loader.

Overlays a YAML file on top of the RelayConfig defaults. Sections map
onto RelayConfig fields; unknown keys are logged and ignored.

Example YAML:
    server:
      host: 0.0.0.0
      port: 3001
      cors_origin: http://localhost:5173

    agent:
      command: [claude]
      default_model: sonnet
      kill_grace_seconds: 3

    paths:
      claude_home: ~/.claude
      state_dir: ~/.chatrelay
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import RelayConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

# YAML key -> RelayConfig field, per section.
_SECTION_KEYS: dict[str, dict[str, str]] = {
    "server": {
        "host": "host",
        "port": "port",
        "cors_origin": "cors_origin",
        "log_level": "log_level",
    },
    "agent": {
        "command": "agent_command",
        "default_model": "default_model",
        "kill_grace_seconds": "kill_grace_seconds",
    },
    "paths": {
        "claude_home": "claude_home",
        "state_dir": "state_dir",
        "recent_dirs_limit": "recent_dirs_limit",
    },
}


def _coerce_command(value: Any) -> list[str]:
    if isinstance(value, str):
        return value.split()
    if isinstance(value, list):
        return [str(part) for part in value]
    raise ValueError(f"agent.command must be a string or list, got {type(value).__name__}")


def parse_config_dict(raw: dict[str, Any], base: RelayConfig | None = None) -> RelayConfig:
    """Build a RelayConfig from an already-parsed YAML mapping."""
    overrides: dict[str, Any] = {}
    for section, mapping in _SECTION_KEYS.items():
        values = raw.get(section) or {}
        if not isinstance(values, dict):
            logger.warning("Config section %r is not a mapping; ignored", section)
            continue
        for key, value in values.items():
            target = mapping.get(key)
            if target is None:
                logger.warning("Unknown config key %s.%s; ignored", section, key)
                continue
            if target == "agent_command":
                value = _coerce_command(value)
            elif target == "port" or target == "recent_dirs_limit":
                value = int(value)
            elif target == "kill_grace_seconds":
                value = float(value)
            elif target in ("claude_home", "state_dir"):
                value = str(Path(str(value)).expanduser())
            overrides[target] = value
    for section in raw:
        if section not in _SECTION_KEYS:
            logger.warning("Unknown config section %r; ignored", section)
    return (base or RelayConfig()).merged(overrides)


def load_yaml_config(path: str | Path) -> RelayConfig:
    """Load and parse a YAML config file into a RelayConfig.

    Raises ConfigError when the file is missing, unreadable, or not a
    YAML mapping.
    """
    path = Path(path)
    logger.info("load_yaml_config: loading %s (exists=%s)", path, path.exists())
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise ConfigError(str(path), "file not found") from None
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(str(path), f"YAML parse error: {exc}") from exc
    except OSError as exc:
        logger.error("load_yaml_config: cannot read %s: %s", path, exc)
        raise ConfigError(str(path), str(exc)) from exc

    if not isinstance(raw, dict):
        raise ConfigError(str(path), "top level must be a mapping")

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )
    try:
        return parse_config_dict(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(str(path), str(exc)) from exc
