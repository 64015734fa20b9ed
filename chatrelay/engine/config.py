"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via RELAY_* env vars, or
through a YAML file (see yaml_config.py); env vars win over the file.
"""
from __future__ import annotations

import logging
import os
import shlex
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, logging and swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.exception(
            "Event callback failed for %s event", event.get("type", "?"),
        )


def _default_claude_home() -> str:
    return os.getenv("CLAUDE_CONFIG_DIR") or str(Path.home() / ".claude")


def _default_state_dir() -> str:
    return str(Path.home() / ".chatrelay")


@dataclass
class RelayConfig:
    """Relay server and agent process configuration."""

    # HTTP / WebSocket listener
    host: str = "127.0.0.1"
    port: int = 3001
    # Allowed browser origin for CORS; empty disables the header.
    cors_origin: str = ""

    # Argv prefix for the agent CLI. Streaming flags are appended per run.
    agent_command: list[str] = field(default_factory=lambda: ["claude"])
    default_model: str = "opus"
    # Seconds between the graceful tree termination and the forced kill.
    kill_grace_seconds: float = 5.0

    # Directory holding the agent's projects/ logs.
    claude_home: str = field(default_factory=_default_claude_home)
    # Settings, recent directories and log files.
    state_dir: str = field(default_factory=_default_state_dir)
    recent_dirs_limit: int = 20

    log_level: str = "INFO"

    @property
    def projects_root(self) -> Path:
        return Path(self.claude_home).expanduser() / "projects"

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir).expanduser()

    def merged(self, overrides: dict[str, Any]) -> RelayConfig:
        """Return a copy with known keys from *overrides* applied."""
        known = {f.name for f in fields(self)}
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        for key, value in overrides.items():
            if key not in known:
                logger.warning("RelayConfig: ignoring unknown setting %r", key)
                continue
            if value is not None:
                values[key] = value
        return RelayConfig(**values)

    @classmethod
    def from_env(cls, base: RelayConfig | None = None) -> RelayConfig:
        """Load configuration from RELAY_* environment variables.

        Values not set in the environment come from *base* (for example a
        config loaded from YAML), or from the dataclass defaults.
        """
        base = base or cls()
        relay_vars = {
            k: v for k, v in os.environ.items() if k.startswith("RELAY_")
        }
        if relay_vars:
            logger.info(
                "RelayConfig.from_env: RELAY_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(relay_vars.items())),
            )
        else:
            logger.debug("RelayConfig.from_env: no RELAY_* env vars set")

        command_raw = os.getenv("RELAY_AGENT_COMMAND")
        config = cls(
            host=os.getenv("RELAY_HOST", base.host),
            port=int(os.getenv("RELAY_PORT", str(base.port))),
            cors_origin=os.getenv("RELAY_CORS_ORIGIN", base.cors_origin),
            agent_command=(
                shlex.split(command_raw) if command_raw
                else list(base.agent_command)
            ),
            default_model=os.getenv("RELAY_DEFAULT_MODEL", base.default_model),
            kill_grace_seconds=float(os.getenv(
                "RELAY_KILL_GRACE", str(base.kill_grace_seconds)
            )),
            claude_home=os.getenv("RELAY_CLAUDE_HOME", base.claude_home),
            state_dir=os.getenv("RELAY_STATE_DIR", base.state_dir),
            recent_dirs_limit=int(os.getenv(
                "RELAY_RECENT_DIRS_LIMIT", str(base.recent_dirs_limit)
            )),
            log_level=os.getenv("RELAY_LOG_LEVEL", base.log_level),
        )
        logger.info(
            "RelayConfig.from_env: host=%s port=%s command=%s claude_home=%s",
            config.host, config.port, config.agent_command, config.claude_home,
        )
        return config
