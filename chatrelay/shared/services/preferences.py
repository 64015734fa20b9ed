"""User settings and recently used project directories.

Stored as JSON under the relay state directory (``~/.chatrelay`` by
default): ``settings.json`` holds the preferred model and working
directory, ``recent-dirs.json`` the most-recent-first directory list.
Missing or corrupt files load as defaults.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

from chatrelay.shared.services.durable_write import replace_file

logger = logging.getLogger(__name__)

SETTINGS_FILE = "settings.json"
RECENT_DIRS_FILE = "recent-dirs.json"
DEFAULT_RECENT_LIMIT = 20


@dataclass
class RelaySettings:
    """Per-user chat defaults."""

    model: str = "opus"
    cwd: str = field(default_factory=lambda: str(Path.home()))

    def validate(self) -> None:
        """Ensure all values are usable."""
        if not isinstance(self.model, str) or not self.model.strip():
            self.model = "opus"
        if not isinstance(self.cwd, str) or not self.cwd.strip():
            self.cwd = str(Path.home())

    def save(self, state_dir: Path) -> None:
        target = state_dir / SETTINGS_FILE
        try:
            replace_file(target, json.dumps(asdict(self), indent=2).encode("utf-8"))
        except OSError:
            logger.warning("Failed to save settings to %s", target, exc_info=True)

    @classmethod
    def load(cls, state_dir: Path) -> RelaySettings:
        """Load settings, returning defaults if missing/corrupt."""
        target = state_dir / SETTINGS_FILE
        try:
            if target.exists():
                data = json.loads(target.read_text(encoding="utf-8"))
                settings = cls(**{
                    k: v for k, v in data.items()
                    if k in cls.__dataclass_fields__
                })
                settings.validate()
                return settings
            logger.debug("Settings file not found at %s; using defaults", target)
        except (OSError, ValueError, TypeError, AttributeError):
            logger.warning("Failed to load settings from %s; using defaults", target)
        return cls()


class RecentDirectories:
    """Bounded most-recent-first list of project directories."""

    def __init__(self, state_dir: Path, limit: int = DEFAULT_RECENT_LIMIT) -> None:
        self._path = state_dir / RECENT_DIRS_FILE
        self._limit = limit

    def load(self) -> list[str]:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, ValueError):
            logger.warning("Failed to read %s; starting empty", self._path)
            return []
        if not isinstance(data, list):
            return []
        return [d for d in data if isinstance(d, str)][: self._limit]

    def add(self, directory: str) -> list[str]:
        """Move *directory* to the front, dropping duplicates and overflow."""
        dirs = [d for d in self.load() if d != directory]
        dirs.insert(0, directory)
        dirs = dirs[: self._limit]
        try:
            replace_file(self._path, json.dumps(dirs, indent=2).encode("utf-8"))
        except OSError:
            logger.warning("Failed to save recent directories to %s", self._path, exc_info=True)
        return dirs


def validate_directory(path: str) -> bool:
    """True when *path* names an existing directory."""
    try:
        return bool(path) and os.path.isdir(path)
    except (TypeError, ValueError):
        return False
