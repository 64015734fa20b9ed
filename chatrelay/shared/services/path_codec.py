"""Mapping between project directories and the agent's log directories.

The agent CLI stores each project's sessions under
``<claude home>/projects/<encoded>/`` where ``<encoded>`` is the project's
absolute path with every separator, drive colon and space replaced by a
hyphen. Encoding is lossy: ``/a/b-c`` and ``/a/b/c`` both encode to
``-a-b-c``. decode_path() recovers the original by walking the real
filesystem and keeping the first reconstruction that exists.
"""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path

from chatrelay.shared.models.session import ProjectRecord

logger = logging.getLogger(__name__)

_ENCODE_CHARS = re.compile(r"[\\/: ]")
_DRIVE_PREFIX = re.compile(r"^([A-Za-z])--(.*)$")


def default_projects_root() -> Path:
    home = os.getenv("CLAUDE_CONFIG_DIR") or str(Path.home() / ".claude")
    return Path(home).expanduser() / "projects"


def encode_path(path: str | os.PathLike[str]) -> str:
    """Encode a project directory into its log-directory name."""
    return _ENCODE_CHARS.sub("-", os.path.abspath(os.fspath(path)))


def encode_name(name: str) -> str:
    return _ENCODE_CHARS.sub("-", name)


def _child_dirs(base: Path) -> list[str]:
    try:
        with os.scandir(base) as entries:
            names = []
            for entry in entries:
                try:
                    if entry.is_dir():
                        names.append(entry.name)
                except OSError:
                    continue
    except OSError:
        return []
    return sorted(names)


def _walk(base: Path, segments: list[str], start: int) -> Path | None:
    """Depth-first, shortest-span-first reconstruction below *base*."""
    if start == len(segments):
        return base
    children = _child_dirs(base)
    if not children:
        return None
    by_encoding: dict[str, list[str]] = {}
    for name in children:
        by_encoding.setdefault(encode_name(name), []).append(name)
    for end in range(start + 1, len(segments) + 1):
        span = "-".join(segments[start:end])
        for name in by_encoding.get(span, ()):
            found = _walk(base / name, segments, end)
            if found is not None:
                return found
    return None


def decode_path(encoded: str) -> str | None:
    """Recover the project directory for an encoded name, or None."""
    drive = _DRIVE_PREFIX.match(encoded)
    if drive:
        root = Path(f"{drive.group(1).upper()}:\\")
        rest = drive.group(2)
    elif encoded.startswith("-"):
        root = Path("/")
        rest = encoded[1:]
    else:
        return None

    if not root.is_dir():
        return None
    if not rest:
        return str(root)
    found = _walk(root, rest.split("-"), 0)
    return str(found) if found is not None else None


def session_dir(project_dir: str, projects_root: Path | None = None) -> Path:
    """Log directory holding the sessions of *project_dir*."""
    return (projects_root or default_projects_root()) / encode_path(project_dir)


def list_projects(projects_root: Path | None = None) -> list[ProjectRecord]:
    """Projects with a decodable log directory, sorted by display name."""
    root = projects_root or default_projects_root()
    records: list[ProjectRecord] = []
    for encoded in _child_dirs(root):
        decoded = decode_path(encoded)
        if decoded is None:
            logger.debug("list_projects: cannot decode %s; skipped", encoded)
            continue
        try:
            count = sum(1 for p in (root / encoded).glob("*.jsonl") if p.is_file())
        except OSError:
            count = 0
        records.append(ProjectRecord(
            encoded_name=encoded,
            path=decoded,
            display_name=Path(decoded).name or decoded,
            session_count=count,
        ))
    records.sort(key=lambda r: (r.display_name.casefold(), r.path))
    return records
