"""File replacement for session logs and relay state files.

A session log is rewritten only after a byte-exact backup of its old
content is on disk; the agent CLI appends to the same file, so a torn
write would lose the conversation.
"""
from __future__ import annotations

import logging
import os
import sys
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def replace_file(path: Path, data: bytes) -> None:
    """Write *data* to a sibling temp file, fsync it, and rename it over *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False,
    ) as tmp:
        try:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        except BaseException:
            tmp.close()
            os.unlink(tmp.name)
            raise
    try:
        os.replace(tmp.name, path)
    except OSError:
        os.unlink(tmp.name)
        raise
    if sys.platform != "win32":
        # Persist the rename itself.
        dir_fd = os.open(path.parent, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        except OSError as exc:
            logger.debug("fsync of %s not supported: %s", path.parent, exc)
        finally:
            os.close(dir_fd)


def rewrite_with_backup(path: Path, original: bytes, data: bytes, backup_suffix: str) -> Path:
    """Replace a session log with *data*, keeping *original* next to it.

    The backup is complete before the log is touched. Returns the backup path.
    """
    backup = path.with_name(path.name + backup_suffix)
    replace_file(backup, original)
    replace_file(path, data)
    logger.debug("Rewrote %s (%d -> %d bytes), backup %s", path, len(original), len(data), backup)
    return backup
