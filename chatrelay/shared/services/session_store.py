"""Read, rewind and delete the agent's JSON-lines session logs.

Each session is ``<projects root>/<encoded project>/<session id>.jsonl``;
every line is one JSON entry written by the agent CLI. Reading is
best-effort: unreadable files and malformed lines are skipped with a
logged diagnostic, never raised to the caller.

Rewinding is the only mutation besides deletion. It copies the log to
``<session id>.jsonl.bak`` first and then truncates the log to the lines
that precede the chosen user turn.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from chatrelay.engine.errors import InvalidSessionIdError
from chatrelay.shared.models.message import has_text_block
from chatrelay.shared.models.session import RewindResult, SessionMessage, SessionSummary
from chatrelay.shared.services.durable_write import rewrite_with_backup
from chatrelay.shared.services.path_codec import default_projects_root, encode_path

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New conversation"
TITLE_MAX_LENGTH = 80
BACKUP_SUFFIX = ".bak"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 timestamps (with ``Z`` suffix) into aware UTC datetimes."""
    if not value or not isinstance(value, str):
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_entry(line: str) -> dict[str, Any] | None:
    if not line.strip():
        return None
    try:
        entry = json.loads(line)
    except ValueError:
        return None
    return entry if isinstance(entry, dict) else None


def _entry_content(entry: dict[str, Any]) -> Any:
    message = entry.get("message")
    if isinstance(message, dict):
        return message.get("content")
    return None


def is_user_turn(entry: dict[str, Any]) -> bool:
    """A user entry carrying typed text, as opposed to a tool result echo."""
    return entry.get("type") == "user" and has_text_block(_entry_content(entry))


def _title_from_content(content: Any) -> str | None:
    if isinstance(content, str):
        return content[:TITLE_MAX_LENGTH]
    if isinstance(content, list):
        for block in content:
            if not isinstance(block, dict) or block.get("type") == "tool_result":
                continue
            text = block.get("text") or block.get("content") or ""
            if isinstance(text, str):
                return text[:TITLE_MAX_LENGTH]
            return None
    return None


class SessionStore:
    """Session log access for every project under one projects root."""

    def __init__(self, projects_root: Path | None = None) -> None:
        self._root = Path(projects_root) if projects_root else default_projects_root()

    @property
    def projects_root(self) -> Path:
        return self._root

    def project_dir_path(self, project_dir: str) -> Path:
        return self._root / encode_path(project_dir)

    def session_path(self, project_dir: str, session_id: str) -> Path:
        """Log file for *session_id*; raises InvalidSessionIdError on unsafe ids."""
        if (
            not session_id
            or session_id in (".", "..")
            or "/" in session_id
            or "\\" in session_id
            or "\x00" in session_id
        ):
            raise InvalidSessionIdError(session_id)
        return self.project_dir_path(project_dir) / f"{session_id}.jsonl"

    # ── Listing ──

    def list_sessions(self, project_dir: str) -> list[SessionSummary]:
        """Summaries of all sessions in a project, most recently updated first."""
        directory = self.project_dir_path(project_dir)
        if not directory.is_dir():
            return []
        try:
            files = sorted(p for p in directory.glob("*.jsonl") if p.is_file())
        except OSError as exc:
            logger.warning("list_sessions: cannot scan %s: %s", directory, exc)
            return []

        summaries: list[SessionSummary] = []
        for path in files:
            summary = self._summarize(path)
            if summary is not None:
                summaries.append(summary)
        summaries.sort(
            key=lambda s: parse_timestamp(s.updated_at) or _EPOCH,
            reverse=True,
        )
        return summaries

    def _summarize(self, path: Path) -> SessionSummary | None:
        title = DEFAULT_TITLE
        created_at = ""
        updated_at = ""
        title_found = False
        try:
            for entry in self._iter_entries(path):
                timestamp = entry.get("timestamp")
                if isinstance(timestamp, str) and timestamp:
                    updated_at = timestamp
                if title_found or entry.get("type") != "user":
                    continue
                content = _entry_content(entry)
                if not content:
                    continue
                title_found = True
                created_at = timestamp if isinstance(timestamp, str) else ""
                title = _title_from_content(content) or DEFAULT_TITLE
        except OSError as exc:
            logger.warning("Skipping unreadable session log %s: %s", path, exc)
            return None
        if not created_at:
            return None
        return SessionSummary(
            id=path.stem,
            title=title,
            created_at=created_at,
            updated_at=updated_at or created_at,
        )

    def _iter_entries(self, path: Path) -> Iterator[dict[str, Any]]:
        skipped = 0
        with open(path, encoding="utf-8", errors="replace") as f:
            for line in f:
                entry = _parse_entry(line)
                if entry is None:
                    if line.strip():
                        skipped += 1
                    continue
                yield entry
        if skipped:
            logger.debug("%s: skipped %d malformed line(s)", path.name, skipped)

    # ── Reading ──

    def get_messages(self, project_dir: str, session_id: str) -> list[SessionMessage]:
        """User and assistant entries of a session, in file order."""
        try:
            path = self.session_path(project_dir, session_id)
        except InvalidSessionIdError as exc:
            logger.warning("get_messages: %s", exc)
            return []
        if not path.is_file():
            return []
        messages: list[SessionMessage] = []
        try:
            for entry in self._iter_entries(path):
                kind = entry.get("type")
                if kind not in ("user", "assistant"):
                    continue
                messages.append(SessionMessage(
                    type=kind,
                    content=_entry_content(entry),
                    timestamp=str(entry.get("timestamp") or ""),
                    uuid=str(entry.get("uuid") or ""),
                    tool_use_result=entry.get("toolUseResult"),
                ))
        except OSError as exc:
            logger.warning("get_messages: cannot read %s: %s", path, exc)
            return []
        return messages

    # ── Mutation ──

    def rewind(self, project_dir: str, session_id: str, user_turn_index: int) -> RewindResult:
        """Drop the log from the *user_turn_index*-th user turn (0-based) onward.

        The untouched log is written to ``<file>.bak`` before truncation.
        Returns ok=False, changing nothing, when that turn does not exist.
        """
        try:
            path = self.session_path(project_dir, session_id)
            original = path.read_bytes()
        except InvalidSessionIdError as exc:
            logger.warning("rewind: %s", exc)
            return RewindResult(ok=False)
        except FileNotFoundError:
            logger.info("rewind: no log for session %s in %s", session_id, project_dir)
            return RewindResult(ok=False)
        except OSError as exc:
            logger.warning("rewind: cannot read %s: %s", path, exc)
            return RewindResult(ok=False)

        if user_turn_index < 0:
            return RewindResult(ok=False)

        lines = original.split(b"\n")
        entries = [_parse_entry(line.decode("utf-8", errors="replace")) for line in lines]

        cut: int | None = None
        turns_seen = 0
        for index, entry in enumerate(entries):
            if entry is not None and is_user_turn(entry):
                if turns_seen == user_turn_index:
                    cut = index
                    break
                turns_seen += 1
        if cut is None:
            logger.info(
                "rewind: session %s has %d user turn(s); index %d not found",
                session_id, turns_seen, user_turn_index,
            )
            return RewindResult(ok=False)

        removed = sum(
            1 for entry in entries[cut:]
            if entry is not None and entry.get("type") in ("user", "assistant")
        )
        kept = b"\n".join(lines[:cut])
        if kept and not kept.endswith(b"\n"):
            kept += b"\n"

        backup = rewrite_with_backup(path, original, kept, BACKUP_SUFFIX)
        logger.info(
            "rewind: session %s cut at line %d (turn %d), removed %d message(s), backup=%s",
            session_id, cut, user_turn_index, removed, backup,
        )
        return RewindResult(ok=True, messages_removed=removed, backup_path=str(backup))

    def delete(self, project_dir: str, session_id: str) -> bool:
        """Remove a session log. False when it does not exist."""
        try:
            path = self.session_path(project_dir, session_id)
            path.unlink()
        except InvalidSessionIdError as exc:
            logger.warning("delete: %s", exc)
            return False
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("delete: cannot remove session %s: %s", session_id, exc)
            return False
        logger.info("Deleted session %s in %s", session_id, project_dir)
        return True
