"""Session log, project and usage models.

``to_dict`` produces the camelCase shape served over the REST API.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class SessionSummary:
    id: str
    title: str
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class SessionMessage:
    """One user or assistant entry read back from a session log."""
    type: str
    content: Any
    timestamp: str = ""
    uuid: str = ""
    tool_use_result: Any = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "content": self.content,
            "timestamp": self.timestamp,
            "uuid": self.uuid,
        }
        if self.tool_use_result is not None:
            data["toolUseResult"] = self.tool_use_result
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionMessage:
        return cls(
            type=str(data.get("type", "")),
            content=data.get("content"),
            timestamp=str(data.get("timestamp") or ""),
            uuid=str(data.get("uuid") or ""),
            tool_use_result=data.get("toolUseResult"),
        )


@dataclass
class RewindResult:
    ok: bool
    messages_removed: int = 0
    backup_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "messagesRemoved": self.messages_removed}


@dataclass
class ProjectRecord:
    encoded_name: str
    path: str
    display_name: str
    session_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "encodedName": self.encoded_name,
            "path": self.path,
            "displayName": self.display_name,
            "sessionCount": self.session_count,
        }


@dataclass
class UsageInfo:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    total_cost_usd: float = 0.0

    @classmethod
    def from_result(cls, usage: dict[str, Any], total_cost_usd: float) -> UsageInfo:
        """Build from a result event's ``usage`` mapping and cost."""
        def _int(key: str) -> int:
            try:
                return int(usage.get(key) or 0)
            except (TypeError, ValueError):
                return 0

        return cls(
            input_tokens=_int("input_tokens"),
            output_tokens=_int("output_tokens"),
            cache_read_tokens=_int("cache_read_input_tokens"),
            cache_creation_tokens=_int("cache_creation_input_tokens"),
            total_cost_usd=float(total_cost_usd or 0.0),
        )
