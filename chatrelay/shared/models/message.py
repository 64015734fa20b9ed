"""Content block and chat message models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _gen_id() -> str:
    return str(uuid.uuid4())[:8]


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class TextBlock:
    text: str = ""
    type: str = "text"


@dataclass
class ToolUseBlock:
    id: str = ""
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    type: str = "tool_use"


@dataclass
class ToolResultBlock:
    tool_use_id: str = ""
    content: Any = ""
    is_error: bool = False
    type: str = "tool_result"


@dataclass
class OtherBlock:
    """Block kind we do not interpret (thinking, image, ...), kept verbatim."""
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return str(self.data.get("type", ""))


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock, OtherBlock]


@dataclass
class ToolUseResult:
    """Execution metadata the agent attaches to a tool result echo."""
    stdout: str = ""
    stderr: str = ""
    interrupted: bool = False

    @classmethod
    def from_raw(cls, raw: Any) -> ToolUseResult | None:
        if isinstance(raw, ToolUseResult):
            return raw
        # Some tools report a bare string here (errors, denials).
        if isinstance(raw, str):
            return cls(stderr=raw)
        if not isinstance(raw, dict):
            return None
        return cls(
            stdout=str(raw.get("stdout") or ""),
            stderr=str(raw.get("stderr") or ""),
            interrupted=bool(raw.get("interrupted", False)),
        )


def block_from_dict(data: dict[str, Any]) -> ContentBlock:
    kind = data.get("type")
    if kind == "text":
        return TextBlock(text=str(data.get("text") or ""))
    if kind == "tool_use":
        raw_input = data.get("input")
        return ToolUseBlock(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            input=raw_input if isinstance(raw_input, dict) else {},
        )
    if kind == "tool_result":
        return ToolResultBlock(
            tool_use_id=str(data.get("tool_use_id") or ""),
            content=data.get("content", ""),
            is_error=bool(data.get("is_error", False)),
        )
    return OtherBlock(data=dict(data))


def block_to_dict(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
            "is_error": block.is_error,
        }
    return dict(block.data)


def blocks_from_content(content: Any) -> list[ContentBlock]:
    """Normalize a log/event ``content`` value into blocks.

    A plain string becomes a single text block.
    """
    if isinstance(content, str):
        return [TextBlock(text=content)] if content else []
    if isinstance(content, list):
        return [block_from_dict(b) for b in content if isinstance(b, dict)]
    return []


def has_text_block(content: Any) -> bool:
    """True when *content* holds user-typed text, i.e. marks a turn."""
    return any(isinstance(b, TextBlock) for b in blocks_from_content(content))


@dataclass
class ChatMessage:
    role: MessageRole
    content: list[ContentBlock] = field(default_factory=list)
    id: str = field(default_factory=_gen_id)
    # uuid of the matching entry in the session log, when known.
    uuid: str | None = None
    timestamp: str = field(default_factory=_utcnow_iso)
    tool_use_result: ToolUseResult | None = None

    @property
    def is_user_turn(self) -> bool:
        return self.role is MessageRole.USER and any(
            isinstance(b, TextBlock) for b in self.content
        )

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]
