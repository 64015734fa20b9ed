"""Read-only queries over a conversation timeline.

Tool results arrive as separate user messages after the assistant
message that requested them. These helpers pair them up for display
without ever mutating the timeline.
"""
from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass, field

from chatrelay.shared.models.message import ChatMessage, MessageRole


@dataclass(frozen=True)
class ToolResultInfo:
    content: str
    is_error: bool = False
    stdout: str = ""
    stderr: str = ""
    interrupted: bool = False


@dataclass
class ToolActivitySummary:
    total: int = 0
    counts: dict[str, int] = field(default_factory=dict)
    succeeded: int = 0
    failed: int = 0

    @property
    def pending(self) -> int:
        return self.total - self.succeeded - self.failed

    def label(self) -> str:
        """e.g. ``Bash x2, Read``"""
        return ", ".join(
            f"{name} x{count}" if count > 1 else name
            for name, count in self.counts.items()
        )


def find_tool_result(
    messages: Sequence[ChatMessage],
    tool_use_id: str,
    from_index: int,
) -> ToolResultInfo | None:
    """Result for *tool_use_id*, searching after ``messages[from_index]``.

    The search stops at the next assistant message.
    """
    for message in messages[from_index + 1:]:
        if message.role is MessageRole.ASSISTANT:
            return None
        for block in message.tool_results:
            if block.tool_use_id != tool_use_id:
                continue
            content = block.content
            if not isinstance(content, str):
                content = json.dumps(content, ensure_ascii=False)
            meta = message.tool_use_result
            return ToolResultInfo(
                content=content,
                is_error=block.is_error,
                stdout=meta.stdout if meta else "",
                stderr=meta.stderr if meta else "",
                interrupted=meta.interrupted if meta else False,
            )
    return None


def collect_tool_results(
    messages: Sequence[ChatMessage],
    index: int,
) -> dict[str, ToolResultInfo]:
    """Results for every tool use in ``messages[index]`` that has one."""
    found: dict[str, ToolResultInfo] = {}
    for tool_use in messages[index].tool_uses:
        result = find_tool_result(messages, tool_use.id, index)
        if result is not None:
            found[tool_use.id] = result
    return found


def summarize_tool_activity(
    messages: Sequence[ChatMessage],
    start: int = 0,
    end: int | None = None,
) -> ToolActivitySummary:
    """Tool call counts by name, with success/failure tallies, over a slice."""
    summary = ToolActivitySummary()
    stop = len(messages) if end is None else end
    for index in range(start, stop):
        message = messages[index]
        if message.role is not MessageRole.ASSISTANT:
            continue
        for tool_use in message.tool_uses:
            summary.total += 1
            summary.counts[tool_use.name] = summary.counts.get(tool_use.name, 0) + 1
            result = find_tool_result(messages, tool_use.id, index)
            if result is None:
                continue
            if result.is_error:
                summary.failed += 1
            else:
                summary.succeeded += 1
    return summary


def user_turn_index(messages: Sequence[ChatMessage], message_id: str) -> int | None:
    """0-based user-turn ordinal of the message with *message_id*."""
    turn = 0
    for message in messages:
        if message.id == message_id:
            return turn if message.is_user_turn else None
        if message.is_user_turn:
            turn += 1
    return None
