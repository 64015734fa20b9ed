"""Event types relayed from the agent CLI to chat clients.

Each NDJSON line the agent writes is parsed into one of a closed set of
typed dataclasses (the AgentEvent variants). The relay adds control
events of its own: process errors, process exit and busy rejections.
Every event carries the ``run_id`` of the run that produced it.

On the WebSocket each event travels as a frame: agent events are
wrapped as ``{"type": "stream", "run_id": ..., "event": {...}}`` and
control events are sent flat.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from typing import Any

from chatrelay.engine.errors import UnrecognizedEventError
from chatrelay.shared.models.message import ToolUseResult

logger = logging.getLogger(__name__)


@dataclass
class RelayEvent:
    """Base event."""
    event_type: str = ""
    run_id: str | None = None


# ── Agent events (decoded from CLI output) ──


@dataclass
class SystemEvent(RelayEvent):
    event_type: str = "system"
    session_id: str | None = None
    subtype: str = ""


@dataclass
class StreamDelta(RelayEvent):
    event_type: str = "stream_delta"
    text: str = ""


@dataclass
class AssistantMessage(RelayEvent):
    event_type: str = "assistant_message"
    content: list[dict[str, Any]] = field(default_factory=list)
    session_id: str | None = None
    uuid: str | None = None


@dataclass
class UserEcho(RelayEvent):
    event_type: str = "user_echo"
    content: list[dict[str, Any]] = field(default_factory=list)
    uuid: str | None = None
    tool_use_result: ToolUseResult | None = None


@dataclass
class ResultEvent(RelayEvent):
    event_type: str = "result"
    session_id: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)
    total_cost_usd: float = 0.0
    is_error: bool = False


# ── Relay control events ──


@dataclass
class ProcessError(RelayEvent):
    event_type: str = "error"
    message: str = ""
    code: str = "PROCESS_ERROR"
    # Fatal errors end the run on the client; no exit event follows them.
    fatal: bool = False


@dataclass
class ProcessExit(RelayEvent):
    event_type: str = "exit"
    code: int | None = None


@dataclass
class RunRejected(RelayEvent):
    event_type: str = "busy"
    message: str = "A run is already in progress"


AgentEvent = SystemEvent | StreamDelta | AssistantMessage | UserEcho | ResultEvent

_AGENT_EVENT_MAP: dict[str, type[RelayEvent]] = {
    "system": SystemEvent,
    "stream_delta": StreamDelta,
    "assistant_message": AssistantMessage,
    "user_echo": UserEcho,
    "result": ResultEvent,
}

_CONTROL_EVENT_MAP: dict[str, type[RelayEvent]] = {
    "error": ProcessError,
    "exit": ProcessExit,
    "busy": RunRejected,
}

# Raw "type" tags written by the agent CLI that we understand.
KNOWN_CLI_TAGS = frozenset({"system", "stream_event", "assistant", "user", "result"})


def _content_list(message: Any) -> list[dict[str, Any]]:
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return [block for block in content if isinstance(block, dict)]
    return []


def parse_agent_line(raw: Any, run_id: str | None = None) -> RelayEvent | None:
    """Convert one decoded CLI line into its AgentEvent variant.

    Returns None for recognised lines that carry nothing for the
    timeline (non-text stream events). Raises UnrecognizedEventError
    for anything outside the known tag set.
    """
    if not isinstance(raw, dict):
        raise UnrecognizedEventError(type(raw).__name__)
    tag = raw.get("type")
    if tag not in KNOWN_CLI_TAGS:
        raise UnrecognizedEventError(tag)

    if tag == "system":
        return SystemEvent(
            run_id=run_id,
            session_id=raw.get("session_id"),
            subtype=str(raw.get("subtype") or ""),
        )
    if tag == "stream_event":
        inner = raw.get("event")
        if not isinstance(inner, dict) or inner.get("type") != "content_block_delta":
            return None
        delta = inner.get("delta")
        if isinstance(delta, dict) and delta.get("type") == "text_delta":
            return StreamDelta(run_id=run_id, text=str(delta.get("text") or ""))
        return None
    if tag == "assistant":
        return AssistantMessage(
            run_id=run_id,
            content=_content_list(raw.get("message")),
            session_id=raw.get("session_id"),
            uuid=raw.get("uuid"),
        )
    if tag == "user":
        return UserEcho(
            run_id=run_id,
            content=_content_list(raw.get("message")),
            uuid=raw.get("uuid"),
            tool_use_result=ToolUseResult.from_raw(raw.get("tool_use_result")),
        )
    usage = raw.get("usage")
    return ResultEvent(
        run_id=run_id,
        session_id=raw.get("session_id"),
        usage=usage if isinstance(usage, dict) else {},
        total_cost_usd=float(raw.get("total_cost_usd") or 0.0),
        is_error=bool(raw.get("is_error", False)),
    )


def is_agent_event(event: RelayEvent) -> bool:
    return event.event_type in _AGENT_EVENT_MAP


def event_to_dict(event: RelayEvent) -> dict[str, Any]:
    """Serialize an event body; ``event_type`` becomes ``type``."""
    data = asdict(event)
    data["type"] = data.pop("event_type")
    data.pop("run_id", None)
    return data


def _build(cls: type[RelayEvent], data: dict[str, Any], run_id: str | None) -> RelayEvent:
    names = {f.name for f in fields(cls)} - {"event_type", "run_id"}
    kwargs = {k: v for k, v in data.items() if k in names}
    if cls is UserEcho:
        kwargs["tool_use_result"] = ToolUseResult.from_raw(kwargs.get("tool_use_result"))
    return cls(run_id=run_id, **kwargs)


def to_frame(event: RelayEvent) -> dict[str, Any]:
    """Wire frame for *event*."""
    if is_agent_event(event):
        return {"type": "stream", "run_id": event.run_id, "event": event_to_dict(event)}
    frame = event_to_dict(event)
    frame["run_id"] = event.run_id
    return frame


def from_frame(frame: dict[str, Any]) -> RelayEvent:
    """Parse a wire frame back into a typed event.

    Raises UnrecognizedEventError for unknown frame or event types.
    """
    frame_type = frame.get("type")
    run_id = frame.get("run_id")
    if frame_type == "stream":
        body = frame.get("event")
        if not isinstance(body, dict):
            raise UnrecognizedEventError(body)
        cls = _AGENT_EVENT_MAP.get(body.get("type"))
        if cls is None:
            raise UnrecognizedEventError(body.get("type"))
        return _build(cls, body, run_id)
    cls = _CONTROL_EVENT_MAP.get(frame_type)
    if cls is None:
        raise UnrecognizedEventError(frame_type)
    return _build(cls, frame, run_id)
