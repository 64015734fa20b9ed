"""Adapters package - event types and the event bus shared by the
relay server and its clients.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "RelayEvent",
    "from_frame",
    "parse_agent_line",
    "to_frame",
]

from chatrelay.adapters.event_bus import EventBus
from chatrelay.adapters.events import RelayEvent, from_frame, parse_agent_line, to_frame
