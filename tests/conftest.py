from __future__ import annotations

import asyncio
import sys
import textwrap
from pathlib import Path
from typing import Any

import pytest

from chatrelay.adapters.events import RelayEvent, from_frame

FAKE_AGENT = textwrap.dedent('''
    import json, os, subprocess, sys, time

    mode = os.environ.get("FAKE_AGENT_MODE", "echo")
    prompt = sys.stdin.read()

    def emit(obj):
        sys.stdout.write(json.dumps(obj) + "\\n")
        sys.stdout.flush()

    if mode == "echo":
        emit({"type": "system", "subtype": "init", "session_id": "sess-1"})
        emit({"type": "stream_event", "event": {"type": "message_start"}})
        for piece in ("Hel", "lo"):
            emit({"type": "stream_event", "event": {
                "type": "content_block_delta",
                "delta": {"type": "text_delta", "text": piece},
            }})
        emit({"type": "assistant", "session_id": "sess-1", "uuid": "u-1",
              "message": {"content": [{"type": "text", "text": "echo:" + prompt}]}})
        emit({"type": "assistant", "session_id": "sess-1", "uuid": "u-2",
              "message": {"content": [{"type": "text", "text": json.dumps(sys.argv[1:])}]}})
        emit({"type": "mystery", "payload": 1})
        sys.stdout.write("this is not json\\n")
        # Last line without a trailing newline.
        sys.stdout.write(json.dumps({
            "type": "result", "session_id": "sess-1", "total_cost_usd": 0.5,
            "usage": {"input_tokens": 3, "output_tokens": 5},
        }))
        sys.stdout.flush()
        sys.exit(0)

    if mode == "stderr":
        sys.stderr.write("Error: boom\\n")
        sys.stderr.flush()
        sys.exit(3)

    if mode == "stubborn":
        # Grandchild ignores SIGTERM and keeps the inherited stdout open.
        subprocess.Popen([sys.executable, "-c", (
            "import os, signal, sys, time\\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\\n"
            "open(sys.argv[1], 'w').write(str(os.getpid()))\\n"
            "time.sleep(60)\\n"
        ), os.environ["FAKE_AGENT_PIDFILE"]])
        emit({"type": "system", "subtype": "init", "session_id": "sess-stubborn"})
        time.sleep(60)

    if mode == "hang":
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
        with open(os.environ["FAKE_AGENT_PIDFILE"], "w") as f:
            f.write(str(child.pid))
        emit({"type": "system", "subtype": "init", "session_id": "sess-hang"})
        time.sleep(60)
''')


@pytest.fixture
def fake_agent(tmp_path: Path) -> list[str]:
    """Argv prefix running the fake agent CLI with this interpreter."""
    script = tmp_path / "fake_agent.py"
    script.write_text(FAKE_AGENT, encoding="utf-8")
    return [sys.executable, str(script)]


class FrameRecorder:
    """Event callback collecting frames; signals on exit."""

    def __init__(self) -> None:
        self.frames: list[dict[str, Any]] = []
        self.exited = asyncio.Event()

    async def __call__(self, frame: dict[str, Any]) -> None:
        self.frames.append(frame)
        if frame.get("type") == "exit":
            self.exited.set()

    @property
    def events(self) -> list[RelayEvent]:
        return [from_frame(f) for f in self.frames]

    def of_type(self, frame_type: str) -> list[dict[str, Any]]:
        return [f for f in self.frames if f.get("type") == frame_type]

    async def wait_exit(self, timeout: float = 15.0) -> None:
        await asyncio.wait_for(self.exited.wait(), timeout)


@pytest.fixture
def recorder() -> FrameRecorder:
    return FrameRecorder()


