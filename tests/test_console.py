from __future__ import annotations

import io

import pytest
from rich.console import Console

from chatrelay.adapters.events import AssistantMessage, ResultEvent, UserEcho
from chatrelay.client.console import ConsoleChat
from chatrelay.shared.models.session import SessionMessage


class FakeConnection:
    def __init__(self) -> None:
        self.runs: list[dict] = []
        self.aborts = 0
        self.rewinds: list[tuple] = []

    async def send_run(self, **kwargs):
        self.runs.append(kwargs)

    async def send_abort(self):
        self.aborts += 1

    async def rewind_session(self, session_id, cwd, user_turn_index):
        self.rewinds.append((session_id, cwd, user_turn_index))
        return True

    async def list_sessions(self, cwd):
        return [{"id": "s1", "title": "Fix the build", "updatedAt": "2026-01-01T00:00:00Z"}]

    async def get_messages(self, session_id, cwd):
        return [
            SessionMessage(type="user", content="run tests", uuid="u1"),
            SessionMessage(type="assistant", uuid="a1", content=[
                {"type": "tool_use", "id": "t1", "name": "Bash", "input": {}}]),
            SessionMessage(type="user", uuid="u2", content=[
                {"type": "tool_result", "tool_use_id": "t1", "content": "exit 1", "is_error": True}]),
        ]


@pytest.fixture
def chat():
    output = io.StringIO()
    console = Console(file=output, width=120, color_system=None)
    conn = FakeConnection()
    return ConsoleChat(conn, cwd="/work", model="opus", console=console), conn, output


@pytest.mark.asyncio
async def test_plain_line_sends_and_commands_map(chat):
    ui, conn, output = chat
    assert await ui.handle_line("hello there") is True
    assert conn.runs[0]["message"] == "hello there"

    assert await ui.handle_line("second") is True
    assert "queued, 1 waiting" in output.getvalue()

    await ui.handle_line("/abort")
    assert conn.aborts == 1
    assert await ui.handle_line("/quit") is False


@pytest.mark.asyncio
async def test_result_prints_usage_and_tool_summary(chat):
    ui, conn, output = chat
    await ui.handle_line("list files")
    run = conn.runs[0]["run_id"]
    ctl = ui.controller
    await ctl.handle_event(AssistantMessage(run_id=run, content=[
        {"type": "tool_use", "id": "t1", "name": "Bash", "input": {}},
        {"type": "tool_use", "id": "t2", "name": "Bash", "input": {}},
    ]))
    await ctl.handle_event(UserEcho(run_id=run, content=[
        {"type": "tool_result", "tool_use_id": "t1", "content": "ok"}]))
    await ctl.handle_event(ResultEvent(run_id=run, usage={"input_tokens": 4, "output_tokens": 2}))

    text = output.getvalue()
    assert "tokens in=4 out=2" in text
    assert "tools: Bash x2 (1 ok, 0 failed)" in text


@pytest.mark.asyncio
async def test_sessions_load_and_rewind(chat):
    ui, conn, output = chat
    await ui.handle_line("/sessions")
    assert "Fix the build" in output.getvalue()

    await ui.handle_line("/load s1")
    assert ui.controller.session_id == "s1"
    assert "Bash failed: exit 1" in output.getvalue()

    await ui.handle_line("/rewind 1")
    assert conn.rewinds == [("s1", "/work", 0)]
    assert ui.controller.messages == []

    await ui.handle_line("/rewind 7")
    assert "No message #7" in output.getvalue()


@pytest.mark.asyncio
async def test_model_switch(chat):
    ui, conn, _ = chat
    await ui.handle_line("/model sonnet")
    await ui.handle_line("hi")
    assert conn.runs[0]["model"] == "sonnet"
