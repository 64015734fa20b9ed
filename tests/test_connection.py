from __future__ import annotations

import json
import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
from aiohttp.test_utils import AioHTTPTestCase

from chatrelay.adapters.events import ProcessExit, ResultEvent
from chatrelay.client.connection import RelayConnection
from chatrelay.client.controller import ConversationController, ConversationState
from chatrelay.engine.config import RelayConfig
from chatrelay.engine.errors import RelayConnectionError
from chatrelay.shared.services.path_codec import encode_path
from chatrelay.web.server import RelayServer
from conftest import FAKE_AGENT


class TestRelayConnection(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        root = Path(self.tmpdir)
        self.work = root / "work"
        self.work.mkdir()
        claude_home = root / "claude"
        log_dir = claude_home / "projects" / encode_path(self.work)
        log_dir.mkdir(parents=True)
        (log_dir / "sess-1.jsonl").write_text(
            json.dumps({"type": "user", "uuid": "u1", "timestamp": "2026-01-01T00:00:00Z",
                        "message": {"content": "hello"}}) + "\n",
            encoding="utf-8",
        )
        script = root / "fake_agent.py"
        script.write_text(FAKE_AGENT, encoding="utf-8")

        self._env_patch = patch.dict(os.environ, {}, clear=False)
        self._env_patch.start()
        os.environ.pop("ANTHROPIC_API_KEY", None)
        os.environ.pop("FAKE_AGENT_MODE", None)

        relay = RelayServer(RelayConfig(
            agent_command=[sys.executable, str(script)],
            claude_home=str(claude_home),
            state_dir=str(root / "state"),
        ))
        return relay.app

    async def asyncTearDown(self):
        self._env_patch.stop()
        await super().asyncTearDown()

    def _base_url(self) -> str:
        return str(self.server.make_url(""))

    async def test_rest_helpers(self):
        async with RelayConnection(self._base_url()) as conn:
            sessions = await conn.list_sessions(str(self.work))
            assert [s["id"] for s in sessions] == ["sess-1"]
            messages = await conn.get_messages("sess-1", str(self.work))
            assert messages[0].content == "hello"
            assert await conn.rewind_session("sess-1", str(self.work), 3) is False
            assert await conn.delete_session("sess-1", str(self.work)) is True

    async def test_controller_round_trip(self):
        async with RelayConnection(self._base_url()) as conn:
            controller = ConversationController(conn, cwd=str(self.work))
            await controller.send_message("ping")
            async for event in conn.events():
                await controller.handle_event(event)
                if isinstance(event, ProcessExit):
                    break
                if isinstance(event, ResultEvent):
                    assert controller.usage.output_tokens == 5

        assert controller.state is ConversationState.IDLE
        assert controller.session_id == "sess-1"
        assert controller.messages[0].text == "ping"
        assert controller.messages[1].text == "echo:ping"
        assert controller.usage.total_cost_usd == 0.5

    async def test_send_without_connection_raises(self):
        conn = RelayConnection(self._base_url())
        with pytest.raises(RelayConnectionError):
            await conn.send_abort()
