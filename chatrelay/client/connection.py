"""Connection from a chat front-end to a relay server.

RelayConnection owns one aiohttp client session and one WebSocket. The
front-end constructs it, passes it to a ConversationController as its
channel, and closes it when done:

    async with RelayConnection("http://127.0.0.1:3001") as conn:
        controller = ConversationController(conn, cwd=os.getcwd())
        async for event in conn.events():
            await controller.handle_event(event)
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import aiohttp

from chatrelay.adapters.event_bus import EventBus
from chatrelay.adapters.events import RelayEvent
from chatrelay.engine.errors import RelayConnectionError
from chatrelay.shared.models.session import SessionMessage

logger = logging.getLogger(__name__)


class RelayConnection:
    """WebSocket command channel plus REST access to session logs."""

    def __init__(self, base_url: str = "http://127.0.0.1:3001", *, bus: EventBus | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._bus = bus or EventBus()
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None

    async def __aenter__(self) -> RelayConnection:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    async def connect(self) -> None:
        if self.connected:
            return
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self._url("/ws"), heartbeat=30.0)
        except (aiohttp.ClientError, OSError) as exc:
            await self._session.close()
            self._session = None
            raise RelayConnectionError(self._base_url, str(exc)) from exc
        self._reader = asyncio.create_task(self._read_loop(self._ws))
        logger.info("Connected to relay %s", self._base_url)

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader is not None:
            try:
                await asyncio.wait_for(self._reader, timeout=5.0)
            except asyncio.TimeoutError:
                self._reader.cancel()
        if self._session is not None:
            await self._session.close()
        self._bus.close()
        self._ws = None
        self._reader = None
        self._session = None

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        callback = self._bus.make_callback()
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = json.loads(msg.data)
                    except ValueError:
                        logger.warning("Dropping non-JSON frame: %.200s", msg.data)
                        continue
                    if isinstance(frame, dict):
                        await callback(frame)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("Relay WebSocket error: %s", ws.exception())
                    break
        finally:
            logger.info("Relay WebSocket closed")
            self._bus.close()

    def events(self) -> AsyncIterator[RelayEvent]:
        """Events in arrival order; ends when the connection closes."""
        return self._bus.consume()

    # ── Commands ──

    async def _send(self, frame: dict[str, Any]) -> None:
        if self._ws is None or self._ws.closed:
            raise RelayConnectionError(self._base_url, "not connected")
        try:
            await self._ws.send_json(frame)
        except (ConnectionResetError, aiohttp.ClientError) as exc:
            raise RelayConnectionError(self._base_url, str(exc)) from exc

    async def send_run(
        self,
        *,
        message: str,
        session_id: str | None,
        model: str | None,
        cwd: str,
        run_id: str,
    ) -> None:
        await self._send({
            "type": "send_message",
            "message": message,
            "session_id": session_id,
            "model": model,
            "cwd": cwd,
            "run_id": run_id,
        })

    async def send_abort(self) -> None:
        await self._send({"type": "abort"})

    # ── REST ──

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> tuple[int, Any]:
        if self._session is None:
            raise RelayConnectionError(self._base_url, "not connected")
        try:
            async with self._session.request(
                method, self._url(path), params=params, json=body,
            ) as resp:
                try:
                    payload = await resp.json()
                except (aiohttp.ContentTypeError, ValueError):
                    payload = None
                return resp.status, payload
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RelayConnectionError(self._base_url, str(exc)) from exc

    async def list_projects(self) -> list[dict[str, Any]]:
        _, payload = await self._request("GET", "/api/projects")
        return (payload or {}).get("projects", [])

    async def list_sessions(self, cwd: str) -> list[dict[str, Any]]:
        _, payload = await self._request("GET", "/api/sessions", params={"cwd": cwd})
        return (payload or {}).get("sessions", [])

    async def get_messages(self, session_id: str, cwd: str) -> list[SessionMessage]:
        _, payload = await self._request(
            "GET", f"/api/sessions/{session_id}/messages", params={"cwd": cwd},
        )
        return [
            SessionMessage.from_dict(item)
            for item in (payload or {}).get("messages", [])
            if isinstance(item, dict)
        ]

    async def rewind_session(self, session_id: str, cwd: str, user_turn_index: int) -> bool:
        status, payload = await self._request(
            "POST",
            f"/api/sessions/{session_id}/rewind",
            params={"cwd": cwd},
            body={"userTurnIndex": user_turn_index},
        )
        return status == 200 and bool((payload or {}).get("ok"))

    async def delete_session(self, session_id: str, cwd: str) -> bool:
        status, payload = await self._request(
            "DELETE", f"/api/sessions/{session_id}", params={"cwd": cwd},
        )
        return status == 200 and bool((payload or {}).get("deleted"))
