"""HTTP + WebSocket server relaying agent CLI runs to chat clients.

Each WebSocket connection owns one AgentProcessManager. Clients send
``send_message`` / ``abort`` commands; the server streams back every
event of the connection's runs as JSON frames. REST endpoints expose
the persisted session logs, settings and recent directories.

Endpoints:
    GET    /health
    GET    /ws                           (WebSocket)
    GET    /api/projects
    GET    /api/sessions?cwd=
    GET    /api/sessions/{id}/messages?cwd=
    POST   /api/sessions/{id}/rewind?cwd=   {"userTurnIndex": n}
    DELETE /api/sessions/{id}?cwd=
    GET    /api/models
    GET    /api/settings
    POST   /api/settings
    GET    /api/directories/recent
    POST   /api/directories/validate      {"path": ...}
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from dataclasses import asdict
from pathlib import Path
from typing import Any

from aiohttp import WSMsgType, web

from chatrelay.adapters.events import ProcessError, RelayEvent, RunRejected, to_frame
from chatrelay.engine.config import RelayConfig
from chatrelay.engine.model_aliases import ModelCatalog
from chatrelay.engine.process_manager import AgentProcessManager
from chatrelay.shared.services import path_codec
from chatrelay.shared.services.preferences import (
    RecentDirectories,
    RelaySettings,
    validate_directory,
)
from chatrelay.shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)


class _ClientLink:
    """One WebSocket client and the agent process it drives."""

    def __init__(self, link_id: str, ws: web.WebSocketResponse) -> None:
        self.link_id = link_id
        self.ws = ws
        self._send_lock = asyncio.Lock()
        self.manager: AgentProcessManager | None = None

    async def send(self, frame: dict[str, Any]) -> None:
        if self.ws.closed:
            return
        async with self._send_lock:
            try:
                await self.ws.send_json(frame)
            except ConnectionResetError:
                logger.debug("ws %s: peer gone, dropped %s frame", self.link_id, frame.get("type"))

    async def send_event(self, event: RelayEvent) -> None:
        await self.send(to_frame(event))


class RelayServer:
    """aiohttp application relaying agent runs and serving session logs."""

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        store: SessionStore | None = None,
        catalog: ModelCatalog | None = None,
    ) -> None:
        self._config = config or RelayConfig()
        self._host = self._config.host
        self._port = self._config.port
        self._store = store or SessionStore(self._config.projects_root)
        self._catalog = catalog or ModelCatalog(
            claude_home=Path(self._config.claude_home).expanduser(),
        )
        self._state_dir = self._config.state_path
        self._recent = RecentDirectories(self._state_dir, self._config.recent_dirs_limit)
        self._links: dict[str, _ClientLink] = {}
        self._started_at = time.time()
        self._app = web.Application(
            middlewares=[self._request_logging_middleware, self._cors_middleware],
        )
        self._app.on_startup.append(self._on_startup)
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()
        logger.info(
            "RelayServer init host=%s port=%s projects_root=%s state_dir=%s pid=%s",
            self._host, self._port, self._store.projects_root, self._state_dir, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def active_links(self) -> int:
        return len(self._links)

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        start = time.monotonic()
        logger.debug("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id, exc.status, elapsed_ms,
            )
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        origin = self._config.cors_origin
        if not origin:
            return await handler(request)
        if request.method == "OPTIONS":
            response: web.StreamResponse = web.Response(status=204)
        else:
            response = await handler(request)
        if not response.prepared:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/ws", self._handle_ws)
        r.add_get("/api/projects", self._handle_list_projects)
        r.add_get("/api/sessions", self._handle_list_sessions)
        r.add_get("/api/sessions/{id}/messages", self._handle_get_messages)
        r.add_post("/api/sessions/{id}/rewind", self._handle_rewind)
        r.add_delete("/api/sessions/{id}", self._handle_delete_session)
        r.add_get("/api/models", self._handle_models)
        r.add_get("/api/settings", self._handle_get_settings)
        r.add_post("/api/settings", self._handle_update_settings)
        r.add_get("/api/directories/recent", self._handle_recent_dirs)
        r.add_post("/api/directories/validate", self._handle_validate_dir)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._port
        server = getattr(site, "_server", None)
        sockets = getattr(server, "sockets", None) or []
        if sockets:
            actual_port = sockets[0].getsockname()[1]
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("chatrelay server listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()

    async def _on_startup(self, app: web.Application) -> None:
        self._catalog.refresh_in_background()

    async def _on_shutdown(self, app: web.Application) -> None:
        await self._catalog.close()
        links = list(self._links.values())
        logger.info("Shutting down %d client link(s)", len(links))
        for link in links:
            if link.manager is not None:
                await link.manager.shutdown()
            await link.ws.close()

    # ── Helpers ──

    @staticmethod
    def _require_cwd(request: web.Request) -> tuple[str | None, web.Response | None]:
        cwd = request.query.get("cwd", "").strip()
        if not cwd:
            return None, web.json_response({"error": "cwd query parameter required"}, status=400)
        return cwd, None

    @staticmethod
    async def _json_body(request: web.Request) -> dict[str, Any]:
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    # ── REST handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "connections": len(self._links),
            "running": sum(
                1 for link in self._links.values()
                if link.manager is not None and link.manager.busy
            ),
        })

    async def _handle_list_projects(self, request: web.Request) -> web.Response:
        projects = await asyncio.to_thread(path_codec.list_projects, self._store.projects_root)
        return web.json_response({"projects": [p.to_dict() for p in projects]})

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        cwd, err = self._require_cwd(request)
        if err:
            return err
        sessions = await asyncio.to_thread(self._store.list_sessions, cwd)
        return web.json_response({"sessions": [s.to_dict() for s in sessions]})

    async def _handle_get_messages(self, request: web.Request) -> web.Response:
        cwd, err = self._require_cwd(request)
        if err:
            return err
        session_id = request.match_info["id"]
        messages = await asyncio.to_thread(self._store.get_messages, cwd, session_id)
        return web.json_response({"messages": [m.to_dict() for m in messages]})

    async def _handle_rewind(self, request: web.Request) -> web.Response:
        cwd, err = self._require_cwd(request)
        if err:
            return err
        session_id = request.match_info["id"]
        body = await self._json_body(request)
        index = body.get("userTurnIndex")
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            return web.json_response(
                {"error": "userTurnIndex must be a non-negative integer"}, status=400,
            )
        result = await asyncio.to_thread(self._store.rewind, cwd, session_id, index)
        if not result.ok:
            return web.json_response(
                {**result.to_dict(), "error": "User turn not found"}, status=404,
            )
        return web.json_response(result.to_dict())

    async def _handle_delete_session(self, request: web.Request) -> web.Response:
        cwd, err = self._require_cwd(request)
        if err:
            return err
        deleted = await asyncio.to_thread(self._store.delete, cwd, request.match_info["id"])
        return web.json_response({"deleted": deleted}, status=200 if deleted else 404)

    async def _handle_models(self, request: web.Request) -> web.Response:
        models = await self._catalog.models()
        return web.json_response({"models": [m.to_dict() for m in models]})

    async def _handle_get_settings(self, request: web.Request) -> web.Response:
        settings = await asyncio.to_thread(RelaySettings.load, self._state_dir)
        return web.json_response(asdict(settings))

    async def _handle_update_settings(self, request: web.Request) -> web.Response:
        body = await self._json_body(request)
        settings = await asyncio.to_thread(RelaySettings.load, self._state_dir)
        if isinstance(body.get("model"), str):
            settings.model = body["model"]
        if isinstance(body.get("cwd"), str):
            settings.cwd = body["cwd"]
        settings.validate()
        await asyncio.to_thread(settings.save, self._state_dir)
        return web.json_response(asdict(settings))

    async def _handle_recent_dirs(self, request: web.Request) -> web.Response:
        directories = await asyncio.to_thread(self._recent.load)
        return web.json_response({"directories": directories})

    async def _handle_validate_dir(self, request: web.Request) -> web.Response:
        body = await self._json_body(request)
        path = body.get("path")
        if not isinstance(path, str) or not path.strip():
            return web.json_response({"error": "path required"}, status=400)
        resolved = os.path.abspath(os.path.expanduser(path.strip()))
        return web.json_response({"valid": validate_directory(resolved), "path": resolved})

    # ── WebSocket ──

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        link = _ClientLink(str(uuid.uuid4())[:8], ws)
        link.manager = AgentProcessManager(
            link.send,
            agent_command=self._config.agent_command,
            kill_grace_seconds=self._config.kill_grace_seconds,
        )
        self._links[link.link_id] = link
        logger.info("ws %s connected from %s", link.link_id, request.remote)
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._dispatch_command(link, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("ws %s error: %s", link.link_id, ws.exception())
        finally:
            self._links.pop(link.link_id, None)
            if link.manager.busy:
                logger.info("ws %s disconnected mid-run; aborting", link.link_id)
            await link.manager.shutdown()
            logger.info("ws %s closed", link.link_id)
        return ws

    async def _dispatch_command(self, link: _ClientLink, raw: str) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            data = None
        if not isinstance(data, dict):
            await link.send_event(ProcessError(message="Malformed command", code="INVALID_INPUT"))
            return

        command = data.get("type")
        if command == "send_message":
            await self._handle_send_message(link, data)
        elif command == "abort":
            assert link.manager is not None
            link.manager.abort()
        else:
            logger.warning("ws %s: unknown command %r", link.link_id, command)
            await link.send_event(ProcessError(
                message=f"Unknown command: {command}", code="INVALID_INPUT",
            ))

    async def _handle_send_message(self, link: _ClientLink, data: dict[str, Any]) -> None:
        manager = link.manager
        assert manager is not None
        run_id = str(data.get("run_id") or uuid.uuid4().hex[:12])
        message = data.get("message")
        if not isinstance(message, str) or not message.strip():
            await link.send_event(ProcessError(
                run_id=run_id, message="Message is empty", code="INVALID_INPUT", fatal=True,
            ))
            return
        cwd = data.get("cwd")
        if not isinstance(cwd, str) or not validate_directory(cwd):
            await link.send_event(ProcessError(
                run_id=run_id,
                message=f"Working directory not found: {cwd}",
                code="INVALID_INPUT",
                fatal=True,
            ))
            return
        if manager.busy:
            await link.send_event(RunRejected(run_id=run_id))
            return

        await asyncio.to_thread(self._recent.add, cwd)
        model = data.get("model") or self._config.default_model
        # The catalog refresh may hit the network; the run starts now.
        model = self._catalog.resolve_cached(str(model))
        self._catalog.refresh_in_background()
        session_id = data.get("session_id") or None
        started = await manager.run(
            message, cwd=cwd, session_id=session_id, model=model, run_id=run_id,
        )
        if not started:
            await link.send_event(RunRejected(run_id=run_id))
