"""HTTP + SSE server hosting the agent panel.

Plays the role of the host's single visible panel: the panel page
subscribes to ``/events`` and mounts one sandboxed iframe per session
from the ``agentManager.mountSurface`` messages it receives. Messages
from an iframe come back through ``/surfaces/{handle}/message`` and are
attributed by handle only.

Usage:
    agentdeck --server [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Any

from aiohttp import web

from agentdeck.adapters.assets import AssetLoader
from agentdeck.adapters.event_bus import EventBus
from agentdeck.adapters.events import event_to_dict
from agentdeck.adapters.orchestrator import SessionOrchestrator
from agentdeck.adapters.ui_multiplexer import UIMultiplexer
from agentdeck.engine.cli_resolver import CliResolver
from agentdeck.engine.config import HostConfig
from agentdeck.engine.errors import (
    CliNotFoundError,
    ProcessSpawnError,
    SessionNotFoundError,
    StdinUnavailableError,
    StdinWriteError,
)
from agentdeck.engine.shell_env import capture_shell_path
from agentdeck.shared.services.settings_store import SettingsStore

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).resolve().parent / "static"


class _BadRequest(Exception):
    pass


class AgentDeckServer:
    """aiohttp application wrapping one SessionOrchestrator."""

    def __init__(
        self,
        config: HostConfig | None = None,
        *,
        host: str = "127.0.0.1",
        port: int = 0,
        settings: SettingsStore | None = None,
        orchestrator: SessionOrchestrator | None = None,
    ) -> None:
        self._config = config or HostConfig.from_env()
        self._host = host
        self._port = port
        self._settings = settings or SettingsStore(self._config.settings_path)
        if orchestrator is None:
            bus = EventBus()
            ui = UIMultiplexer(
                bus,
                AssetLoader(self._config.asset_dir, self._config.asset_base_url),
            )
            orchestrator = SessionOrchestrator(
                self._config,
                bus=bus,
                ui=ui,
                resolver=CliResolver(self._config, log=logger.info),
                settings_provider=self._settings.snapshot,
            )
        self._orchestrator = orchestrator
        self._sse_queues: list[asyncio.Queue[dict[str, Any]]] = []
        self._pump_task: asyncio.Task | None = None
        self._started_at = time.time()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_startup.append(self._on_startup)
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()
        logger.info(
            "AgentDeckServer init host=%s port=%s cli=%s settings=%s pid=%s",
            self._host, self._port, self._config.cli_name,
            self._settings.path, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def orchestrator(self) -> SessionOrchestrator:
        return self._orchestrator

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-agentdeck-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
        except _BadRequest as exc:
            response = web.json_response({"error": str(exc)}, status=400)
        except SessionNotFoundError as exc:
            response = web.json_response({"error": str(exc)}, status=404)
        except (StdinUnavailableError, StdinWriteError) as exc:
            response = web.json_response({"error": str(exc)}, status=409)
        except CliNotFoundError as exc:
            response = web.json_response(
                {"error": str(exc), "installCommand": f"npm install -g {self._config.cli_package}"},
                status=503,
            )
        except ProcessSpawnError as exc:
            response = web.json_response({"error": str(exc)}, status=500)
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        r.add_get("/panel", self._handle_panel)
        # CLI discovery / install
        r.add_get("/cli", self._handle_cli_status)
        r.add_post("/cli/resolve", self._handle_cli_resolve)
        r.add_post("/cli/install", self._handle_cli_install)
        r.add_get("/cli/shell-path", self._handle_shell_path)
        # Sessions
        r.add_get("/sessions", self._handle_list_sessions)
        r.add_post("/sessions", self._handle_create_session)
        r.add_get("/sessions/{id}", self._handle_get_session)
        r.add_delete("/sessions/{id}", self._handle_delete_session)
        r.add_post("/sessions/{id}/message", self._handle_send_message)
        r.add_post("/sessions/{id}/cancel", self._handle_cancel)
        r.add_post("/sessions/{id}/approval", self._handle_approval)
        # Sub-document messages
        r.add_post("/surfaces/{handle}/message", self._handle_surface_message)
        # Settings / theme
        r.add_get("/settings", self._handle_get_settings)
        r.add_put("/settings", self._handle_put_settings)
        r.add_put("/theme", self._handle_put_theme)

    # ── App lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        self._orchestrator.bus.reset()
        self._pump_task = asyncio.create_task(self._pump_events())

    async def _on_cleanup(self, app: web.Application) -> None:
        await self._orchestrator.shutdown()
        self._orchestrator.bus.close()
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass

    async def _pump_events(self) -> None:
        async for event in self._orchestrator.bus.consume():
            data = event_to_dict(event)
            self._broadcast_sse(data.pop("event"), data)

    def _broadcast_sse(self, event_type: str, data: dict[str, Any]) -> None:
        msg = {"event": event_type, "data": data}
        for queue in self._sse_queues:
            try:
                queue.put_nowait(msg)
            except asyncio.QueueFull:
                logger.warning("SSE queue full, dropping event")

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("agentdeck server started but no listening socket was reported.")
        self._port = actual_port
        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("agentdeck server listening on %s:%d", self._host, actual_port)

        await self._orchestrator.refresh_cli()
        await self._orchestrator.sync_permission_config_to_running_sessions()

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Helpers ──

    @staticmethod
    async def _read_json(request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except json.JSONDecodeError as exc:
            raise _BadRequest(f"Invalid JSON body: {exc}") from exc
        if not isinstance(body, dict):
            raise _BadRequest("JSON body must be an object")
        return body

    def _session_or_404(self, request: web.Request):
        return self._orchestrator.registry.require(request.match_info["id"])

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        location = self._orchestrator.cli_location
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "cli": location.to_dict() if location is not None else None,
            "sessions": len(self._orchestrator.registry),
        })

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )
        await response.prepare(request)

        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=5000)
        self._sse_queues.append(queue)
        logger.info("SSE client connected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))

        registry = self._orchestrator.registry
        try:
            connected = {
                "sessions": [s.to_dict() for s in registry.list()],
                "selectedId": registry.selected_id,
            }
            await response.write(f"event: connected\ndata: {json.dumps(connected)}\n\n".encode())
            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=30.0)
                    data = json.dumps(msg["data"])
                    await response.write(f"event: {msg['event']}\ndata: {data}\n\n".encode())
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._sse_queues.remove(queue)
            logger.info("SSE client disconnected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))
        return response

    async def _handle_panel(self, request: web.Request) -> web.Response:
        page = await asyncio.to_thread((STATIC_DIR / "panel.html").read_text)
        return web.Response(text=page, content_type="text/html")

    async def _handle_cli_status(self, request: web.Request) -> web.Response:
        location = self._orchestrator.cli_location
        return web.json_response({
            "found": location is not None,
            "location": location.to_dict() if location is not None else None,
        })

    async def _handle_cli_resolve(self, request: web.Request) -> web.Response:
        location = await self._orchestrator.refresh_cli()
        return web.json_response({
            "found": location is not None,
            "location": location.to_dict() if location is not None else None,
        })

    async def _handle_cli_install(self, request: web.Request) -> web.Response:
        result = await self._orchestrator.install_cli()
        return web.json_response(result.to_dict())

    async def _handle_shell_path(self, request: web.Request) -> web.Response:
        captured = await capture_shell_path(
            timeout=self._config.shell_path_timeout, log=logger.debug,
        )
        return web.json_response({"shellPath": captured})

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        registry = self._orchestrator.registry
        return web.json_response({
            "sessions": [s.to_dict() for s in registry.list()],
            "selectedId": registry.selected_id,
        })

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        prompt = str(body.get("prompt", "")).strip()
        if not prompt:
            raise _BadRequest("prompt is required")
        cwd = Path(str(body.get("workingDirectory") or os.getcwd())).expanduser()
        if not cwd.is_dir():
            raise _BadRequest(f"workingDirectory does not exist: {cwd}")
        label = body.get("label")
        session = await self._orchestrator.create_session(
            prompt, cwd, label=str(label) if label else None,
        )
        return web.json_response(
            {
                **session.to_dict(),
                "handle": self._orchestrator.ui.handle_for(session.session_id),
            },
            status=201,
        )

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        session = self._session_or_404(request)
        data = session.to_dict()
        data["logs"] = list(session.logs)
        data["hasProcess"] = self._orchestrator.processes.has_process(session.session_id)
        data["hasStdin"] = self._orchestrator.processes.has_stdin(session.session_id)
        return web.json_response(data)

    async def _handle_delete_session(self, request: web.Request) -> web.Response:
        session = self._session_or_404(request)
        await self._orchestrator.delete_session(session.session_id)
        return web.json_response({"deleted": session.session_id})

    async def _handle_send_message(self, request: web.Request) -> web.Response:
        session = self._session_or_404(request)
        body = await self._read_json(request)
        text = str(body.get("text", ""))
        if not text.strip():
            raise _BadRequest("text is required")
        images = body.get("images") or []
        if not isinstance(images, list):
            raise _BadRequest("images must be a list")
        await self._orchestrator.send_message(session.session_id, text, [str(i) for i in images])
        return web.json_response({"sent": True})

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        session = self._session_or_404(request)
        await self._orchestrator.cancel_session(session.session_id)
        return web.json_response({"cancelled": True})

    async def _handle_approval(self, request: web.Request) -> web.Response:
        session = self._session_or_404(request)
        body = await self._read_json(request)
        approved = body.get("approved")
        if not isinstance(approved, bool):
            raise _BadRequest("approved must be true or false")
        note = body.get("note")
        await self._orchestrator.respond_to_approval(
            session.session_id, approved, str(note) if note else None,
        )
        return web.json_response({"approved": approved})

    async def _handle_surface_message(self, request: web.Request) -> web.Response:
        handle = request.match_info["handle"]
        body = await self._read_json(request)
        decoded = await self._orchestrator.ui.handle_inbound(handle, body)
        if decoded is None:
            return web.json_response({"error": f"Unknown surface: {handle}"}, status=404)
        return web.json_response({"sessionId": decoded.session_id, "type": decoded.type})

    async def _handle_get_settings(self, request: web.Request) -> web.Response:
        return web.json_response(self._settings.snapshot())

    async def _handle_put_settings(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        snapshot = self._settings.update(body)
        broadcast = await self._orchestrator.sync_permission_config_to_running_sessions()
        return web.json_response({"settings": snapshot, "broadcast": broadcast})

    async def _handle_put_theme(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        variables = body.get("variables") or {}
        if not isinstance(variables, dict):
            raise _BadRequest("variables must be an object")
        kind = str(body.get("kind", "dark"))
        await self._orchestrator.ui.set_theme(
            {str(k): str(v) for k, v in variables.items()}, kind,
        )
        return web.json_response({"kind": kind})
