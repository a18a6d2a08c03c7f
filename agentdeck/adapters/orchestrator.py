"""Session orchestrator: the only writer of sessions, processes and surfaces.

Composes the registry, the process handler and the UI multiplexer and
implements the user-facing operations. Every operation re-checks that
its session is still registered after each await, since a delete may
have run in between.

Write failures on a session's stdin surface exactly one notification
and are re-raised to the caller.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from agentdeck.adapters.event_bus import EventBus
from agentdeck.adapters.events import (
    AGENT_MESSAGE,
    APPROVAL_REQUEST,
    CLI_STATUS,
    INSTALL_PROGRESS,
    INSTALL_RESULT,
    SESSION_ERROR,
    SESSION_LOG,
    SESSION_STATUS,
    ErrorNotification,
    SessionsChanged,
    SurfaceApprove,
    SurfaceCancel,
    SurfaceDelete,
    SurfaceInbound,
    SurfacePost,
    SurfaceReady,
    SurfaceReject,
    SurfaceSendMessage,
)
from agentdeck.adapters.ui_multiplexer import UIMultiplexer
from agentdeck.engine.cli_resolver import CachedResolver, CliResolver
from agentdeck.engine.config import ErrorNotifier, HostConfig, SettingsProvider
from agentdeck.engine.errors import (
    CliNotFoundError,
    InvalidTransitionError,
    ProcessSpawnError,
    SessionNotFoundError,
    StdinUnavailableError,
    StdinWriteError,
)
from agentdeck.engine.installer import CliInstaller
from agentdeck.engine.models import CliLocation, InstallResult, Session, SessionStatus
from agentdeck.engine.permission_config import PermissionConfig, derive_permission_config
from agentdeck.engine.process_handler import ProcessHandler
from agentdeck.engine.protocol import (
    Abort,
    AgentError,
    AgentLog,
    AgentMessage,
    AgentOutput,
    ApprovalResponse,
    ChatEvent,
    HostMessage,
    PermissionConfigUpdate,
    RejectionResponse,
    SessionCreated,
    TaskComplete,
    UserInput,
    message_to_dict,
)
from agentdeck.engine.session_registry import SessionRegistry, label_from_prompt

logger = logging.getLogger(__name__)

_STDIN_ERRORS = (StdinUnavailableError, StdinWriteError)


def _empty_settings() -> Mapping[str, Any]:
    return {}


class SessionOrchestrator:
    """Implements send / cancel / approve / permission sync across sessions."""

    def __init__(
        self,
        config: HostConfig | None = None,
        *,
        bus: EventBus | None = None,
        registry: SessionRegistry | None = None,
        processes: ProcessHandler | None = None,
        ui: UIMultiplexer | None = None,
        resolver: CliResolver | CachedResolver | None = None,
        installer: CliInstaller | None = None,
        settings_provider: SettingsProvider | None = None,
        notify_error: ErrorNotifier | None = None,
    ) -> None:
        self._config = config or HostConfig()
        self._bus = bus or EventBus()
        if registry is None:
            registry = SessionRegistry(
                max_sessions=self._config.max_sessions,
                max_logs=self._config.max_session_logs,
            )
        self._registry = registry
        self._processes = processes or ProcessHandler(
            self._config,
            on_message=self._on_agent_message,
            on_log=self._on_agent_log,
            on_exit=self._on_process_exit,
        )
        self._ui = ui or UIMultiplexer(self._bus)
        self._ui.set_inbound_handler(self.handle_surface_message)
        self._resolver = resolver or CliResolver(self._config)
        self._installer = installer or CliInstaller(self._config)
        self._settings_provider = settings_provider or _empty_settings
        self._notify_error = notify_error
        self._permission_baseline: PermissionConfig | None = None
        self._cli_location: CliLocation | None = None

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def processes(self) -> ProcessHandler:
        return self._processes

    @property
    def ui(self) -> UIMultiplexer:
        return self._ui

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def cli_location(self) -> CliLocation | None:
        return self._cli_location

    @property
    def permission_baseline(self) -> PermissionConfig | None:
        return self._permission_baseline

    # ── Notifications and panel updates ─────────────────────────

    def _notify(self, message: str, session_id: str | None = None) -> None:
        logger.error(message)
        if self._notify_error is not None:
            self._notify_error(message)
        else:
            self._bus.emit_nowait(ErrorNotification(message=message, session_id=session_id))

    async def _emit_sessions_changed(self) -> None:
        await self._bus.emit(SessionsChanged(
            sessions=[s.to_dict() for s in self._registry.list()],
            selected_id=self._registry.selected_id,
        ))

    async def _set_status(self, session_id: str, status: SessionStatus) -> None:
        session = self._registry.get(session_id)
        if session is None or session.status == status:
            return
        try:
            self._registry.update(session_id, status=status)
        except InvalidTransitionError as exc:
            logger.debug("Ignoring status change for %s: %s", session_id, exc)
            return
        await self._ui.post_to_session(
            session_id, {"type": SESSION_STATUS, "status": status.value},
        )
        await self._emit_sessions_changed()

    async def _mark_error(self, session_id: str) -> None:
        if session_id in self._registry:
            await self._set_status(session_id, SessionStatus.ERROR)

    # ── CLI discovery and install ───────────────────────────────

    async def refresh_cli(self) -> CliLocation | None:
        location = await self._resolver.resolve()
        self._cli_location = location
        await self._ui.post_to_panel({
            "type": CLI_STATUS,
            "found": location is not None,
            "location": location.to_dict() if location is not None else None,
        })
        return location

    async def install_cli(self) -> InstallResult:
        def progress(line: str) -> None:
            self._bus.emit_nowait(SurfacePost(
                message={"type": INSTALL_PROGRESS, "line": line},
            ))

        result = await self._installer.install_or_update(on_progress=progress)
        if result.success:
            if isinstance(self._resolver, CachedResolver):
                self._resolver.invalidate()
            await self.refresh_cli()
        payload = {"type": INSTALL_RESULT, **result.to_dict()}
        if result.suggest_terminal:
            payload["installCommand"] = self._installer.get_cli_install_command()
        await self._ui.post_to_panel(payload)
        return result

    # ── Session lifecycle ───────────────────────────────────────

    async def create_session(
        self,
        prompt: str,
        working_directory: str | Path,
        *,
        label: str | None = None,
        session_id: str | None = None,
    ) -> Session:
        location = self._cli_location or await self.refresh_cli()
        if location is None:
            error = CliNotFoundError(self._config.cli_name)
            self._notify(f"{error}. Install it with: {self._installer.get_cli_install_command()}")
            raise error

        session_id = session_id or uuid.uuid4().hex[:12]
        # a session whose process is still alive is never pruned
        for pruned_id in self._registry.prune_for_capacity(keep=self._processes.has_process):
            self._processes.stop_process(pruned_id)
            await self._ui.close_surface(pruned_id)
        session = self._registry.create(
            session_id, label or label_from_prompt(prompt), working_directory,
        )
        await self._emit_sessions_changed()
        await self._ui.open_surface(session_id)
        self._require_after_await(session_id)

        try:
            await self._processes.spawn_process(
                session_id,
                location.path,
                session.working_directory,
                shell_path=location.captured_shell_path,
            )
        except ProcessSpawnError as exc:
            self._notify(str(exc), session_id)
            await self._mark_error(session_id)
            raise
        self._require_after_await(session_id)

        if self._permission_baseline is None:
            # what this session receives is what the next sync compares against
            self._permission_baseline = derive_permission_config(self._settings_provider())
        config = self._permission_baseline
        try:
            await self._processes.write_to_stdin(
                session_id, PermissionConfigUpdate(config=config.to_dict()),
            )
            self._require_after_await(session_id)
            await self._processes.write_to_stdin(session_id, UserInput(text=prompt))
        except _STDIN_ERRORS as exc:
            self._notify(f"Failed to start session: {exc}", session_id)
            await self._mark_error(session_id)
            raise
        return session

    def _require_after_await(self, session_id: str) -> None:
        """Raise if a delete ran while create_session was suspended."""
        if session_id in self._registry:
            return
        # the process may have been registered after delete's stop
        self._processes.stop_process(session_id)
        raise SessionNotFoundError(session_id)

    async def delete_session(self, session_id: str) -> None:
        self._processes.stop_process(session_id)
        await self._ui.close_surface(session_id)
        self._registry.remove(session_id)
        await self._emit_sessions_changed()

    # ── User operations ─────────────────────────────────────────

    async def _write(self, session_id: str, message: HostMessage, action: str) -> None:
        try:
            await self._processes.write_to_stdin(session_id, message)
        except _STDIN_ERRORS as exc:
            self._notify(f"Failed to send {action} to agent: {exc}", session_id)
            raise

    async def send_message(
        self, session_id: str, text: str, images: list[str] | None = None,
    ) -> None:
        self._registry.require(session_id)
        await self._write(session_id, UserInput(text=text, images=images or []), "message")
        session = self._registry.get(session_id)
        if session is not None and session.status == SessionStatus.IDLE:
            await self._set_status(session_id, SessionStatus.BUSY)

    async def cancel_session(self, session_id: str) -> None:
        """Abort over stdin when possible, otherwise stop the process. Never both."""
        self._registry.require(session_id)
        if self._processes.has_stdin(session_id):
            await self._write(session_id, Abort(), "cancel request")
            return
        logger.info("No writable stdin for %s; stopping process", session_id)
        self._processes.stop_process(session_id)

    async def respond_to_approval(
        self, session_id: str, approved: bool, note: str | None = None,
    ) -> None:
        self._registry.require(session_id)
        if approved:
            await self._write(session_id, ApprovalResponse(note=note), "approval")
        else:
            await self._write(session_id, RejectionResponse(note=note), "rejection")
        session = self._registry.get(session_id)
        if session is not None and session.status == SessionStatus.IDLE:
            await self._set_status(session_id, SessionStatus.BUSY)

    async def sync_permission_config_to_running_sessions(self) -> bool:
        """Broadcast the derived permission config if it changed.

        Returns True when a broadcast happened. The baseline is stored
        before the writes so a concurrent sync sees the new value.
        """
        config = derive_permission_config(self._settings_provider())
        if config == self._permission_baseline:
            return False
        self._permission_baseline = config
        update = PermissionConfigUpdate(config=config.to_dict())
        targets = [
            s.session_id for s in self._registry.list()
            if self._processes.has_stdin(s.session_id)
        ]
        for session_id in targets:
            if session_id not in self._registry or not self._processes.has_stdin(session_id):
                continue
            try:
                await self._processes.write_to_stdin(session_id, update)
            except _STDIN_ERRORS as exc:
                logger.warning("Permission update to %s failed: %s", session_id, exc)
        logger.info("Permission config broadcast to %d session(s)", len(targets))
        return True

    # ── Sub-document messages ───────────────────────────────────

    async def handle_surface_message(self, message: SurfaceInbound) -> None:
        session_id = message.session_id
        if session_id not in self._registry:
            logger.warning("Surface message for unknown session %s", session_id)
            return
        try:
            if isinstance(message, SurfaceSendMessage):
                await self.send_message(session_id, message.text, message.images)
            elif isinstance(message, SurfaceCancel):
                await self.cancel_session(session_id)
            elif isinstance(message, SurfaceApprove):
                await self.respond_to_approval(session_id, True, message.note)
            elif isinstance(message, SurfaceReject):
                await self.respond_to_approval(session_id, False, message.note)
            elif isinstance(message, SurfaceDelete):
                await self.delete_session(session_id)
            elif isinstance(message, SurfaceReady):
                session = self._registry.require(session_id)
                await self._ui.post_to_session(
                    session_id, {"type": SESSION_STATUS, "status": session.status.value},
                )
            else:
                logger.debug("Unhandled surface message %r from %s", message.type, session_id)
        except _STDIN_ERRORS:
            await self._mark_error(session_id)

    # ── Process callbacks ───────────────────────────────────────

    async def _on_agent_message(self, session_id: str, message: AgentMessage) -> None:
        if session_id not in self._registry:
            return
        if isinstance(message, AgentLog):
            self._on_agent_log(session_id, message.format())
            return
        if isinstance(message, AgentOutput):
            self._registry.append_log(session_id, message.text)
            return

        await self._ui.post_to_session(
            session_id, {"type": AGENT_MESSAGE, "message": message_to_dict(message)},
        )
        if isinstance(message, SessionCreated):
            session = self._registry.get(session_id)
            if session is not None and session.status == SessionStatus.CREATING:
                await self._set_status(session_id, SessionStatus.IDLE)
        elif isinstance(message, ChatEvent):
            await self._on_chat_event(session_id, message)
        elif isinstance(message, TaskComplete):
            await self._set_status(session_id, SessionStatus.IDLE)
        elif isinstance(message, AgentError):
            self._registry.append_log(session_id, f"Agent error: {message.error}")
            await self._ui.post_to_session(
                session_id, {"type": SESSION_ERROR, "error": message.error},
            )

    async def _on_chat_event(self, session_id: str, event: ChatEvent) -> None:
        session = self._registry.get(session_id)
        if session is None:
            return
        if event.say == "api_req_started":
            if session.status == SessionStatus.CREATING:
                await self._set_status(session_id, SessionStatus.IDLE)
            await self._set_status(session_id, SessionStatus.BUSY)
        elif event.ask is not None and not event.is_partial:
            await self._set_status(session_id, SessionStatus.IDLE)
            if event.needs_approval:
                await self._ui.post_to_session(session_id, {
                    "type": APPROVAL_REQUEST,
                    "ask": event.ask,
                    "text": event.payload.get("text", ""),
                })

    def _on_agent_log(self, session_id: str, line: str) -> None:
        if session_id not in self._registry:
            return
        self._registry.append_log(session_id, line)
        handle = self._ui.handle_for(session_id)
        if handle is not None:
            self._bus.emit_nowait(SurfacePost(
                handle=handle,
                session_id=session_id,
                message={"type": SESSION_LOG, "line": line},
            ))

    async def _on_process_exit(
        self, session_id: str, returncode: int | None, killed: bool,
    ) -> None:
        session = self._registry.get(session_id)
        if session is None:
            return
        self._registry.update(session_id, exit_code=returncode)
        if killed:
            if session.status != SessionStatus.ERROR:
                await self._set_status(session_id, SessionStatus.IDLE)
            return
        if returncode == 0:
            logger.info("Session %s finished; removing", session_id)
            await self._ui.close_surface(session_id)
            self._registry.remove(session_id)
            await self._emit_sessions_changed()
            return
        self._notify(
            f"Agent for '{session.label}' exited unexpectedly (code {returncode})",
            session_id,
        )
        await self._set_status(session_id, SessionStatus.ERROR)

    async def shutdown(self) -> None:
        await self._processes.stop_all()
