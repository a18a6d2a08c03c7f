from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from agentdeck.adapters.event_bus import EventBus
from agentdeck.adapters.events import (
    APPROVAL_REQUEST,
    SESSION_STATUS,
    SessionsChanged,
    SurfaceSendMessage,
)
from agentdeck.adapters.orchestrator import SessionOrchestrator
from agentdeck.adapters.ui_multiplexer import UIMultiplexer
from agentdeck.engine.cli_resolver import CachedResolver
from agentdeck.engine.config import HostConfig
from agentdeck.engine.errors import (
    CliNotFoundError,
    SessionNotFoundError,
    StdinUnavailableError,
    StdinWriteError,
)
from agentdeck.engine.models import CliLocation, DiscoveryMethod, InstallResult, SessionStatus
from agentdeck.engine.protocol import ChatEvent, SessionCreated, TaskComplete

LOCATION = CliLocation(
    path="/usr/local/bin/agent",
    discovery_method=DiscoveryMethod.LOGIN_SHELL,
    captured_shell_path="/opt/node/bin:/usr/bin",
)


class FakeProcesses:
    """In-memory stand-in for ProcessHandler."""

    def __init__(self) -> None:
        self.live: set[str] = set()
        self.spawned: list[tuple] = []
        self.writes: list[tuple[str, dict]] = []
        self.stops: list[str] = []
        self.fail: dict[str, Exception] = {}
        self.spawn_gate: asyncio.Event | None = None

    def has_process(self, session_id: str) -> bool:
        return session_id in self.live

    def has_stdin(self, session_id: str) -> bool:
        return session_id in self.live

    async def spawn_process(self, session_id, cli_path, working_directory, *, shell_path=None) -> None:
        self.spawned.append((session_id, cli_path, shell_path))
        if self.spawn_gate is not None:
            await self.spawn_gate.wait()
        self.live.add(session_id)

    async def write_to_stdin(self, session_id, message) -> None:
        if session_id in self.fail:
            raise self.fail[session_id]
        if session_id not in self.live:
            raise StdinUnavailableError(session_id)
        self.writes.append((session_id, message.to_dict()))

    def stop_process(self, session_id) -> None:
        self.stops.append(session_id)
        self.live.discard(session_id)

    async def stop_all(self) -> None:
        for session_id in list(self.live):
            self.stop_process(session_id)

    def writes_of(self, wire_type: str) -> list[tuple[str, dict]]:
        return [(sid, msg) for sid, msg in self.writes if msg["type"] == wire_type]


class Harness:
    def __init__(self, location: CliLocation | None = LOCATION, max_sessions: int = 10) -> None:
        self.settings: dict = {"autoApprovalEnabled": True}
        self.notifications: list[str] = []
        self.processes = FakeProcesses()
        self.bus = EventBus()
        self.ui = MagicMock(spec=UIMultiplexer)
        self.ui.handle_for.return_value = None
        self.resolver = MagicMock()
        self.resolver.resolve = AsyncMock(return_value=location)
        self.installer = MagicMock()
        self.installer.get_cli_install_command.return_value = "npm install -g @acme/agent-cli"
        self.orch = SessionOrchestrator(
            HostConfig(cli_name="agent", max_sessions=max_sessions),
            bus=self.bus,
            processes=self.processes,
            ui=self.ui,
            resolver=self.resolver,
            installer=self.installer,
            settings_provider=lambda: self.settings,
            notify_error=self.notifications.append,
        )

    def add_session(self, session_id: str, status: SessionStatus = SessionStatus.IDLE, live: bool = True):
        session = self.orch.registry.create(session_id, session_id, "/work")
        if status != SessionStatus.CREATING:
            self.orch.registry.update(session_id, status=SessionStatus.IDLE)
            if status != SessionStatus.IDLE:
                self.orch.registry.update(session_id, status=status)
        if live:
            self.processes.live.add(session_id)
        return session

    def status(self, session_id: str) -> SessionStatus:
        return self.orch.registry.require(session_id).status


# ── Permission sync ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_sync_twice_broadcasts_once() -> None:
    h = Harness()
    h.add_session("s1")
    h.add_session("s2")

    assert await h.orch.sync_permission_config_to_running_sessions() is True
    assert await h.orch.sync_permission_config_to_running_sessions() is False

    updates = h.processes.writes_of("updatePermissionConfig")
    assert sorted(sid for sid, _ in updates) == ["s1", "s2"]
    assert updates[0][1]["config"]["enabled"] is True


@pytest.mark.asyncio
async def test_sync_rebroadcasts_when_effective_config_changes() -> None:
    h = Harness()
    h.add_session("s1")
    await h.orch.sync_permission_config_to_running_sessions()

    h.settings = {"autoApprovalEnabled": True, "unrelatedKey": 42}
    assert await h.orch.sync_permission_config_to_running_sessions() is False

    h.settings = {"autoApprovalEnabled": True, "alwaysAllowWrite": True}
    assert await h.orch.sync_permission_config_to_running_sessions() is True
    updates = h.processes.writes_of("updatePermissionConfig")
    assert len(updates) == 2
    assert updates[1][1]["config"]["write"]["enabled"] is True


@pytest.mark.asyncio
async def test_settings_change_between_syncs_writes_once_to_writable_session() -> None:
    h = Harness()
    h.settings = {"autoApprovalEnabled": False}
    await h.orch.create_session("go", "/work", session_id="s1")
    spawned_with = h.processes.writes_of("updatePermissionConfig")
    assert spawned_with[0][1]["config"]["enabled"] is False

    assert await h.orch.sync_permission_config_to_running_sessions() is False
    h.settings = {"autoApprovalEnabled": True}
    assert await h.orch.sync_permission_config_to_running_sessions() is True

    updates = h.processes.writes_of("updatePermissionConfig")[len(spawned_with):]
    assert len(updates) == 1
    assert updates[0][0] == "s1"
    assert updates[0][1]["config"]["enabled"] is True


@pytest.mark.asyncio
async def test_sync_skips_sessions_without_stdin_and_survives_write_failure() -> None:
    h = Harness()
    h.add_session("dead", live=False)
    h.add_session("broken")
    h.add_session("ok")
    h.processes.fail["broken"] = StdinWriteError("broken", "EPIPE")

    assert await h.orch.sync_permission_config_to_running_sessions() is True

    assert [sid for sid, _ in h.processes.writes_of("updatePermissionConfig")] == ["ok"]
    assert h.notifications == []
    assert h.orch.permission_baseline is not None


# ── Cancel / send / approval ─────────────────────────────────


@pytest.mark.asyncio
async def test_cancel_with_stdin_writes_abort_only() -> None:
    h = Harness()
    h.add_session("s1", SessionStatus.BUSY)

    await h.orch.cancel_session("s1")

    assert h.processes.writes == [("s1", {"type": "cancelTask"})]
    assert h.processes.stops == []


@pytest.mark.asyncio
async def test_cancel_without_stdin_stops_only() -> None:
    h = Harness()
    h.add_session("s1", SessionStatus.BUSY, live=False)

    await h.orch.cancel_session("s1")

    assert h.processes.writes == []
    assert h.processes.stops == ["s1"]


@pytest.mark.asyncio
async def test_cancel_write_failure_notifies_and_does_not_stop() -> None:
    h = Harness()
    h.add_session("s1", SessionStatus.BUSY)
    h.processes.fail["s1"] = StdinWriteError("s1", "EPIPE")

    with pytest.raises(StdinWriteError):
        await h.orch.cancel_session("s1")
    assert len(h.notifications) == 1
    assert h.processes.stops == []


@pytest.mark.asyncio
async def test_send_message_marks_busy() -> None:
    h = Harness()
    h.add_session("s1")

    await h.orch.send_message("s1", "run the tests")

    assert h.processes.writes == [("s1", {
        "type": "askResponse", "askResponse": "messageResponse", "text": "run the tests",
    })]
    assert h.status("s1") == SessionStatus.BUSY
    h.ui.post_to_session.assert_any_await("s1", {"type": SESSION_STATUS, "status": "busy"})


@pytest.mark.asyncio
async def test_send_failure_notifies_exactly_once() -> None:
    h = Harness()
    h.add_session("s1", live=False)

    with pytest.raises(StdinUnavailableError):
        await h.orch.send_message("s1", "hello")

    assert len(h.notifications) == 1
    assert "message" in h.notifications[0]
    assert h.status("s1") == SessionStatus.IDLE


@pytest.mark.asyncio
async def test_send_to_unknown_session_raises() -> None:
    h = Harness()
    with pytest.raises(SessionNotFoundError):
        await h.orch.send_message("ghost", "hi")
    assert h.notifications == []


@pytest.mark.asyncio
async def test_approval_and_rejection_wire_and_error_text() -> None:
    h = Harness()
    h.add_session("s1")

    await h.orch.respond_to_approval("s1", True)
    await h.orch.respond_to_approval("s1", False, note="too risky")
    assert [m["askResponse"] for _, m in h.processes.writes] == [
        "yesButtonClicked", "noButtonClicked",
    ]
    assert h.processes.writes[1][1]["text"] == "too risky"

    h.processes.live.clear()
    with pytest.raises(StdinUnavailableError):
        await h.orch.respond_to_approval("s1", True)
    with pytest.raises(StdinUnavailableError):
        await h.orch.respond_to_approval("s1", False)
    assert "approval" in h.notifications[0]
    assert "rejection" in h.notifications[1]


@pytest.mark.asyncio
async def test_surface_message_failure_marks_error_with_one_notification() -> None:
    h = Harness()
    h.add_session("s1")
    h.processes.fail["s1"] = StdinWriteError("s1", "EPIPE")

    await h.orch.handle_surface_message(SurfaceSendMessage(session_id="s1", text="hi"))

    assert h.status("s1") == SessionStatus.ERROR
    assert len(h.notifications) == 1


@pytest.mark.asyncio
async def test_surface_message_for_unknown_session_is_ignored() -> None:
    h = Harness()
    await h.orch.handle_surface_message(SurfaceSendMessage(session_id="ghost", text="hi"))
    assert h.processes.writes == []


# ── Create / delete ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_session_without_cli_notifies_and_raises() -> None:
    h = Harness(location=None)
    with pytest.raises(CliNotFoundError):
        await h.orch.create_session("hello", "/work")
    assert len(h.notifications) == 1
    assert "npm install -g @acme/agent-cli" in h.notifications[0]
    assert len(h.orch.registry) == 0


@pytest.mark.asyncio
async def test_create_session_spawns_and_sends_config_then_prompt() -> None:
    h = Harness()

    session = await h.orch.create_session("Refactor the parser module", "/work", session_id="s1")

    assert session.status == SessionStatus.CREATING
    assert session.label == "Refactor the parser module"
    assert h.orch.registry.selected_id == "s1"
    assert h.processes.spawned == [("s1", LOCATION.path, LOCATION.captured_shell_path)]
    h.ui.open_surface.assert_awaited_once_with("s1")
    assert [m["type"] for _, m in h.processes.writes] == ["updatePermissionConfig", "askResponse"]
    assert h.processes.writes[1][1]["text"] == "Refactor the parser module"
    events = [e for e in h.bus.drain() if isinstance(e, SessionsChanged)]
    assert events and events[0].sessions[0]["sessionId"] == "s1"


@pytest.mark.asyncio
async def test_late_joining_session_receives_current_baseline() -> None:
    h = Harness()
    h.settings = {"alwaysAllowReadOnly": True}
    await h.orch.sync_permission_config_to_running_sessions()
    h.settings = {"alwaysAllowReadOnly": False}

    await h.orch.create_session("go", "/work", session_id="late")

    (_, update), = h.processes.writes_of("updatePermissionConfig")
    assert update["config"]["read"]["enabled"] is True


@pytest.mark.asyncio
async def test_delete_session_stops_and_forgets() -> None:
    h = Harness()
    h.add_session("s1", SessionStatus.BUSY)

    await h.orch.delete_session("s1")

    assert h.processes.stops == ["s1"]
    h.ui.close_surface.assert_awaited_once_with("s1")
    assert "s1" not in h.orch.registry


@pytest.mark.asyncio
async def test_capacity_never_prunes_session_with_live_process() -> None:
    h = Harness(max_sessions=1)
    await h.orch.create_session("first", "/work", session_id="a")
    await h.orch._on_agent_message("a", SessionCreated(session_id="a"))
    assert h.status("a") == SessionStatus.IDLE

    await h.orch.create_session("second", "/work", session_id="b")

    assert "a" in h.orch.registry
    assert "b" in h.orch.registry
    assert h.processes.stops == []
    h.ui.close_surface.assert_not_awaited()


@pytest.mark.asyncio
async def test_capacity_prune_closes_surface_of_exited_session() -> None:
    h = Harness(max_sessions=1)
    h.add_session("a", SessionStatus.IDLE, live=False)

    await h.orch.create_session("next", "/work", session_id="b")

    assert "a" not in h.orch.registry
    h.ui.close_surface.assert_awaited_once_with("a")
    assert h.processes.stops == ["a"]


@pytest.mark.asyncio
async def test_delete_during_spawn_stops_late_process() -> None:
    h = Harness()
    h.processes.spawn_gate = asyncio.Event()

    creating = asyncio.create_task(h.orch.create_session("go", "/work", session_id="x"))
    while not h.processes.spawned:
        await asyncio.sleep(0)
    await h.orch.delete_session("x")
    h.processes.spawn_gate.set()

    with pytest.raises(SessionNotFoundError):
        await creating
    assert "x" not in h.orch.registry
    assert not h.processes.has_process("x")
    assert h.processes.writes == []
    assert h.processes.stops == ["x", "x"]


# ── Agent messages and exits ─────────────────────────────────


@pytest.mark.asyncio
async def test_agent_messages_drive_status() -> None:
    h = Harness()
    h.add_session("s1", SessionStatus.CREATING)

    await h.orch._on_agent_message("s1", SessionCreated(session_id="abc"))
    assert h.status("s1") == SessionStatus.IDLE

    await h.orch._on_agent_message("s1", ChatEvent(payload={"type": "say", "say": "api_req_started"}))
    assert h.status("s1") == SessionStatus.BUSY

    await h.orch._on_agent_message("s1", ChatEvent(payload={
        "type": "ask", "ask": "command", "text": "rm -rf build", "partial": True,
    }))
    assert h.status("s1") == SessionStatus.BUSY

    await h.orch._on_agent_message("s1", ChatEvent(payload={
        "type": "ask", "ask": "command", "text": "rm -rf build",
    }))
    assert h.status("s1") == SessionStatus.IDLE
    h.ui.post_to_session.assert_any_await("s1", {
        "type": APPROVAL_REQUEST, "ask": "command", "text": "rm -rf build",
    })

    await h.orch._on_agent_message("s1", ChatEvent(payload={"type": "say", "say": "api_req_started"}))
    await h.orch._on_agent_message("s1", TaskComplete(exit_code=0))
    assert h.status("s1") == SessionStatus.IDLE


@pytest.mark.asyncio
async def test_clean_exit_removes_session() -> None:
    h = Harness()
    h.add_session("s1")

    await h.orch._on_process_exit("s1", 0, False)

    assert "s1" not in h.orch.registry
    h.ui.close_surface.assert_awaited_once_with("s1")
    assert h.notifications == []


@pytest.mark.asyncio
async def test_stopped_process_goes_idle() -> None:
    h = Harness()
    h.add_session("s1", SessionStatus.BUSY)

    await h.orch._on_process_exit("s1", -15, True)

    assert h.status("s1") == SessionStatus.IDLE
    assert h.notifications == []


@pytest.mark.asyncio
async def test_crash_marks_error_and_notifies() -> None:
    h = Harness()
    h.add_session("s1", SessionStatus.BUSY)

    await h.orch._on_process_exit("s1", 1, False)

    session = h.orch.registry.require("s1")
    assert session.status == SessionStatus.ERROR
    assert session.exit_code == 1
    assert len(h.notifications) == 1


@pytest.mark.asyncio
async def test_exit_of_deleted_session_is_ignored() -> None:
    h = Harness()
    await h.orch._on_process_exit("ghost", 1, False)
    assert h.notifications == []


@pytest.mark.asyncio
async def test_agent_log_is_recorded() -> None:
    h = Harness()
    h.add_session("s1")
    h.orch._on_agent_log("s1", "stderr line")
    assert h.orch.registry.require("s1").logs == ["stderr line"]


# ── CLI ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_install_success_invalidates_cached_resolver() -> None:
    h = Harness()
    cached = MagicMock(spec=CachedResolver)
    cached.resolve = AsyncMock(return_value=LOCATION)
    h.orch._resolver = cached
    h.installer.install_or_update = AsyncMock(
        return_value=InstallResult(success=True, cli_path=LOCATION.path),
    )

    result = await h.orch.install_cli()

    assert result.success
    cached.invalidate.assert_called_once()
    assert h.orch.cli_location == LOCATION


@pytest.mark.asyncio
async def test_install_permission_failure_includes_command() -> None:
    h = Harness()
    h.installer.install_or_update = AsyncMock(
        return_value=InstallResult(success=False, error="EACCES", suggest_terminal=True),
    )

    await h.orch.install_cli()

    payload = h.ui.post_to_panel.await_args.args[0]
    assert payload["suggestTerminal"] is True
    assert payload["installCommand"] == "npm install -g @acme/agent-cli"
