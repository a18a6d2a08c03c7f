"""Core data models for the agent host.

All dataclasses and enums shared between the resolver, installer,
registry and process handler. Single source of truth to avoid circular
imports.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path


class SessionStatus(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    CREATING = "creating"
    BUSY = "busy"
    IDLE = "idle"
    ERROR = "error"


class ProcessState(str, Enum):
    """Per-session subprocess states, driven only by the process handler."""
    SPAWNED = "spawned"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"


class DiscoveryMethod(str, Enum):
    """Which step of the discovery chain located the CLI."""
    DIRECT = "direct"
    LOGIN_SHELL = "loginShell"
    REGISTRY_GLOBAL_BIN = "registryGlobalBin"
    FALLBACK_LIST = "fallbackList"


def _make_id() -> str:
    return uuid.uuid4().hex[:12]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    """One logical agent run. Owned and mutated by the SessionRegistry."""
    session_id: str = field(default_factory=_make_id)
    label: str = ""
    status: SessionStatus = SessionStatus.CREATING
    created_at: datetime = field(default_factory=_utcnow)
    working_directory: Path = field(default_factory=Path.cwd)
    logs: list[str] = field(default_factory=list)
    exit_code: int | None = None

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "label": self.label,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "workingDirectory": str(self.working_directory),
            "exitCode": self.exit_code,
        }


@dataclass(frozen=True)
class CliLocation:
    """Result of one discovery attempt. Never cached implicitly."""
    path: str
    discovery_method: DiscoveryMethod
    captured_shell_path: str | None = None

    def to_dict(self) -> dict:
        data = {
            "path": self.path,
            "discoveryMethod": self.discovery_method.value,
        }
        if self.captured_shell_path is not None:
            data["capturedShellPath"] = self.captured_shell_path
        return data


@dataclass(frozen=True)
class InstallResult:
    """Outcome of exactly one install attempt."""
    success: bool
    cli_path: str | None = None
    error: str | None = None
    suggest_terminal: bool | None = None

    def to_dict(self) -> dict:
        data: dict = {"success": self.success}
        if self.cli_path is not None:
            data["cliPath"] = self.cli_path
        if self.error is not None:
            data["error"] = self.error
        if self.suggest_terminal:
            data["suggestTerminal"] = True
        return data
