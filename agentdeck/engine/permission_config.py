"""Permission configuration derived from a settings snapshot.

``derive_permission_config`` is a pure function: equal snapshots give
equal (frozen, hashable) ``PermissionConfig`` values, which is what
lets the orchestrator skip broadcasts when nothing effective changed.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any

DEFAULT_RETRY_DELAY_SECONDS = 10
DEFAULT_QUESTION_TIMEOUT_MS = 60_000


@dataclass(frozen=True)
class ReadPermission:
    enabled: bool = False
    outside: bool = False


@dataclass(frozen=True)
class WritePermission:
    enabled: bool = False
    outside: bool = False
    protected: bool = False


@dataclass(frozen=True)
class TogglePermission:
    enabled: bool = False


@dataclass(frozen=True)
class RetryPermission:
    enabled: bool = False
    delay: int = DEFAULT_RETRY_DELAY_SECONDS


@dataclass(frozen=True)
class ExecutePermission:
    enabled: bool = False
    allowed: tuple[str, ...] = ()
    denied: tuple[str, ...] = ()


@dataclass(frozen=True)
class QuestionPermission:
    enabled: bool = False
    timeout: int = DEFAULT_QUESTION_TIMEOUT_MS


@dataclass(frozen=True)
class PermissionConfig:
    enabled: bool = False
    read: ReadPermission = field(default_factory=ReadPermission)
    write: WritePermission = field(default_factory=WritePermission)
    browser: TogglePermission = field(default_factory=TogglePermission)
    retry: RetryPermission = field(default_factory=RetryPermission)
    mcp: TogglePermission = field(default_factory=TogglePermission)
    mode: TogglePermission = field(default_factory=TogglePermission)
    subtasks: TogglePermission = field(default_factory=TogglePermission)
    execute: ExecutePermission = field(default_factory=ExecutePermission)
    question: QuestionPermission = field(default_factory=QuestionPermission)
    todo: TogglePermission = field(default_factory=TogglePermission)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["execute"]["allowed"] = list(self.execute.allowed)
        data["execute"]["denied"] = list(self.execute.denied)
        return data


def _flag(settings: Mapping[str, Any], key: str) -> bool:
    return settings.get(key) is True


def _int(settings: Mapping[str, Any], key: str, default: int) -> int:
    value = settings.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return max(0, int(value))


def _commands(settings: Mapping[str, Any], key: str) -> tuple[str, ...]:
    value = settings.get(key)
    if not isinstance(value, (list, tuple)):
        return ()
    seen: list[str] = []
    for item in value:
        if not isinstance(item, str):
            continue
        stripped = item.strip()
        if stripped and stripped not in seen:
            seen.append(stripped)
    return tuple(seen)


def derive_permission_config(settings: Mapping[str, Any]) -> PermissionConfig:
    """Build the permission config from a settings snapshot.

    Only literal ``True`` enables a flag; anything else reads as off.
    """
    return PermissionConfig(
        enabled=_flag(settings, "autoApprovalEnabled"),
        read=ReadPermission(
            enabled=_flag(settings, "alwaysAllowReadOnly"),
            outside=_flag(settings, "alwaysAllowReadOnlyOutsideWorkspace"),
        ),
        write=WritePermission(
            enabled=_flag(settings, "alwaysAllowWrite"),
            outside=_flag(settings, "alwaysAllowWriteOutsideWorkspace"),
            protected=_flag(settings, "alwaysAllowWriteProtected"),
        ),
        browser=TogglePermission(enabled=_flag(settings, "alwaysAllowBrowser")),
        retry=RetryPermission(
            enabled=_flag(settings, "alwaysApproveResubmit"),
            delay=_int(settings, "requestDelaySeconds", DEFAULT_RETRY_DELAY_SECONDS),
        ),
        mcp=TogglePermission(enabled=_flag(settings, "alwaysAllowMcp")),
        mode=TogglePermission(enabled=_flag(settings, "alwaysAllowModeSwitch")),
        subtasks=TogglePermission(enabled=_flag(settings, "alwaysAllowSubtasks")),
        execute=ExecutePermission(
            enabled=_flag(settings, "alwaysAllowExecute"),
            allowed=_commands(settings, "allowedCommands"),
            denied=_commands(settings, "deniedCommands"),
        ),
        question=QuestionPermission(
            enabled=_flag(settings, "alwaysAllowFollowupQuestions"),
            timeout=_int(settings, "followupAutoApproveTimeoutMs", DEFAULT_QUESTION_TIMEOUT_MS),
        ),
        todo=TogglePermission(enabled=_flag(settings, "alwaysAllowUpdateTodoList")),
    )
