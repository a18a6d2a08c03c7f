"""UI message types exchanged with the panel and its sub-documents.

Host -> sub-document messages carry a ``type`` in the fixed
``agentManager.`` namespace. Sub-document -> host messages carry no
prefix; they are attributed by surface handle and re-wrapped with the
owning ``sessionId`` before being decoded here.

Panel events are what the host pushes to its single visible panel
(the server streams them over SSE).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

MESSAGE_PREFIX = "agentManager."

# host -> sub-document / panel message types
AGENT_MESSAGE = MESSAGE_PREFIX + "agentMessage"
SESSION_STATUS = MESSAGE_PREFIX + "sessionStatus"
APPROVAL_REQUEST = MESSAGE_PREFIX + "approvalRequest"
SESSION_LOG = MESSAGE_PREFIX + "sessionLog"
SESSION_ERROR = MESSAGE_PREFIX + "error"
THEME_CHANGED = MESSAGE_PREFIX + "themeChanged"
MOUNT_SURFACE = MESSAGE_PREFIX + "mountSurface"
UNMOUNT_SURFACE = MESSAGE_PREFIX + "unmountSurface"
CLI_STATUS = MESSAGE_PREFIX + "cliStatus"
INSTALL_RESULT = MESSAGE_PREFIX + "installResult"
INSTALL_PROGRESS = MESSAGE_PREFIX + "installProgress"


def with_prefix(message_type: str) -> str:
    """Namespace a host-originated message type (idempotent)."""
    if message_type.startswith(MESSAGE_PREFIX):
        return message_type
    return MESSAGE_PREFIX + message_type


# ── Sub-document -> host ─────────────────────────────────────


@dataclass
class SurfaceInbound:
    """Base for messages coming from a session's sub-document."""
    type: str = ""
    session_id: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class SurfaceReady(SurfaceInbound):
    type: str = "ready"


@dataclass
class SurfaceSendMessage(SurfaceInbound):
    type: str = "sendMessage"
    text: str = ""
    images: list[str] = field(default_factory=list)


@dataclass
class SurfaceCancel(SurfaceInbound):
    type: str = "cancel"


@dataclass
class SurfaceApprove(SurfaceInbound):
    type: str = "approve"
    note: str | None = None


@dataclass
class SurfaceReject(SurfaceInbound):
    type: str = "reject"
    note: str | None = None


@dataclass
class SurfaceDelete(SurfaceInbound):
    type: str = "delete"


_INBOUND_MAP: dict[str, type[SurfaceInbound]] = {
    "ready": SurfaceReady,
    "sendMessage": SurfaceSendMessage,
    "cancel": SurfaceCancel,
    "approve": SurfaceApprove,
    "reject": SurfaceReject,
    "delete": SurfaceDelete,
}


def dict_to_surface_message(data: dict[str, Any]) -> SurfaceInbound:
    """Decode a re-wrapped sub-document message (must carry sessionId)."""
    msg_type = str(data.get("type", ""))
    cls = _INBOUND_MAP.get(msg_type, SurfaceInbound)
    valid_fields = set(cls.__dataclass_fields__) - {"type", "session_id", "data"}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return cls(
        type=msg_type,
        session_id=str(data.get("sessionId", "")),
        data=dict(data),
        **filtered,
    )


# ── Host -> panel ────────────────────────────────────────────


@dataclass
class PanelEvent:
    """Base event pushed to the panel."""
    event_type: str = ""


@dataclass
class SurfacePost(PanelEvent):
    """A message for one sub-document (or the panel itself when handle is None)."""
    event_type: str = "panel_message"
    handle: str | None = None
    session_id: str | None = None
    message: dict[str, Any] = field(default_factory=dict)


@dataclass
class ErrorNotification(PanelEvent):
    event_type: str = "error"
    message: str = ""
    session_id: str | None = None


@dataclass
class SessionsChanged(PanelEvent):
    event_type: str = "sessions_changed"
    sessions: list[dict[str, Any]] = field(default_factory=list)
    selected_id: str | None = None


def event_to_dict(event: PanelEvent) -> dict[str, Any]:
    """Convert a panel event to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    d["event"] = d.pop("event_type")
    return d
