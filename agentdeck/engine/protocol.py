"""Line-delimited JSON protocol between the host and an agent subprocess.

Host -> subprocess messages are written one JSON object per line on
stdin. Subprocess -> host messages arrive the same way on stdout and
are decoded through a single ``type`` -> class table; anything the
table does not know (or that is not JSON) becomes ``AgentOutput``.
"""
from __future__ import annotations

import abc
import json
from dataclasses import dataclass, field
from typing import Any

from .errors import ProtocolError

# askResponse values understood by the agent runtime
ASK_MESSAGE_RESPONSE = "messageResponse"
ASK_APPROVE = "yesButtonClicked"
ASK_REJECT = "noButtonClicked"

# ask types that block on a yes/no from the user
APPROVAL_ASKS = frozenset({
    "command",
    "tool",
    "browser_action_launch",
    "use_mcp_server",
    "api_req_failed",
    "resume_task",
    "resume_completed_task",
    "mistake_limit_reached",
})


# ── Host -> subprocess ───────────────────────────────────────


@dataclass
class HostMessage(abc.ABC):
    """Base for messages written to an agent's stdin."""

    @abc.abstractmethod
    def to_dict(self) -> dict[str, Any]:
        """Wire form of the message."""


@dataclass
class UserInput(HostMessage):
    text: str = ""
    images: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": "askResponse",
            "askResponse": ASK_MESSAGE_RESPONSE,
            "text": self.text,
        }
        if self.images:
            data["images"] = list(self.images)
        return data


@dataclass
class ApprovalResponse(HostMessage):
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": "askResponse", "askResponse": ASK_APPROVE}
        if self.note:
            data["text"] = self.note
        return data


@dataclass
class RejectionResponse(HostMessage):
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": "askResponse", "askResponse": ASK_REJECT}
        if self.note:
            data["text"] = self.note
        return data


@dataclass
class Abort(HostMessage):
    def to_dict(self) -> dict[str, Any]:
        return {"type": "cancelTask"}


@dataclass
class PermissionConfigUpdate(HostMessage):
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "updatePermissionConfig", "config": self.config}


def encode_host_message(message: HostMessage) -> bytes:
    """Serialize one host message as a newline-terminated JSON line."""
    return (json.dumps(message.to_dict(), separators=(",", ":")) + "\n").encode("utf-8")


# ── Subprocess -> host ───────────────────────────────────────


@dataclass
class AgentMessage:
    """Base for messages read from an agent's stdout."""
    message_type: str = ""


@dataclass
class SessionCreated(AgentMessage):
    message_type: str = "session_created"
    session_id: str | None = None


@dataclass
class ChatEvent(AgentMessage):
    """A chat message from the agent (``say`` or ``ask``)."""
    message_type: str = "kilocode"
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return str(self.payload.get("type", ""))

    @property
    def ask(self) -> str | None:
        return self.payload.get("ask") if self.kind == "ask" else None

    @property
    def say(self) -> str | None:
        return self.payload.get("say") if self.kind == "say" else None

    @property
    def needs_approval(self) -> bool:
        return self.ask in APPROVAL_ASKS

    @property
    def is_partial(self) -> bool:
        return bool(self.payload.get("partial"))


@dataclass
class AgentError(AgentMessage):
    message_type: str = "error"
    error: str = ""
    details: Any = None


@dataclass
class TaskComplete(AgentMessage):
    message_type: str = "complete"
    exit_code: int | None = None


@dataclass
class AgentLog(AgentMessage):
    message_type: str = "log"
    level: str = "info"
    message: str = ""
    context: str | None = None

    def format(self) -> str:
        return f"[{self.level}] {self.context or 'Agent'}: {self.message}"


@dataclass
class AgentOutput(AgentMessage):
    """Non-protocol stdout text, kept verbatim."""
    message_type: str = "output"
    text: str = ""


_MESSAGE_MAP: dict[str, type[AgentMessage]] = {
    "session_created": SessionCreated,
    "kilocode": ChatEvent,
    "error": AgentError,
    "complete": TaskComplete,
    "log": AgentLog,
}

# wire key -> dataclass field, where they differ
_FIELD_ALIASES = {
    "sessionId": "session_id",
    "exitCode": "exit_code",
}


def _normalize_error(data: dict[str, Any]) -> dict[str, Any]:
    # {"error": {"message": ..., "stack": ...}} or {"error": "..."}
    error = data.get("error")
    if isinstance(error, dict):
        data = dict(data)
        data["error"] = str(error.get("message") or "Unknown agent error")
        data.setdefault("details", error)
    return data


def dict_to_message(data: dict[str, Any]) -> AgentMessage:
    """Convert a decoded wire object to its typed message."""
    msg_type = data.get("type")
    if not isinstance(msg_type, str):
        raise ProtocolError(json.dumps(data), "missing string 'type'")
    cls = _MESSAGE_MAP.get(msg_type)
    if cls is None:
        return AgentOutput(text=json.dumps(data))
    if cls is AgentError:
        data = _normalize_error(data)
    valid_fields = set(cls.__dataclass_fields__) - {"message_type"}
    filtered: dict[str, Any] = {}
    for key, value in data.items():
        name = _FIELD_ALIASES.get(key, key)
        if name in valid_fields:
            filtered[name] = value
    return cls(**filtered)


def decode_agent_line(line: str) -> AgentMessage | None:
    """Decode one stdout line. Blank lines yield None."""
    text = line.strip()
    if not text:
        return None
    if not text.startswith("{"):
        return AgentOutput(text=text)
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return AgentOutput(text=text)
    if not isinstance(data, dict):
        return AgentOutput(text=text)
    try:
        return dict_to_message(data)
    except ProtocolError:
        return AgentOutput(text=text)


def message_to_dict(message: AgentMessage) -> dict[str, Any]:
    """Plain dict for relaying a subprocess message to the UI."""
    d: dict[str, Any] = {}
    for name in message.__dataclass_fields__:
        value = getattr(message, name)
        if value is not None:
            d[name] = value
    d["type"] = d.pop("message_type")
    return d
