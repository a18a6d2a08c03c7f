"""Exception hierarchy for the agent host.

Discovery and install never raise to their callers; everything that
writes to a subprocess or looks up a session does, with one specific
exception per failure mode.
"""
from __future__ import annotations


class AgentDeckError(Exception):
    """Base exception for all agent host errors."""


class SessionNotFoundError(AgentDeckError):
    """No session is registered under the given id."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class InvalidTransitionError(AgentDeckError, ValueError):
    """A status or process-state change not allowed by the lifecycle table."""
    def __init__(self, kind: str, current: str, target: str, allowed: str):
        self.kind = kind
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid {kind} transition: {current} -> {target}. "
            f"Allowed from {current}: {allowed}"
        )


class CliNotFoundError(AgentDeckError):
    """The agent CLI could not be located on this machine."""
    def __init__(self, binary_name: str):
        self.binary_name = binary_name
        super().__init__(f"{binary_name} CLI not found")


class ProcessSpawnError(AgentDeckError):
    """Failed to start the agent subprocess for a session."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Failed to spawn process for session {session_id}: {reason}")


class StdinUnavailableError(AgentDeckError):
    """The session has no live process with a writable input stream."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"No writable stdin for session {session_id}")


class StdinWriteError(AgentDeckError):
    """Writing to a session's input stream failed mid-write."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Failed to write to session {session_id}: {reason}")


class ProtocolError(AgentDeckError):
    """A wire message could not be decoded."""
    def __init__(self, raw: str, reason: str):
        self.raw = raw
        self.reason = reason
        preview = raw if len(raw) <= 80 else raw[:77] + "..."
        super().__init__(f"Invalid message ({reason}): {preview}")


class AssetLoadError(AgentDeckError):
    """A UI bundle asset could not be fetched."""
    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Failed to load UI asset {name}: {reason}")


class UnknownSurfaceError(AgentDeckError):
    """A sub-document handle is not in the ownership table."""
    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"Unknown surface handle: {handle}")
