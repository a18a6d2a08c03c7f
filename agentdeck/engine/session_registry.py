"""In-memory session table.

Passive lookup structure: nothing here touches a subprocess or a UI
surface. The orchestrator is the only writer.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import fields
from pathlib import Path
from typing import Any

from .errors import SessionNotFoundError
from .lifecycle import validate_status_transition
from .models import Session, SessionStatus

logger = logging.getLogger(__name__)

MAX_LABEL_LENGTH = 40

_RUNNING = (SessionStatus.CREATING, SessionStatus.BUSY)
_UPDATABLE = {f.name for f in fields(Session)} - {"session_id", "created_at"}


def label_from_prompt(prompt: str) -> str:
    """Single-line label from a prompt, truncated with a trailing '...'."""
    cleaned = " ".join(prompt.split())
    if len(cleaned) <= MAX_LABEL_LENGTH:
        return cleaned
    return cleaned[: MAX_LABEL_LENGTH - 3] + "..."


class SessionRegistry:
    """Session records keyed by id, plus the current selection."""

    def __init__(self, max_sessions: int = 10, max_logs: int = 100) -> None:
        self._sessions: dict[str, Session] = {}
        self._selected_id: str | None = None
        self._max_sessions = max_sessions
        self._max_logs = max_logs

    def create(
        self,
        session_id: str,
        label: str,
        working_directory: str | Path,
    ) -> Session:
        if session_id in self._sessions:
            raise ValueError(f"Session already exists: {session_id}")
        session = Session(
            session_id=session_id,
            label=label,
            status=SessionStatus.CREATING,
            working_directory=Path(working_directory),
        )
        self._sessions[session_id] = session
        self._selected_id = session_id
        logger.debug("Registered session %s (%s)", session_id, label)
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def list(self) -> list[Session]:
        """All sessions, most recent first."""
        return list(reversed(self._sessions.values()))

    def update(self, session_id: str, **changes: Any) -> Session:
        """Merge *changes* into the record. A status change is validated."""
        session = self.require(session_id)
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update session fields: {', '.join(sorted(unknown))}")
        status = changes.get("status")
        if status is not None:
            status = SessionStatus(status)
            validate_status_transition(session.status, status)
            changes["status"] = status
        for key, value in changes.items():
            setattr(session, key, value)
        if status is not None:
            logger.debug("Session %s -> %s", session_id, status.value)
        return session

    def remove(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is None:
            return
        logger.debug("Removed session %s", session_id)
        if self._selected_id == session_id:
            remaining = self.list()
            self._selected_id = remaining[0].session_id if remaining else None

    @property
    def selected_id(self) -> str | None:
        return self._selected_id

    @selected_id.setter
    def selected_id(self, session_id: str | None) -> None:
        self._selected_id = session_id if session_id in self._sessions else None

    def append_log(self, session_id: str, line: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.logs.append(line)
        overflow = len(session.logs) - self._max_logs
        if overflow > 0:
            del session.logs[:overflow]

    def has_running_sessions(self) -> bool:
        return any(s.status in _RUNNING for s in self._sessions.values())

    def prune_for_capacity(self, keep: Callable[[str], bool] | None = None) -> list[str]:
        """Drop the oldest finished sessions so one more fits.

        Sessions that are ``creating``/``busy``, or for which *keep*
        returns True, are never pruned. Returns the removed ids; the
        caller owns their processes and surfaces.
        """
        overflow = len(self._sessions) + 1 - self._max_sessions
        pruned: list[str] = []
        if overflow <= 0:
            return pruned
        # dict order is creation order
        oldest_first = list(self._sessions.values())
        for session in oldest_first:
            if overflow <= 0:
                break
            if session.status in _RUNNING:
                continue
            if keep is not None and keep(session.session_id):
                continue
            logger.info("Pruning session %s to stay under %d", session.session_id, self._max_sessions)
            self.remove(session.session_id)
            pruned.append(session.session_id)
            overflow -= 1
        return pruned
