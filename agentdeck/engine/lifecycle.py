"""Session and process state machines.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidTransitionError (a ValueError) rather than silently
proceeding.

Session status:

    CREATING ──┬──> IDLE <──> BUSY
               │
               └──> ERROR

    Any state ──> ERROR  (subprocess failure)
    Any state ──> removed (explicit deletion, handled by the registry)

Process state (one per session, owned by the process handler):

    SPAWNED ──> RUNNING ──┬──> EXITED  (process ended on its own)
       │                  │
       │                  └──> KILLED  (we signalled it)
       │
       └──> EXITED | KILLED  (died before the first read)
"""
from __future__ import annotations

from .errors import InvalidTransitionError
from .models import ProcessState, SessionStatus

SESSION_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.CREATING: {
        SessionStatus.IDLE,
        SessionStatus.ERROR,
    },
    SessionStatus.IDLE: {
        SessionStatus.BUSY,
        SessionStatus.ERROR,
    },
    SessionStatus.BUSY: {
        SessionStatus.IDLE,
        SessionStatus.ERROR,
    },
    SessionStatus.ERROR: {
        SessionStatus.ERROR,
    },
}

PROCESS_TRANSITIONS: dict[ProcessState, set[ProcessState]] = {
    ProcessState.SPAWNED: {
        ProcessState.RUNNING,
        ProcessState.EXITED,
        ProcessState.KILLED,
    },
    ProcessState.RUNNING: {
        ProcessState.EXITED,
        ProcessState.KILLED,
    },
    ProcessState.EXITED: set(),
    ProcessState.KILLED: set(),
}


def _check(kind: str, table: dict, current, target) -> None:
    allowed = table.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        raise InvalidTransitionError(kind, current.value, target.value, allowed_str)


def validate_status_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Validate a session status change. Same-state updates are allowed."""
    if current == target:
        return
    _check("status", SESSION_TRANSITIONS, current, target)


def validate_process_transition(current: ProcessState, target: ProcessState) -> None:
    """Validate a process state change. Raises InvalidTransitionError if invalid."""
    _check("process state", PROCESS_TRANSITIONS, current, target)


def is_terminal(state: ProcessState) -> bool:
    return not PROCESS_TRANSITIONS.get(state)
