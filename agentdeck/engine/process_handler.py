"""One agent subprocess per session.

The handler is the only component that touches OS processes. It owns
the per-session process state machine (see lifecycle.py) and the
writable-stdin flag, which is cleared the moment the process is seen to
exit so ``has_stdin`` never reports a dead pipe as usable.
"""
from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .config import HostConfig
from .errors import ProcessSpawnError, StdinUnavailableError, StdinWriteError
from .lifecycle import is_terminal, validate_process_transition
from .models import ProcessState
from .protocol import AgentMessage, HostMessage, decode_agent_line, encode_host_message

logger = logging.getLogger(__name__)

# Chat payloads can carry whole files; the asyncio default (64 KiB) is too small.
_STREAM_LIMIT = 8 * 1024 * 1024
_STOP_GRACE_SECONDS = 5.0

# async def on_message(session_id, message) -> None
MessageCallback = Callable[[str, AgentMessage], Awaitable[None]]
# def on_log(session_id, line) -> None
LogCallback = Callable[[str, str], None]
# async def on_exit(session_id, returncode, killed) -> None
ExitCallback = Callable[[str, int | None, bool], Awaitable[None]]


@dataclass
class _ManagedProcess:
    session_id: str
    proc: asyncio.subprocess.Process
    state: ProcessState = ProcessState.SPAWNED
    stdin_open: bool = True
    stop_requested: bool = False
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    tasks: list[asyncio.Task] = field(default_factory=list)


class ProcessHandler:
    """Spawns, writes to and stops per-session agent processes."""

    def __init__(
        self,
        config: HostConfig | None = None,
        *,
        on_message: MessageCallback | None = None,
        on_log: LogCallback | None = None,
        on_exit: ExitCallback | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._config = config or HostConfig()
        self._on_message = on_message
        self._on_log = on_log
        self._on_exit = on_exit
        self._env = env
        self._processes: dict[str, _ManagedProcess] = {}
        self._states: dict[str, ProcessState] = {}
        self._watchers: dict[str, asyncio.Task] = {}

    # ── Queries ─────────────────────────────────────────────────

    def has_process(self, session_id: str) -> bool:
        managed = self._processes.get(session_id)
        return managed is not None and not is_terminal(managed.state)

    def has_stdin(self, session_id: str) -> bool:
        managed = self._processes.get(session_id)
        if managed is None or is_terminal(managed.state) or not managed.stdin_open:
            return False
        if managed.proc.returncode is not None:
            managed.stdin_open = False
            return False
        stdin = managed.proc.stdin
        return stdin is not None and not stdin.is_closing()

    def process_state(self, session_id: str) -> ProcessState | None:
        """Current (or last known) process state for a session."""
        return self._states.get(session_id)

    def active_session_ids(self) -> list[str]:
        return [sid for sid in self._processes if self.has_process(sid)]

    # ── Spawn ───────────────────────────────────────────────────

    def build_env(self, shell_path: str | None = None) -> dict[str, str]:
        env = dict(self._env if self._env is not None else os.environ)
        env["NO_COLOR"] = "1"
        env["FORCE_COLOR"] = "0"
        if shell_path:
            for key in [k for k in env if k.upper() == "PATH"]:
                del env[key]
            env["PATH"] = shell_path
        return env

    async def spawn_process(
        self,
        session_id: str,
        cli_path: str,
        working_directory: str | Path,
        *,
        shell_path: str | None = None,
    ) -> None:
        if self.has_process(session_id):
            raise ProcessSpawnError(session_id, "a process is already running")
        argv = [
            cli_path,
            *self._config.cli_args,
            f"--workspace={working_directory}",
        ]
        logger.info("Spawning agent for session %s: %s", session_id, " ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(working_directory),
                env=self.build_env(shell_path),
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            raise ProcessSpawnError(session_id, str(exc)) from exc

        managed = _ManagedProcess(session_id=session_id, proc=proc)
        self._processes[session_id] = managed
        self._states[session_id] = ProcessState.SPAWNED
        readers = [
            asyncio.create_task(self._read_stdout(managed)),
            asyncio.create_task(self._read_stderr(managed)),
        ]
        managed.tasks.extend(readers)
        self._watchers[session_id] = asyncio.create_task(self._watch_exit(managed, readers))

    def _set_state(self, managed: _ManagedProcess, target: ProcessState) -> None:
        validate_process_transition(managed.state, target)
        managed.state = target
        self._states[managed.session_id] = target
        logger.debug("Process for %s -> %s", managed.session_id, target.value)

    def _mark_running(self, managed: _ManagedProcess) -> None:
        if managed.state == ProcessState.SPAWNED:
            self._set_state(managed, ProcessState.RUNNING)

    # ── Readers and exit watcher ────────────────────────────────

    async def _read_stdout(self, managed: _ManagedProcess) -> None:
        stream = managed.proc.stdout
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                logger.warning("Dropping oversized output line from %s", managed.session_id)
                continue
            if not raw:
                break
            self._mark_running(managed)
            message = decode_agent_line(raw.decode("utf-8", errors="replace"))
            if message is None or self._on_message is None:
                continue
            try:
                await self._on_message(managed.session_id, message)
            except Exception:
                logger.exception("Message callback failed for %s", managed.session_id)

    async def _read_stderr(self, managed: _ManagedProcess) -> None:
        stream = managed.proc.stderr
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            self._mark_running(managed)
            logger.debug("[%s stderr] %s", managed.session_id, line)
            if self._on_log is not None:
                try:
                    self._on_log(managed.session_id, line)
                except Exception:
                    logger.exception("Log callback failed for %s", managed.session_id)

    async def _watch_exit(
        self, managed: _ManagedProcess, readers: list[asyncio.Task],
    ) -> None:
        returncode = await managed.proc.wait()
        managed.stdin_open = False
        # deliver everything the process printed before reporting exit
        await asyncio.gather(*readers, return_exceptions=True)

        killed = managed.stop_requested
        if not is_terminal(managed.state):
            self._set_state(
                managed, ProcessState.KILLED if killed else ProcessState.EXITED,
            )
        if self._processes.get(managed.session_id) is managed:
            del self._processes[managed.session_id]
        if self._watchers.get(managed.session_id) is asyncio.current_task():
            del self._watchers[managed.session_id]

        logger.info(
            "Agent for session %s exited (code=%s, killed=%s)",
            managed.session_id, returncode, killed,
        )
        if self._on_exit is not None:
            try:
                await self._on_exit(managed.session_id, returncode, killed)
            except Exception:
                logger.exception("Exit callback failed for %s", managed.session_id)

    # ── Write ───────────────────────────────────────────────────

    async def write_to_stdin(self, session_id: str, message: HostMessage) -> None:
        """Serialize *message* and write it as one line.

        Raises StdinUnavailableError when there is no live writable
        stream and StdinWriteError when the pipe breaks mid-write.
        """
        if not self.has_stdin(session_id):
            raise StdinUnavailableError(session_id)
        managed = self._processes[session_id]
        data = encode_host_message(message)
        async with managed.write_lock:
            # the process may have exited while we waited for the lock
            if self._processes.get(session_id) is not managed or not self.has_stdin(session_id):
                raise StdinUnavailableError(session_id)
            stdin = managed.proc.stdin
            assert stdin is not None
            try:
                stdin.write(data)
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                managed.stdin_open = False
                raise StdinWriteError(session_id, str(exc) or type(exc).__name__) from exc
            except OSError as exc:
                managed.stdin_open = False
                raise StdinWriteError(session_id, str(exc)) from exc
        self._mark_running(managed)

    # ── Stop ────────────────────────────────────────────────────

    def stop_process(self, session_id: str) -> None:
        """Terminate the session's process. No-op if there is none."""
        managed = self._processes.pop(session_id, None)
        if managed is None or is_terminal(managed.state):
            return
        managed.stop_requested = True
        managed.stdin_open = False
        self._set_state(managed, ProcessState.KILLED)
        logger.info("Stopping agent for session %s", session_id)
        stdin = managed.proc.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()
        try:
            managed.proc.terminate()
        except ProcessLookupError:
            return
        managed.tasks.append(asyncio.create_task(self._escalate(managed)))

    async def _escalate(self, managed: _ManagedProcess) -> None:
        try:
            await asyncio.wait_for(managed.proc.wait(), timeout=_STOP_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Agent for %s ignored SIGTERM; killing", managed.session_id)
            try:
                managed.proc.kill()
            except ProcessLookupError:
                pass

    async def stop_all(self, timeout: float = _STOP_GRACE_SECONDS + 1.0) -> None:
        """Stop every process and wait for their exit watchers."""
        watchers = list(self._watchers.values())
        for session_id in list(self._processes):
            self.stop_process(session_id)
        if watchers:
            await asyncio.wait(watchers, timeout=timeout)
