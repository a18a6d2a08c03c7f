"""Environment, subprocess and login-shell helpers used by discovery.

Everything here is async and bounded by a timeout: a broken shell
profile or an unresponsive package manager must never hang the event
loop. Helpers return plain values instead of raising so each discovery
step can degrade to the next one.
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Mapping
from pathlib import Path

from .config import DiagnosticSink, sink_or_default

logger = logging.getLogger(__name__)

PATH_START_MARKER = "__AGENTDECK_PATH_START__"
PATH_END_MARKER = "__AGENTDECK_PATH_END__"

DEFAULT_PATHEXT = ".COM;.EXE;.BAT;.CMD"
DEFAULT_SHELL = "/bin/bash"

# Shells that accept -i and -l as separate flags; the rest get one
# combined flag.
_SEPARATE_FLAG_SHELLS = {"bash", "zsh", "fish", "ksh", "mksh"}


def is_windows(platform: str | None = None) -> bool:
    return (platform or sys.platform) == "win32"


def get_env_value(env: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive environment lookup.

    Windows hands out ``Path`` and ``PATH`` interchangeably, so an exact
    match is tried first and then any key equal ignoring case.
    """
    if name in env:
        return env[name]
    wanted = name.upper()
    for key, value in env.items():
        if key.upper() == wanted:
            return value
    return None


def split_path(value: str | None, platform: str | None = None) -> list[str]:
    if not value:
        return []
    sep = ";" if is_windows(platform) else ":"
    return [entry for entry in value.split(sep) if entry]


def executable_extensions(
    env: Mapping[str, str] | None = None,
    platform: str | None = None,
) -> list[str]:
    """Extensions to try when probing for an executable.

    Only Windows executes by extension; every other platform gets
    a single empty suffix.
    """
    if not is_windows(platform):
        return [""]
    env = env if env is not None else os.environ
    raw = get_env_value(env, "PATHEXT") or DEFAULT_PATHEXT
    return [ext for ext in raw.split(";") if ext]


async def is_regular_file(path: str | Path) -> bool:
    return await asyncio.to_thread(os.path.isfile, path)


def _is_executable_sync(path: str | Path) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


async def is_executable_file(path: str | Path) -> bool:
    return await asyncio.to_thread(_is_executable_sync, path)


async def run_command(
    *args: str,
    timeout: float,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
) -> tuple[int, str, str]:
    """Run a subprocess with stdin closed and a timeout.

    Returns ``(returncode, stdout, stderr)``. On timeout or failure the
    return code is ``-1`` and stderr contains the error message.
    """
    proc = None
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
            cwd=cwd,
        )
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(), timeout=timeout
        )
        return (
            proc.returncode or 0,
            stdout_bytes.decode("utf-8", errors="replace"),
            stderr_bytes.decode("utf-8", errors="replace"),
        )
    except asyncio.TimeoutError:
        if proc is not None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
        return (-1, "", f"Command timed out after {timeout}s: {args[0]}")
    except FileNotFoundError:
        return (-1, "", f"Command not found: {args[0]}")
    except OSError as exc:
        return (-1, "", f"Subprocess error: {exc}")


def user_shell(env: Mapping[str, str] | None = None) -> str:
    env = env if env is not None else os.environ
    return get_env_value(env, "SHELL") or DEFAULT_SHELL


def login_shell_args(shell: str, command: str) -> list[str]:
    """argv for running *command* through an interactive login shell."""
    name = os.path.basename(shell)
    if name in _SEPARATE_FLAG_SHELLS:
        return [shell, "-i", "-l", "-c", command]
    return [shell, "-ilc", command]


async def run_login_shell(
    command: str,
    *,
    timeout: float,
    env: Mapping[str, str] | None = None,
) -> tuple[int, str, str]:
    """Run *command* in the user's login shell so profile-sourced PATH applies."""
    argv = login_shell_args(user_shell(env), command)
    return await run_command(*argv, timeout=timeout, env=env)


def extract_marked_path(output: str) -> str | None:
    """Return the text between the PATH markers, ignoring banner noise."""
    start = output.find(PATH_START_MARKER)
    if start == -1:
        return None
    start += len(PATH_START_MARKER)
    end = output.find(PATH_END_MARKER, start)
    if end == -1:
        return None
    value = output[start:end].strip()
    return value or None


async def capture_shell_path(
    *,
    timeout: float = 10.0,
    env: Mapping[str, str] | None = None,
    platform: str | None = None,
    log: DiagnosticSink | None = None,
) -> str | None:
    """Capture PATH as the user's login shell sees it.

    Returns None when capture fails, times out, or yields the PATH this
    process already has.
    """
    log = sink_or_default(log)
    if is_windows(platform):
        return None
    env = env if env is not None else os.environ
    command = f"printf '%s%s%s\\n' '{PATH_START_MARKER}' \"$PATH\" '{PATH_END_MARKER}'"
    rc, stdout, stderr = await run_login_shell(command, timeout=timeout, env=env)
    if rc != 0 and not stdout:
        log(f"Shell PATH capture failed: {stderr.strip() or f'exit code {rc}'}")
        return None
    captured = extract_marked_path(stdout)
    if captured is None:
        log("Shell PATH capture produced no marked output")
        return None
    if captured == get_env_value(env, "PATH"):
        log("Shell PATH matches the current PATH")
        return None
    log(f"Captured shell PATH ({len(split_path(captured, platform))} entries)")
    return captured
