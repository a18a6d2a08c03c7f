"""Best-effort cleanup for orphaned agent CLI processes.

An agent spawned by an earlier host that crashed keeps running with
init as its parent. On startup the server reaps those so they stop
holding workspace locks.
"""

from __future__ import annotations

import os
import re
import signal
import subprocess
import sys
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def _list_processes() -> dict[int, ProcessInfo]:
    """Return process table keyed by PID using `ps` output."""
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.strip().split(maxsplit=2)
        if len(parts) < 3:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2])
    return table


def is_agent_process(args: str, cli_name: str, json_flag: str = "--json-io") -> bool:
    """Match `<cli> ... --json-io` command lines (node shims included)."""
    pattern = rf"(^|[/\s]){re.escape(cli_name)}(\.cmd|\.js)?\b.*\s{re.escape(json_flag)}\b"
    return re.search(pattern, args) is not None


def _has_host_ancestor(
    proc: ProcessInfo,
    table: dict[int, ProcessInfo],
    current_pid: int,
) -> bool:
    """True when a live agentdeck host is somewhere up the tree."""
    cur = proc
    hops = 0
    while hops < 32:
        if cur.pid == current_pid:
            return True
        if "agentdeck --server" in cur.args or "agentdeck.app" in cur.args:
            return True
        parent = table.get(cur.ppid)
        if parent is None:
            return False
        cur = parent
        hops += 1
    return False


def cleanup_stale_runtime_processes(
    cli_name: str,
    *,
    current_pid: int | None = None,
    log: Callable[[str], None] | None = None,
) -> int:
    """Kill orphaned agent processes. Returns how many were signalled.

    A process is reaped only when it looks like our agent invocation,
    has no agentdeck host in its ancestry, and is orphaned (parent is
    PID 1 or missing).
    """
    logger = log or (lambda _: None)
    if sys.platform == "win32":
        return 0
    pid = current_pid or os.getpid()
    try:
        table = _list_processes()
    except (OSError, subprocess.CalledProcessError) as exc:
        logger(f"Process listing failed: {exc}")
        return 0

    killed = 0
    for proc in table.values():
        if proc.pid == pid or not is_agent_process(proc.args, cli_name):
            continue
        is_orphan = proc.ppid == 1 or proc.ppid not in table
        if not is_orphan or _has_host_ancestor(proc, table, pid):
            continue
        try:
            os.kill(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            logger(f"Cannot reap pid={proc.pid}: {exc}")
            continue
        killed += 1
        logger(f"Reaped orphaned agent pid={proc.pid} cmd={proc.args[:180]}")
    return killed
