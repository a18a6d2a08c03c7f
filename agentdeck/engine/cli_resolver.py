"""Executable discovery for the agent CLI.

``CliResolver.resolve()`` walks an ordered chain and returns the first
hit as a ``CliLocation`` (or None). No step raises: a failure is
reported through the diagnostic sink and the next step runs.

Chain:

    1. direct            which/where on the inherited environment
    2. loginShell        the same locator run through the user's login
                         shell, so profile-sourced PATH entries count
                         (not on Windows)
    3. registryGlobalBin npm's configured global prefix
    4. fallbackList      well-known install locations, version-manager
                         trees enumerated newest-first

Nothing is cached between calls. ``CachedResolver`` is an explicit,
time-bounded wrapper for callers that want one.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from collections.abc import Mapping
from pathlib import Path

from .config import DiagnosticSink, HostConfig, sink_or_default
from .models import CliLocation, DiscoveryMethod
from .shell_env import (
    capture_shell_path,
    executable_extensions,
    get_env_value,
    is_executable_file,
    is_regular_file,
    is_windows,
    run_command,
    run_login_shell,
    split_path,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKER = "not found"


def version_sort_key(name: str) -> tuple[int, ...]:
    """Numeric key for runtime version directory names (``v20.11.1``)."""
    return tuple(int(part) for part in re.findall(r"\d+", name))


def _list_version_bin_dirs(versions_dir: Path) -> list[Path]:
    try:
        entries = [entry for entry in versions_dir.iterdir() if entry.is_dir()]
    except OSError:
        return []
    entries.sort(key=lambda p: (version_sort_key(p.name), p.name), reverse=True)
    return [entry / "bin" for entry in entries]


async def version_manager_bin_dirs(versions_dir: Path) -> list[Path]:
    """bin directories of every installed runtime version, newest first."""
    return await asyncio.to_thread(_list_version_bin_dirs, versions_dir)


async def find_executable(
    name: str,
    *,
    paths: list[str] | None = None,
    env: Mapping[str, str] | None = None,
    platform: str | None = None,
) -> str | None:
    """Probe PATH entries for *name*, honouring PATHEXT on Windows.

    An absolute *name* is accepted only if it is a regular file.
    """
    env = env if env is not None else os.environ
    if os.path.isabs(name):
        return name if await is_regular_file(name) else None
    if paths is None:
        paths = split_path(get_env_value(env, "PATH"), platform)
    extensions = executable_extensions(env, platform)
    for directory in paths:
        for ext in extensions:
            candidate = os.path.join(directory, name + ext)
            if await is_regular_file(candidate):
                return candidate
    return None


class CliResolver:
    """Locates the agent CLI across install methods and platforms."""

    def __init__(
        self,
        config: HostConfig | None = None,
        *,
        env: Mapping[str, str] | None = None,
        platform: str | None = None,
        home: Path | None = None,
        log: DiagnosticSink | None = None,
    ) -> None:
        self._config = config or HostConfig()
        self._env = env
        self._platform = platform
        self._home = home
        self._log = sink_or_default(log)

    @property
    def binary_name(self) -> str:
        return self._config.cli_name

    @property
    def env(self) -> Mapping[str, str]:
        return self._env if self._env is not None else os.environ

    @property
    def home(self) -> Path:
        return self._home if self._home is not None else Path.home()

    @property
    def windows(self) -> bool:
        return is_windows(self._platform)

    async def resolve(self) -> CliLocation | None:
        name = self.binary_name

        path = await self._direct_lookup()
        if path:
            self._log(f"Found {name} via PATH lookup: {path}")
            return CliLocation(path=path, discovery_method=DiscoveryMethod.DIRECT)
        self._log(f"{name} not found in PATH lookup")

        shell_path: str | None = None
        if not self.windows:
            shell_path = await capture_shell_path(
                timeout=self._config.shell_path_timeout,
                env=self.env,
                platform=self._platform,
                log=self._log,
            )
            path = await self._login_shell_lookup()
            if path:
                self._log(f"Found {name} via login shell: {path}")
                return CliLocation(
                    path=path,
                    discovery_method=DiscoveryMethod.LOGIN_SHELL,
                    captured_shell_path=shell_path,
                )
            self._log(f"{name} not found via login shell")

        path = await self._npm_global_bin_lookup(shell_path)
        if path:
            self._log(f"Found {name} in npm global bin: {path}")
            return CliLocation(
                path=path,
                discovery_method=DiscoveryMethod.REGISTRY_GLOBAL_BIN,
                captured_shell_path=shell_path,
            )
        self._log(f"{name} not found in npm global bin")

        for candidate in await self.fallback_candidates():
            if await is_regular_file(candidate):
                self._log(f"Found {name} at fallback path: {candidate}")
                return CliLocation(
                    path=str(candidate),
                    discovery_method=DiscoveryMethod.FALLBACK_LIST,
                    captured_shell_path=shell_path,
                )

        self._log(f"{name} CLI not found")
        return None

    # ── Step 1 ──────────────────────────────────────────────────

    def _locator(self) -> str:
        return "where" if self.windows else "which"

    async def _direct_lookup(self) -> str | None:
        try:
            rc, stdout, stderr = await run_command(
                self._locator(), self.binary_name,
                timeout=self._config.locator_timeout,
                env=self.env,
            )
            if rc != 0:
                self._log(f"{self._locator()} {self.binary_name} failed: {stderr.strip() or rc}")
                return None
            for line in stdout.splitlines():
                candidate = line.strip()
                if os.path.isabs(candidate) and await is_regular_file(candidate):
                    return candidate
        except Exception as exc:
            self._log(f"PATH lookup error: {exc}")
        return None

    # ── Step 2 ──────────────────────────────────────────────────

    async def _login_shell_lookup(self) -> str | None:
        try:
            rc, stdout, stderr = await run_login_shell(
                f"which {self.binary_name}",
                timeout=self._config.login_shell_timeout,
                env=self.env,
            )
            if rc == -1:
                self._log(f"Login shell lookup failed: {stderr.strip()}")
                return None
            return await self._first_executable_line(stdout)
        except Exception as exc:
            self._log(f"Login shell lookup error: {exc}")
        return None

    async def _first_executable_line(self, output: str) -> str | None:
        for line in output.splitlines():
            candidate = line.strip()
            if not candidate or _NOT_FOUND_MARKER in candidate.lower():
                continue
            if os.path.isabs(candidate) and await is_executable_file(candidate):
                return candidate
        return None

    # ── Step 3 ──────────────────────────────────────────────────

    async def _npm_global_bin_lookup(self, shell_path: str | None) -> str | None:
        try:
            search = split_path(get_env_value(self.env, "PATH"), self._platform)
            for entry in split_path(shell_path, self._platform):
                if entry not in search:
                    search.append(entry)
            npm = await find_executable(
                "npm", paths=search, env=self.env, platform=self._platform,
            )
            if npm is None:
                self._log("npm not found; skipping global bin lookup")
                return None
            env = dict(self.env)
            if shell_path:
                env["PATH"] = shell_path
            rc, stdout, stderr = await run_command(
                npm, "config", "get", "prefix",
                timeout=self._config.npm_timeout,
                env=env,
            )
            prefix = stdout.strip().splitlines()[-1].strip() if stdout.strip() else ""
            if rc != 0 or not prefix:
                self._log(f"npm config get prefix failed: {stderr.strip() or rc}")
                return None
            bin_dir = prefix if self.windows else os.path.join(prefix, "bin")
            return await find_executable(
                self.binary_name, paths=[bin_dir], env=self.env, platform=self._platform,
            )
        except Exception as exc:
            self._log(f"npm global bin lookup error: {exc}")
        return None

    # ── Step 4 ──────────────────────────────────────────────────

    async def fallback_candidates(self) -> list[Path]:
        """Well-known install locations for this platform, in probe order."""
        name = self.binary_name
        env = self.env
        home = self.home

        if self.windows:
            candidates: list[Path] = []
            appdata = get_env_value(env, "APPDATA")
            if appdata:
                candidates.append(Path(appdata) / "npm" / f"{name}.cmd")
                candidates.append(Path(appdata) / "npm" / name)
            local_appdata = get_env_value(env, "LOCALAPPDATA")
            if local_appdata:
                candidates.append(Path(local_appdata) / "npm" / f"{name}.cmd")
            return candidates

        bin_dirs: list[Path] = [
            Path("/opt/homebrew/bin"),
            Path("/usr/local/bin"),
            home / ".npm-global" / "bin",
        ]
        nvm_bin = get_env_value(env, "NVM_BIN")
        if nvm_bin:
            bin_dirs.append(Path(nvm_bin))
        nvm_dir = get_env_value(env, "NVM_DIR")
        nvm_root = Path(nvm_dir) if nvm_dir else home / ".nvm"
        bin_dirs.extend(await version_manager_bin_dirs(nvm_root / "versions" / "node"))
        bin_dirs.extend([
            home / ".local" / "share" / "fnm" / "aliases" / "default" / "bin",
            home / ".volta" / "bin",
            home / ".asdf" / "shims",
            Path("/snap/bin"),
            home / ".local" / "bin",
        ])

        seen: set[Path] = set()
        candidates = []
        for directory in bin_dirs:
            if directory in seen:
                continue
            seen.add(directory)
            candidates.append(directory / name)
        return candidates


class CachedResolver:
    """Explicit, time-bounded cache around a resolver.

    Only misses fall through to discovery; a None result is not cached.
    """

    def __init__(self, resolver: CliResolver, ttl_seconds: float = 60.0) -> None:
        self._resolver = resolver
        self._ttl = ttl_seconds
        self._location: CliLocation | None = None
        self._expires_at = 0.0

    @property
    def binary_name(self) -> str:
        return self._resolver.binary_name

    async def resolve(self) -> CliLocation | None:
        now = time.monotonic()
        if self._location is not None and now < self._expires_at:
            return self._location
        location = await self._resolver.resolve()
        self._location = location
        self._expires_at = now + self._ttl if location is not None else 0.0
        return location

    def invalidate(self) -> None:
        self._location = None
        self._expires_at = 0.0
