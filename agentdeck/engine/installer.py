"""Install or update the agent CLI through npm.

``CliInstaller.install_or_update()`` never raises; every outcome is an
``InstallResult``. A zero exit code alone is not success: the resolver
must find the binary afterwards.
"""
from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Mapping

from .cli_resolver import CliResolver, find_executable
from .config import DiagnosticSink, HostConfig, sink_or_default
from .models import InstallResult

logger = logging.getLogger(__name__)

PERMISSION_ERROR_MARKERS = (
    "eacces",
    "permission denied",
    "eperm",
    "requires administrator",
    "access is denied",
)

ProgressCallback = Callable[[str], None]


def is_permission_error(output: str) -> bool:
    """True when npm output looks like a permission failure (any case)."""
    lowered = output.lower()
    return any(marker in lowered for marker in PERMISSION_ERROR_MARKERS)


class CliInstaller:
    """Runs ``npm install -g <package>`` and verifies the result."""

    def __init__(
        self,
        config: HostConfig | None = None,
        *,
        resolver: CliResolver | None = None,
        env: Mapping[str, str] | None = None,
        platform: str | None = None,
        log: DiagnosticSink | None = None,
    ) -> None:
        self._config = config or HostConfig()
        self._env = env
        self._platform = platform
        self._log = sink_or_default(log)
        self._resolver = resolver or CliResolver(
            self._config, env=env, platform=platform, log=log,
        )

    @property
    def env(self) -> Mapping[str, str]:
        return self._env if self._env is not None else os.environ

    def get_cli_install_command(self) -> str:
        return f"npm install -g {self._config.cli_package}"

    async def find_npm_executable(self) -> str | None:
        return await find_executable("npm", env=self.env, platform=self._platform)

    async def find_node_executable(self) -> str | None:
        return await find_executable("node", env=self.env, platform=self._platform)

    async def can_install_cli(self) -> bool:
        return (
            await self.find_node_executable() is not None
            and await self.find_npm_executable() is not None
        )

    async def install_or_update(
        self, on_progress: ProgressCallback | None = None,
    ) -> InstallResult:
        npm = await self.find_npm_executable()
        if npm is None:
            message = (
                "npm is not installed or not on PATH. Install Node.js "
                f"(https://nodejs.org) and then run: {self.get_cli_install_command()}"
            )
            self._log(message)
            return InstallResult(success=False, error=message)

        self._log(f"Running: {self.get_cli_install_command()}")
        env = dict(self.env)
        env["NO_COLOR"] = "1"
        env["FORCE_COLOR"] = "0"

        proc = None
        lines: list[str] = []
        try:
            proc = await asyncio.create_subprocess_exec(
                npm, "install", "-g", self._config.cli_package,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
            )
            rc = await asyncio.wait_for(
                self._stream_output(proc, lines, on_progress),
                timeout=self._config.install_timeout,
            )
        except asyncio.TimeoutError:
            if proc is not None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
            message = f"npm install timed out after {self._config.install_timeout:g}s"
            self._log(message)
            return InstallResult(success=False, error=message)
        except OSError as exc:
            message = f"Failed to run npm: {exc}"
            self._log(message)
            return InstallResult(success=False, error=message)

        output = "\n".join(lines)
        if rc != 0:
            suggest = is_permission_error(output)
            message = f"npm install failed with exit code {rc}"
            tail = output.strip().splitlines()[-1:] if output.strip() else []
            if tail:
                message = f"{message}: {tail[0]}"
            logger.warning("CLI install failed (rc=%d): %s", rc, output[-500:])
            self._log(message)
            return InstallResult(
                success=False,
                error=message,
                suggest_terminal=True if suggest else None,
            )

        location = await self._resolver.resolve()
        if location is None:
            message = (
                f"{self._config.cli_package} was installed but the "
                f"{self._config.cli_name} executable could not be located"
            )
            self._log(message)
            return InstallResult(success=False, error=message)

        self._log("Done!")
        if on_progress is not None:
            on_progress("Done!")
        return InstallResult(success=True, cli_path=location.path)

    async def _stream_output(
        self,
        proc: asyncio.subprocess.Process,
        lines: list[str],
        on_progress: ProgressCallback | None,
    ) -> int:
        assert proc.stdout is not None
        while True:
            raw = await proc.stdout.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            lines.append(line)
            if line:
                self._log(line)
                if on_progress is not None:
                    on_progress(line)
        return await proc.wait()
