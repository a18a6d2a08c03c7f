from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agentdeck.engine.config import HostConfig
from agentdeck.engine.installer import CliInstaller, is_permission_error
from agentdeck.engine.models import CliLocation, DiscoveryMethod

MOD = "agentdeck.engine.installer"


def _proc(lines: list[str], returncode: int) -> MagicMock:
    proc = MagicMock()
    proc.stdout = MagicMock()
    proc.stdout.readline = AsyncMock(
        side_effect=[f"{line}\n".encode() for line in lines] + [b""]
    )
    proc.wait = AsyncMock(return_value=returncode)
    return proc


def _installer(location: CliLocation | None = None, log: list[str] | None = None) -> tuple[CliInstaller, MagicMock]:
    resolver = MagicMock()
    resolver.resolve = AsyncMock(return_value=location)
    installer = CliInstaller(
        HostConfig(cli_name="agent", cli_package="@acme/agent-cli"),
        resolver=resolver,
        env={"PATH": "/usr/bin"},
        log=log.append if log is not None else None,
    )
    return installer, resolver


def test_permission_markers_match_any_case() -> None:
    assert is_permission_error("npm ERR! code EACCES")
    assert is_permission_error("Error: EPERM: operation not permitted")
    assert is_permission_error("This operation Requires Administrator privileges")
    assert is_permission_error("Access is denied.")
    assert not is_permission_error("npm ERR! 404 Not Found - GET https://registry.npmjs.org/x")


def test_install_command_literal() -> None:
    installer, _ = _installer()
    assert installer.get_cli_install_command() == "npm install -g @acme/agent-cli"


@pytest.mark.asyncio
async def test_missing_npm_fails_without_spawning() -> None:
    installer, resolver = _installer()
    with patch(f"{MOD}.find_executable", AsyncMock(return_value=None)), \
         patch("asyncio.create_subprocess_exec", AsyncMock()) as spawn:
        result = await installer.install_or_update()
    assert result.success is False
    assert "npm install -g @acme/agent-cli" in result.error
    assert not result.suggest_terminal
    spawn.assert_not_awaited()
    resolver.resolve.assert_not_awaited()


@pytest.mark.asyncio
async def test_eacces_failure_suggests_terminal() -> None:
    installer, resolver = _installer()
    proc = _proc(["npm ERR! code EACCES", "npm ERR! syscall mkdir"], returncode=243)
    with patch(f"{MOD}.find_executable", AsyncMock(return_value="/usr/bin/npm")), \
         patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        result = await installer.install_or_update()
    assert result.success is False
    assert result.suggest_terminal is True
    resolver.resolve.assert_not_awaited()


@pytest.mark.asyncio
async def test_lowercase_eacces_also_suggests_terminal() -> None:
    installer, _ = _installer()
    proc = _proc(["error: eacces: permission denied, mkdir '/usr/lib/node_modules'"], returncode=1)
    with patch(f"{MOD}.find_executable", AsyncMock(return_value="/usr/bin/npm")), \
         patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        result = await installer.install_or_update()
    assert result.suggest_terminal is True


@pytest.mark.asyncio
async def test_unrelated_failure_does_not_suggest_terminal() -> None:
    installer, _ = _installer()
    proc = _proc(["npm ERR! code E404", "npm ERR! 404 Not Found"], returncode=1)
    with patch(f"{MOD}.find_executable", AsyncMock(return_value="/usr/bin/npm")), \
         patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        result = await installer.install_or_update()
    assert result.success is False
    assert not result.suggest_terminal
    assert "404 Not Found" in result.error


@pytest.mark.asyncio
async def test_spawn_uses_closed_stdin_and_no_color() -> None:
    location = CliLocation(path="/usr/local/bin/agent", discovery_method=DiscoveryMethod.DIRECT)
    installer, _ = _installer(location)
    proc = _proc(["added 1 package"], returncode=0)
    with patch(f"{MOD}.find_executable", AsyncMock(return_value="/usr/bin/npm")), \
         patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as spawn:
        await installer.install_or_update()
    assert spawn.await_args.args == ("/usr/bin/npm", "install", "-g", "@acme/agent-cli")
    kwargs = spawn.await_args.kwargs
    assert kwargs["stdin"] == asyncio.subprocess.DEVNULL
    assert kwargs["stderr"] == asyncio.subprocess.STDOUT
    assert kwargs["env"]["NO_COLOR"] == "1"


@pytest.mark.asyncio
async def test_zero_exit_succeeds_only_when_resolver_finds_cli() -> None:
    location = CliLocation(path="/usr/local/bin/agent", discovery_method=DiscoveryMethod.DIRECT)
    progress: list[str] = []
    installer, resolver = _installer(location)
    with patch(f"{MOD}.find_executable", AsyncMock(return_value="/usr/bin/npm")), \
         patch("asyncio.create_subprocess_exec", AsyncMock(return_value=_proc(["added 1 package"], 0))):
        result = await installer.install_or_update(on_progress=progress.append)
    assert result.success is True
    assert result.cli_path == "/usr/local/bin/agent"
    resolver.resolve.assert_awaited_once()
    assert progress == ["added 1 package", "Done!"]


@pytest.mark.asyncio
async def test_zero_exit_without_located_cli_is_failure() -> None:
    installer, resolver = _installer(None)
    with patch(f"{MOD}.find_executable", AsyncMock(return_value="/usr/bin/npm")), \
         patch("asyncio.create_subprocess_exec", AsyncMock(return_value=_proc([], 0))):
        result = await installer.install_or_update()
    assert result.success is False
    assert "could not be located" in result.error
    resolver.resolve.assert_awaited_once()


@pytest.mark.asyncio
async def test_spawn_oserror_returns_structured_failure() -> None:
    installer, _ = _installer()
    with patch(f"{MOD}.find_executable", AsyncMock(return_value="/usr/bin/npm")), \
         patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=PermissionError("denied"))):
        result = await installer.install_or_update()
    assert result.success is False
    assert result.error.startswith("Failed to run npm")


@pytest.mark.asyncio
async def test_can_install_requires_node_and_npm() -> None:
    installer, _ = _installer()

    async def which(name, **kwargs):
        return "/usr/bin/npm" if name == "npm" else None

    with patch(f"{MOD}.find_executable", side_effect=which):
        assert await installer.can_install_cli() is False


@pytest.mark.asyncio
async def test_timeout_kills_and_reaps_npm() -> None:
    installer, resolver = _installer()
    proc = _proc([], 0)
    proc.stdout.readline = AsyncMock(side_effect=asyncio.TimeoutError)
    with patch(f"{MOD}.find_executable", AsyncMock(return_value="/usr/bin/npm")), \
         patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        result = await installer.install_or_update()
    assert result.success is False
    assert "timed out" in result.error
    proc.kill.assert_called_once()
    proc.wait.assert_awaited_once()
    resolver.resolve.assert_not_awaited()
