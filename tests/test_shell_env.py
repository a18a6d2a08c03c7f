from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agentdeck.engine.shell_env import (
    PATH_END_MARKER,
    PATH_START_MARKER,
    capture_shell_path,
    executable_extensions,
    extract_marked_path,
    get_env_value,
    login_shell_args,
    run_command,
    split_path,
)

MOD = "agentdeck.engine.shell_env"


def test_env_lookup_is_case_insensitive() -> None:
    env = {"Path": "C:\\Windows", "PATHEXT": ".EXE"}
    assert get_env_value(env, "PATH") == "C:\\Windows"
    assert get_env_value(env, "pathext") == ".EXE"
    assert get_env_value(env, "HOME") is None


def test_exact_key_wins_over_case_variant() -> None:
    env = {"path": "/lower", "PATH": "/upper"}
    assert get_env_value(env, "PATH") == "/upper"


def test_split_path_uses_platform_separator() -> None:
    assert split_path("/a:/b::/c", "linux") == ["/a", "/b", "/c"]
    assert split_path("C:\\a;C:\\b", "win32") == ["C:\\a", "C:\\b"]
    assert split_path(None, "linux") == []


def test_executable_extensions_default_and_override() -> None:
    assert executable_extensions({}, "linux") == [""]
    assert executable_extensions({}, "win32") == [".COM", ".EXE", ".BAT", ".CMD"]
    assert executable_extensions({"PathExt": ".EXE;.PS1"}, "win32") == [".EXE", ".PS1"]


def test_login_shell_args() -> None:
    assert login_shell_args("/bin/zsh", "which agent") == [
        "/bin/zsh", "-i", "-l", "-c", "which agent",
    ]
    assert login_shell_args("/usr/bin/tcsh", "which agent") == [
        "/usr/bin/tcsh", "-ilc", "which agent",
    ]


def test_extract_marked_path_ignores_banner_noise() -> None:
    output = (
        "Last login: Mon\n"
        "nvm: warning, something\n"
        f"{PATH_START_MARKER}/usr/local/bin:/usr/bin{PATH_END_MARKER}\n"
        "bye\n"
    )
    assert extract_marked_path(output) == "/usr/local/bin:/usr/bin"
    assert extract_marked_path("no markers at all") is None
    assert extract_marked_path(f"{PATH_START_MARKER}/usr/bin") is None


@pytest.mark.asyncio
async def test_capture_shell_path_returns_new_path() -> None:
    output = f"banner\n{PATH_START_MARKER}/opt/bin:/usr/bin{PATH_END_MARKER}\n"
    with patch(f"{MOD}.run_login_shell", AsyncMock(return_value=(0, output, ""))) as login:
        captured = await capture_shell_path(env={"PATH": "/usr/bin"}, platform="darwin")
    assert captured == "/opt/bin:/usr/bin"
    assert login.await_args.kwargs["timeout"] == 10.0


@pytest.mark.asyncio
async def test_capture_shell_path_equal_to_known_path_is_none() -> None:
    output = f"{PATH_START_MARKER}/usr/bin{PATH_END_MARKER}\n"
    with patch(f"{MOD}.run_login_shell", AsyncMock(return_value=(0, output, ""))):
        captured = await capture_shell_path(env={"PATH": "/usr/bin"}, platform="linux")
    assert captured is None


@pytest.mark.asyncio
async def test_capture_shell_path_timeout_is_none() -> None:
    log: list[str] = []
    with patch(f"{MOD}.run_login_shell", AsyncMock(return_value=(-1, "", "Command timed out after 10.0s"))):
        captured = await capture_shell_path(env={"PATH": "/usr/bin"}, platform="linux", log=log.append)
    assert captured is None
    assert log and "timed out" in log[0]


@pytest.mark.asyncio
async def test_capture_shell_path_skipped_on_windows() -> None:
    with patch(f"{MOD}.run_login_shell", AsyncMock()) as login:
        assert await capture_shell_path(env={}, platform="win32") is None
    login.assert_not_awaited()


@pytest.mark.asyncio
async def test_run_command_closes_stdin_and_decodes() -> None:
    proc = MagicMock()
    proc.returncode = 0
    proc.communicate = AsyncMock(return_value=(b"/usr/bin/agent\n", b""))
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as spawn:
        rc, out, err = await run_command("which", "agent", timeout=5)
    assert (rc, out, err) == (0, "/usr/bin/agent\n", "")
    assert spawn.await_args.kwargs["stdin"] == asyncio.subprocess.DEVNULL


@pytest.mark.asyncio
async def test_run_command_timeout_kills_and_reaps_process() -> None:
    proc = MagicMock()
    proc.communicate = AsyncMock(side_effect=asyncio.TimeoutError)
    proc.wait = AsyncMock(return_value=-9)
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        rc, out, err = await run_command("/bin/zsh", "-c", "sleep 99", timeout=0.1)
    assert rc == -1
    assert "timed out" in err
    proc.kill.assert_called_once()
    proc.wait.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_command_missing_binary() -> None:
    with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError)):
        rc, _, err = await run_command("nope", timeout=1)
    assert rc == -1
    assert err == "Command not found: nope"
