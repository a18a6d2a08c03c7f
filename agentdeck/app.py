"""agentdeck entry point.

    agentdeck --server [--port N] [--config PATH]   run the panel host
    agentdeck --resolve                             locate the agent CLI
    agentdeck --install                             npm install/update the CLI
    agentdeck --shell-path                          show the login-shell PATH
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import yaml
from rich.console import Console
from rich.table import Table

from agentdeck.engine.config import HostConfig

logger = logging.getLogger(__name__)


def _load_config(config_path: str | None) -> HostConfig:
    """Env config, with the YAML file (explicit or auto-discovered) layered on top."""
    from agentdeck.engine.yaml_config import discover_config_path, load_yaml_config

    config = HostConfig.from_env()
    path = Path(config_path) if config_path else discover_config_path()
    if path is None:
        return config
    try:
        return load_yaml_config(path, base=config)
    except FileNotFoundError:
        logger.warning("Config file not found: %s; using defaults", path)
    except yaml.YAMLError as exc:
        logger.warning("Invalid config file %s: %s; using defaults", path, exc)
    return config


def _configure_server_logging(level_name: str) -> Path:
    log_dir = Path.home() / ".agentdeck" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agentdeck-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _run_server(args, config: HostConfig) -> None:
    from agentdeck.host.server import AgentDeckServer
    from agentdeck.shared.services.process_cleanup import (
        cleanup_stale_runtime_processes,
    )

    log_file = _configure_server_logging(os.getenv("AGENTDECK_LOG_LEVEL", config.log_level))
    logger.info(
        "Starting agentdeck server cwd=%s port=%s config=%s log=%s",
        Path.cwd(), args.port, args.config or "<auto>", log_file,
    )
    try:
        reaped = cleanup_stale_runtime_processes(config.cli_name, log=logger.info)
        if reaped:
            logger.warning("Reaped %d stale agent process(es) at startup", reaped)
    except Exception:
        logger.exception("Startup stale-process cleanup failed")

    server = AgentDeckServer(config, port=args.port)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass


async def _resolve(console: Console, config: HostConfig) -> int:
    from agentdeck.engine.cli_resolver import CliResolver

    steps: list[str] = []
    location = await CliResolver(config, log=steps.append).resolve()

    table = Table(title=f"{config.cli_name} discovery", show_header=False)
    table.add_column("step", style="dim")
    for line in steps:
        table.add_row(line)
    console.print(table)
    if location is None:
        console.print(f"[red]{config.cli_name} CLI not found[/red]")
        console.print(f"Install it with: [bold]npm install -g {config.cli_package}[/bold]")
        return 1
    console.print(
        f"[green]Found[/green] {location.path} "
        f"([cyan]{location.discovery_method.value}[/cyan])"
    )
    if location.captured_shell_path:
        console.print(f"Shell PATH: {location.captured_shell_path}")
    return 0


async def _install(console: Console, config: HostConfig) -> int:
    from agentdeck.engine.installer import CliInstaller

    installer = CliInstaller(config, log=lambda line: console.print(line, style="dim"))
    result = await installer.install_or_update()
    if result.success:
        console.print(f"[green]Installed[/green] {result.cli_path}")
        return 0
    console.print(f"[red]Install failed:[/red] {result.error}")
    if result.suggest_terminal:
        console.print(
            "This looks like a permissions problem. Run this in a terminal "
            "(with the rights to install global npm packages):"
        )
        console.print(f"  [bold]{installer.get_cli_install_command()}[/bold]")
    return 1


async def _shell_path(console: Console, config: HostConfig) -> int:
    from agentdeck.engine.shell_env import capture_shell_path

    captured = await capture_shell_path(timeout=config.shell_path_timeout)
    if captured is None:
        console.print("Login shell PATH is the same as the current PATH (or could not be captured).")
        return 1
    for entry in captured.split(os.pathsep):
        console.print(entry)
    return 0


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentdeck",
        description="agentdeck: supervise agent CLI sessions behind one panel",
    )
    parser.add_argument(
        "--server", action="store_true",
        help="Start HTTP+SSE panel host",
    )
    parser.add_argument(
        "--port", type=int, default=0,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: .agentdeck/agentdeck.yaml or agentdeck.yaml)",
    )
    parser.add_argument(
        "--resolve", action="store_true",
        help="Locate the agent CLI and print each discovery step",
    )
    parser.add_argument(
        "--install", action="store_true",
        help="Install or update the agent CLI with npm",
    )
    parser.add_argument(
        "--shell-path", action="store_true",
        help="Print PATH as seen by your login shell",
    )
    args = parser.parse_args()

    config = _load_config(args.config)

    if args.server:
        _run_server(args, config)
        return

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(levelname)s %(name)s %(message)s",
    )
    console = Console()
    if args.resolve:
        sys.exit(asyncio.run(_resolve(console, config)))
    if args.install:
        sys.exit(asyncio.run(_install(console, config)))
    if args.shell_path:
        sys.exit(asyncio.run(_shell_path(console, config)))
    parser.print_help()


if __name__ == "__main__":
    main()
