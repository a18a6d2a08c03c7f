"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTDECK_* env vars.
"""
from __future__ import annotations

import logging
import os
import shlex
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Injected diagnostic sink. Receives one human-readable line per step.
DiagnosticSink = Callable[[str], None]

# Returns the current settings snapshot (opaque key/value mapping).
SettingsProvider = Callable[[], Mapping[str, Any]]

# Shows one user-visible error notification.
# Signature: def notify(message: str) -> None
ErrorNotifier = Callable[[str], None]


def _default_sink(message: str) -> None:
    logger.debug(message)


def sink_or_default(log: DiagnosticSink | None) -> DiagnosticSink:
    return log if log is not None else _default_sink


@dataclass
class HostConfig:
    """Agent host configuration."""

    # Agent CLI identity
    cli_name: str = "kilocode"
    cli_package: str = "@kilocode/cli"
    cli_args: list[str] = field(default_factory=lambda: ["--json-io"])

    # Discovery and install bounds (seconds)
    locator_timeout: float = 5.0
    login_shell_timeout: float = 10.0
    shell_path_timeout: float = 10.0
    npm_timeout: float = 15.0
    install_timeout: float = 300.0

    # Session registry
    max_sessions: int = 10
    max_session_logs: int = 100

    # UI bundle source: a local directory takes precedence over a URL
    asset_dir: str | None = None
    asset_base_url: str | None = None

    settings_path: Path = field(
        default_factory=lambda: Path.home() / ".agentdeck" / "settings.json"
    )
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> HostConfig:
        """Create config with overrides from environment variables."""
        config = cls()

        str_fields = {
            "AGENTDECK_CLI_NAME": "cli_name",
            "AGENTDECK_CLI_PACKAGE": "cli_package",
            "AGENTDECK_ASSET_DIR": "asset_dir",
            "AGENTDECK_ASSET_BASE_URL": "asset_base_url",
            "AGENTDECK_LOG_LEVEL": "log_level",
        }
        for env_key, attr in str_fields.items():
            val = os.getenv(env_key)
            if val:
                setattr(config, attr, val)
                logger.info("Config override: %s=%s", attr, val)

        float_fields = {
            "AGENTDECK_LOCATOR_TIMEOUT": "locator_timeout",
            "AGENTDECK_LOGIN_SHELL_TIMEOUT": "login_shell_timeout",
            "AGENTDECK_SHELL_PATH_TIMEOUT": "shell_path_timeout",
            "AGENTDECK_NPM_TIMEOUT": "npm_timeout",
            "AGENTDECK_INSTALL_TIMEOUT": "install_timeout",
        }
        for env_key, attr in float_fields.items():
            val = os.getenv(env_key)
            if val:
                try:
                    setattr(config, attr, float(val))
                    logger.info("Config override: %s=%s", attr, val)
                except ValueError:
                    logger.warning("Ignoring non-numeric %s=%r", env_key, val)

        int_fields = {
            "AGENTDECK_MAX_SESSIONS": "max_sessions",
            "AGENTDECK_MAX_SESSION_LOGS": "max_session_logs",
        }
        for env_key, attr in int_fields.items():
            val = os.getenv(env_key)
            if val:
                try:
                    setattr(config, attr, max(1, int(val)))
                    logger.info("Config override: %s=%s", attr, val)
                except ValueError:
                    logger.warning("Ignoring non-integer %s=%r", env_key, val)

        cli_args = os.getenv("AGENTDECK_CLI_ARGS")
        if cli_args is not None:
            config.cli_args = shlex.split(cli_args)
            logger.info("Config override: cli_args=%s", config.cli_args)

        settings_path = os.getenv("AGENTDECK_SETTINGS_PATH")
        if settings_path:
            config.settings_path = Path(settings_path).expanduser()
            logger.info("Config override: settings_path=%s", config.settings_path)

        return config
