"""YAML configuration loader.

Layers a single YAML file over the environment-derived HostConfig.
When no YAML is provided, env vars work exactly as before.

Example YAML:
    cli:
      name: kilocode
      package: "@kilocode/cli"
      args: [--json-io]

    timeouts:
      locator: 5
      login_shell: 10
      shell_path: 10
      npm: 15
      install: 300

    sessions:
      max_sessions: 10
      max_logs: 100

    assets:
      dir: ./webview-ui/dist
      # base_url: http://127.0.0.1:5173/

    settings:
      path: ~/.agentdeck/settings.json

    logging:
      level: DEBUG
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import HostConfig

logger = logging.getLogger(__name__)

# section -> {yaml key: (HostConfig attribute, coercion)}
_SECTION_FIELDS: dict[str, dict[str, tuple[str, Any]]] = {
    "cli": {
        "name": ("cli_name", str),
        "package": ("cli_package", str),
        "args": ("cli_args", lambda v: [str(a) for a in v]),
    },
    "timeouts": {
        "locator": ("locator_timeout", float),
        "login_shell": ("login_shell_timeout", float),
        "shell_path": ("shell_path_timeout", float),
        "npm": ("npm_timeout", float),
        "install": ("install_timeout", float),
    },
    "sessions": {
        "max_sessions": ("max_sessions", lambda v: max(1, int(v))),
        "max_logs": ("max_session_logs", lambda v: max(1, int(v))),
    },
    "assets": {
        "dir": ("asset_dir", str),
        "base_url": ("asset_base_url", str),
    },
    "settings": {
        "path": ("settings_path", lambda v: Path(str(v)).expanduser()),
    },
    "logging": {
        "level": ("log_level", lambda v: str(v).upper()),
    },
}


def _apply_section(config: HostConfig, section: str, values: Any) -> None:
    if not isinstance(values, dict):
        logger.warning("Ignoring YAML section %s: expected a mapping", section)
        return
    fields = _SECTION_FIELDS[section]
    for key, value in values.items():
        entry = fields.get(key)
        if entry is None:
            logger.warning("Unknown key %s.%s in config; ignoring", section, key)
            continue
        attr, coerce = entry
        try:
            setattr(config, attr, coerce(value))
        except (TypeError, ValueError) as exc:
            logger.warning("Invalid value for %s.%s (%r): %s", section, key, value, exc)


def load_yaml_config(path: str | Path, base: HostConfig | None = None) -> HostConfig:
    """Load a YAML config file and layer it over *base* (or env config).

    Raises FileNotFoundError or yaml.YAMLError so the caller decides
    whether a bad file is fatal.
    """
    path = Path(path)
    logger.info("load_yaml_config: loading %s (exists=%s)", path, path.exists())
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise yaml.YAMLError(f"{path}: top level must be a mapping")

    config = base if base is not None else HostConfig.from_env()
    for section, values in raw.items():
        if section not in _SECTION_FIELDS:
            logger.warning("Unknown config section %r in %s", section, path)
            continue
        _apply_section(config, section, values)

    logger.info(
        "Parsed YAML config %s - sections: %s",
        path.name, ", ".join(sorted(raw.keys())) or "(empty)",
    )
    return config


def discover_config_path(cwd: str | Path | None = None) -> Path | None:
    """Find the project config file: .agentdeck/agentdeck.yaml, then agentdeck.yaml."""
    root = Path(cwd) if cwd is not None else Path.cwd()
    for candidate in (root / ".agentdeck" / "agentdeck.yaml", root / "agentdeck.yaml"):
        if candidate.is_file():
            return candidate
    return None
