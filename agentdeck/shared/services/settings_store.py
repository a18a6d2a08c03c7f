"""Settings store: the host's settings snapshot, kept in ~/.agentdeck/settings.json.

The orchestrator treats settings as an opaque mapping; this store is
the concrete provider the server hands it. Unknown keys are kept so
the front end can store its own values next to the approval flags.
"""
from __future__ import annotations

import copy
import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SETTINGS_PATH = Path.home() / ".agentdeck" / "settings.json"


class SettingsStore:
    """JSON-backed settings snapshot."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or SETTINGS_PATH
        self._data: dict[str, Any] = {}
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any]:
        """Reload from disk, falling back to an empty snapshot if missing/corrupt."""
        try:
            if self._path.exists():
                data = json.loads(self._path.read_text())
                if isinstance(data, dict):
                    self._data = data
                    logger.debug("Loaded settings from %s", self._path)
                else:
                    logger.warning("Settings file %s is not an object; ignoring", self._path)
                    self._data = {}
            else:
                logger.debug("Settings file not found at %s; using defaults", self._path)
                self._data = {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to load settings from %s: %s", self._path, exc)
            self._data = {}
        return self.snapshot()

    def snapshot(self) -> dict[str, Any]:
        """A deep copy, so callers can't mutate the stored values."""
        return copy.deepcopy(self._data)

    def update(self, changes: Mapping[str, Any]) -> dict[str, Any]:
        """Merge *changes* (a None value deletes the key) and persist."""
        for key, value in changes.items():
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = copy.deepcopy(value)
        self.save()
        return self.snapshot()

    def save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._path.write_text(json.dumps(self._data, indent=2, sort_keys=True))
        except OSError as exc:
            logger.warning("Failed to save settings to %s: %s", self._path, exc)
