"""File-backed storage for user settings.

Settings live in a single JSON file that is read once at startup and
overwritten wholesale on every save.  Loading is forgiving: a
missing, empty or corrupt file yields the defaults so that a first run (or a
hand-edited file gone wrong) never prevents the application from starting.
Saves are serialised through a lock; reads return the in-memory copy.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

import pydantic

from .models import AppSettings
from .validation import validate_settings

logger = logging.getLogger(__name__)


class SettingsStore:
    """Process-wide holder of :class:`AppSettings`.

    Attributes:
        path (Path): Location of the settings JSON file.
    """

    def __init__(self, path: Path):
        """Create a store; call :meth:`load` before reading.

        Args:
            path: Location of the settings JSON file
        """
        self.path = Path(path)
        self._save_lock = threading.Lock()
        self._current = AppSettings()

    @property
    def current(self) -> AppSettings:
        """The settings as last loaded or saved."""
        return self._current

    def load(self) -> AppSettings:
        """Read settings from disk, falling back to defaults.

        Returns:
            The loaded settings (also held as :attr:`current`).
        """
        data = _load_json(self.path, None)
        if data is None:
            logger.info(f"No settings at {self.path}, using defaults")
            self._current = AppSettings()
            return self._current

        try:
            self._current = AppSettings.model_validate(data)
        except pydantic.ValidationError as e:
            logger.warning(f"Ignoring invalid settings in {self.path}: {e}")
            self._current = AppSettings()
        return self._current

    def save(self, settings: AppSettings | dict[str, Any]) -> AppSettings:
        """Validate and persist *settings*, replacing the file wholesale.

        Args:
            settings: Complete settings record

        Returns:
            The validated settings now held as :attr:`current`

        Raises:
            ValidationError: If any default is out of range
        """
        validated = validate_settings(settings)
        with self._save_lock:
            self._write(validated)
        return validated

    def update(self, **changes: Any) -> AppSettings:
        """Save the current settings with *changes* applied.

        The merge and the write happen under one lock, so concurrent updates
        to different fields are all kept.

        Raises:
            ValidationError: If a changed default is out of range
        """
        with self._save_lock:
            data = self._current.model_dump()
            data.update(changes)
            validated = validate_settings(data)
            self._write(validated)
        return validated

    def reset(self) -> AppSettings:
        """Persist and return the default settings."""
        return self.save(AppSettings())

    def _write(self, settings: AppSettings) -> None:
        # Caller holds self._save_lock.
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Write beside the target and rename so readers never see a partial file.
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(settings.model_dump(), handle, indent=2)
        os.replace(tmp_path, self.path)
        self._current = settings
        logger.info(f"Saved settings to {self.path}")


def _load_json(path: Path, default):
    """Load a JSON file from disk, returning *default* on any failure.

    Args:
        path: Path to the JSON file.
        default: Value to return if the file cannot be read or parsed.

    Returns:
        The parsed JSON content, or *default*.
    """
    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read {path}: {e}")
            return default
    return default
