"""Persistent nsmirror settings.

Stores lightweight preferences in ``~/.nsmirror/settings.json``.
Environment variables win over the file:

  - ``NSMIRROR_WAIT_TIMEOUT``    completion wait bound, seconds
  - ``NSMIRROR_MAX_RESULTS``     remote member ceiling
  - ``NSMIRROR_REFRESH_TIMEOUT`` per-call deadline for mirror refreshes
  - ``NSMIRROR_HELP_BROWSER``    ``external`` or ``internal``
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

SETTINGS_DIR = Path.home() / ".nsmirror"
SETTINGS_FILE = SETTINGS_DIR / "settings.json"

DEFAULT_WAIT_TIMEOUT = 2.0
DEFAULT_MAX_RESULTS = 100
DEFAULT_REFRESH_TIMEOUT = 30.0
HELP_BROWSERS = ("external", "internal")


def _positive_float(raw: Any, default: float) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _positive_int(raw: Any, default: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


class SettingsManager:
    def __init__(self, path: Path = SETTINGS_FILE) -> None:
        self.path = path
        self._data: dict[str, Any] = {}
        self.reload()

    def reload(self) -> None:
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text())
            except (json.JSONDecodeError, OSError):
                log.debug("unreadable settings file %s", self.path, exc_info=True)
                data = {}
            self._data = data if isinstance(data, dict) else {}
        else:
            self._data = {}

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._data, indent=2))
        self.path.chmod(0o600)

    def _get(self, key: str, env: str) -> Any:
        raw = os.environ.get(env)
        if raw is not None and raw.strip():
            return raw.strip()
        return self._data.get(key)

    @property
    def wait_timeout(self) -> float:
        return _positive_float(
            self._get("wait_timeout", "NSMIRROR_WAIT_TIMEOUT"), DEFAULT_WAIT_TIMEOUT,
        )

    @property
    def max_results(self) -> int:
        return _positive_int(
            self._get("max_results", "NSMIRROR_MAX_RESULTS"), DEFAULT_MAX_RESULTS,
        )

    @property
    def refresh_timeout(self) -> float:
        return _positive_float(
            self._get("refresh_timeout", "NSMIRROR_REFRESH_TIMEOUT"),
            DEFAULT_REFRESH_TIMEOUT,
        )

    @property
    def help_browser(self) -> str:
        v = self._get("help_browser", "NSMIRROR_HELP_BROWSER")
        v = v.lower() if isinstance(v, str) else ""
        return v if v in HELP_BROWSERS else "external"

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self.save()

    def get_recent_paths(self) -> list[str]:
        values = self._data.get("recent_paths", [])
        if not isinstance(values, list):
            return []
        out: list[str] = []
        for v in values:
            if isinstance(v, str) and v.strip() and v not in out:
                out.append(v)
        return out

    def add_recent_path(self, path: str, limit: int = 12) -> None:
        paths = [p for p in self.get_recent_paths() if p != path]
        paths.insert(0, path)
        self._data["recent_paths"] = paths[:limit]
        self.save()


_settings: SettingsManager | None = None


def get_settings() -> SettingsManager:
    global _settings
    if _settings is None:
        _settings = SettingsManager()
    return _settings
