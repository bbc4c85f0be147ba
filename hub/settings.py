"""Persistent key-value settings.

A small YAML document in the configuration directory. It holds the host
location and the best-effort fallback versions of flat-file plugins.
Every call re-reads the file, and writes replace it atomically. Calls are
serialised by a lock, so concurrent operations on different plugins may
share one store.
"""

from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Any

import structlog
import yaml

from .config import get_default_settings_path

logger = structlog.get_logger(__name__)

HOST_LOCATION_KEY = "host_location"
PLUGIN_VERSIONS_KEY = "plugin_versions"


class SettingsStore:
    """YAML-backed settings store.

    Keys are dotted paths into nested mappings, e.g. ``window.width``.
    """

    def __init__(self, path: Path | None = None) -> None:
        """Initialize the store.

        Args:
            path: Settings file. Uses the default location if not provided.
        """
        self.path = path or get_default_settings_path()
        self._lock = threading.Lock()
        self._log = logger.bind(component="settings", path=str(self.path))

    def _read(self) -> dict[str, Any]:
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            self._log.warning("settings_unreadable", error=str(e))
            return {}

        if not isinstance(data, dict):
            return {}
        return data

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".settings-", suffix=".yaml", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=True)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @staticmethod
    def _split(key: str | list[str]) -> list[str]:
        parts = key if isinstance(key, list) else key.split(".")
        if not parts or not all(parts):
            raise ValueError(f"Invalid settings key: {key!r}")
        return parts

    def get(self, key: str | list[str], default: Any = None) -> Any:
        """Get a value.

        Args:
            key: Dotted key, or the key path as a list.
            default: Returned when the key is absent.

        Returns:
            The stored value or the default.
        """
        parts = self._split(key)
        with self._lock:
            node: Any = self._read()
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def has(self, key: str | list[str]) -> bool:
        """Check whether a key is present."""
        sentinel = object()
        return self.get(key, sentinel) is not sentinel

    def set(self, key: str | list[str], value: Any) -> None:
        """Store a value, creating intermediate mappings as needed."""
        parts = self._split(key)
        with self._lock:
            data = self._read()
            node = data
            for part in parts[:-1]:
                child = node.get(part)
                if not isinstance(child, dict):
                    child = {}
                    node[part] = child
                node = child
            node[parts[-1]] = value
            self._write(data)
        self._log.debug("setting_stored", key=".".join(parts))

    def delete(self, key: str | list[str]) -> bool:
        """Remove a key.

        Returns:
            True if the key existed.
        """
        parts = self._split(key)
        with self._lock:
            data = self._read()
            node: Any = data
            for part in parts[:-1]:
                node = node.get(part) if isinstance(node, dict) else None
            if not isinstance(node, dict) or parts[-1] not in node:
                return False
            del node[parts[-1]]
            self._write(data)
        self._log.debug("setting_deleted", key=".".join(parts))
        return True

    # Host location

    def get_host_location(self) -> Path | None:
        """Get the persisted host binaries directory, if any."""
        value = self.get(HOST_LOCATION_KEY)
        return Path(value) if isinstance(value, str) and value else None

    def set_host_location(self, path: Path) -> None:
        """Persist the host binaries directory."""
        self.set(HOST_LOCATION_KEY, str(path))

    def clear_host_location(self) -> bool:
        """Forget the host binaries directory."""
        return self.delete(HOST_LOCATION_KEY)

    # Fallback versions (flat-file plugins only)

    def get_fallback_version(self, plugin_name: str) -> str | None:
        """Get the best-effort version recorded for a plugin."""
        value = self.get([PLUGIN_VERSIONS_KEY, plugin_name])
        return str(value) if value is not None else None

    def set_fallback_version(self, plugin_name: str, version: str) -> None:
        """Record the best-effort version for a plugin."""
        self.set([PLUGIN_VERSIONS_KEY, plugin_name], version)

    def clear_fallback_version(self, plugin_name: str) -> bool:
        """Forget the best-effort version for a plugin."""
        return self.delete([PLUGIN_VERSIONS_KEY, plugin_name])
