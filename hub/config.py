"""Configuration management for the hub.

YAML-based configuration in the platform's per-user configuration
directory: ``%APPDATA%\\vatACARS Hub`` on Windows, the XDG config
directory everywhere else.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

import structlog
import yaml

from .models import ArtifactKind, HubConfig, PluginDescriptor

logger = structlog.get_logger(__name__)

APP_DIR_NAME = "vatacars-hub"
WINDOWS_APP_DIR_NAME = "vatACARS Hub"


def _windows_base(variable: str) -> Path | None:
    if sys.platform != "win32":
        return None
    value = os.environ.get(variable)
    return Path(value) if value else None


def get_config_dir() -> Path:
    """Get the configuration directory.

    Returns:
        Path to the configuration directory (created if missing).
    """
    windows = _windows_base("APPDATA")
    if windows is not None:
        config_dir = windows / WINDOWS_APP_DIR_NAME
    else:
        xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
        base = Path(xdg_config_home) if xdg_config_home else Path.home() / ".config"
        config_dir = base / APP_DIR_NAME

    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_data_dir() -> Path:
    """Get the private data directory (install logs, downloads).

    Returns:
        Path to the data directory (created if missing).
    """
    windows = _windows_base("LOCALAPPDATA")
    if windows is not None:
        data_dir = windows / WINDOWS_APP_DIR_NAME
    else:
        xdg_data_home = os.environ.get("XDG_DATA_HOME")
        base = Path(xdg_data_home) if xdg_data_home else Path.home() / ".local" / "share"
        data_dir = base / APP_DIR_NAME

    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    return get_config_dir() / "config.yaml"


def get_default_settings_path() -> Path:
    """Get the default settings store path."""
    return get_config_dir() / "settings.yaml"


class YamlConfigLoader:
    """Loads and saves configuration dictionaries from/to YAML files."""

    def load(self, path: str) -> dict[str, Any]:
        """Load configuration from a YAML file.

        Args:
            path: Path to the configuration file.

        Returns:
            Configuration dictionary.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            yaml.YAMLError: If the file is not valid YAML.
        """
        config_path = Path(path)

        if not config_path.exists():
            logger.debug("config_file_not_found", path=path)
            raise FileNotFoundError(f"Configuration file not found: {path}")

        data = yaml.safe_load(config_path.read_text(encoding="utf-8"))

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise yaml.YAMLError(f"Top level of {path} must be a mapping")

        return data

    def save(self, config: dict[str, Any], path: str) -> None:
        """Save configuration to a YAML file.

        Args:
            config: Configuration dictionary.
            path: Path to save the configuration.
        """
        config_path = Path(path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        content = yaml.safe_dump(config, default_flow_style=False, sort_keys=False)
        config_path.write_text(content, encoding="utf-8")

        logger.info("config_saved", path=path)


class ConfigManager:
    """Manages application configuration.

    The file has two sections: ``global`` holds HubConfig fields and
    ``plugins`` holds extra plugin descriptors keyed by name::

        global:
          log_level: debug
        plugins:
          MyPlugin:
            repository: someone/my-plugin
            artifact_kind: archive
    """

    def __init__(self, config_path: Path | None = None) -> None:
        """Initialize the configuration manager.

        Args:
            config_path: Optional path to configuration file.
                        Uses default path if not provided.
        """
        self.config_path = config_path or get_default_config_path()
        self._loader = YamlConfigLoader()
        self._config: HubConfig | None = None
        self._plugins: list[PluginDescriptor] = []

    def load(self) -> HubConfig:
        """Load configuration from file.

        Returns:
            HubConfig with loaded values, or defaults if file doesn't exist.
        """
        try:
            data = self._loader.load(str(self.config_path))
        except FileNotFoundError:
            logger.info("using_default_config")
            self._config = HubConfig()
            self._plugins = []
            return self._config

        global_data = data.get("global") or {}
        self._config = HubConfig(**global_data)
        self._plugins = self._parse_plugins(data.get("plugins") or {})
        return self._config

    def save(self, config: HubConfig | None = None, *, include_defaults: bool = False) -> None:
        """Save configuration to file.

        Args:
            config: Configuration to save. Uses current config if not provided.
            include_defaults: Write every field, not only the changed ones.
        """
        if config is not None:
            self._config = config

        if self._config is None:
            self._config = HubConfig()

        data: dict[str, Any] = {
            "global": self._config.model_dump(mode="json", exclude_defaults=not include_defaults),
            "plugins": {
                p.name: {
                    "repository": p.source_repository,
                    **({"artifact_kind": p.artifact_kind.value} if p.artifact_kind else {}),
                    **({"description": p.description} if p.description else {}),
                }
                for p in self._plugins
            },
        }
        self._loader.save(data, str(self.config_path))

    def get_config(self) -> HubConfig:
        """Get the current configuration, loading from file if needed."""
        if self._config is None:
            self.load()
        return self._config or HubConfig()

    def get_plugins(self) -> list[PluginDescriptor]:
        """Get plugin descriptors declared in the configuration file."""
        if self._config is None:
            self.load()
        return list(self._plugins)

    def init_config(self, force: bool = False) -> bool:
        """Initialize a new configuration file with defaults.

        Args:
            force: If True, overwrite existing configuration.

        Returns:
            True if configuration was created, False if it already exists.
        """
        if self.config_path.exists() and not force:
            logger.info("config_exists", path=str(self.config_path))
            return False

        self._plugins = []
        self.save(HubConfig(), include_defaults=True)
        logger.info("config_initialized", path=str(self.config_path))
        return True

    def _parse_plugins(self, plugins_data: dict[str, Any]) -> list[PluginDescriptor]:
        plugins: list[PluginDescriptor] = []
        for name, plugin_data in plugins_data.items():
            if isinstance(plugin_data, str):
                # Short form: "Name: owner/repo"
                plugins.append(PluginDescriptor(name=str(name), source_repository=plugin_data))
                continue
            if not isinstance(plugin_data, dict) or "repository" not in plugin_data:
                logger.warning("config_plugin_invalid", plugin=name)
                continue
            kind = plugin_data.get("artifact_kind")
            plugins.append(
                PluginDescriptor(
                    name=str(name),
                    source_repository=str(plugin_data["repository"]),
                    artifact_kind=ArtifactKind(kind) if kind else None,
                    description=str(plugin_data.get("description", "")),
                )
            )
        return plugins
