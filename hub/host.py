"""Host application location.

The host's binaries directory is resolved once and remembered in the
settings store. Resolution tries, in order:

1. the persisted location, if it still exists on disk
2. the well-known default installation directories
3. asking the operator to pick the host executable

A None result means the operator cancelled. Callers treat it as "not
available", not as an error.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from .interfaces import HostPrompter, NoPrompter

if TYPE_CHECKING:
    from .models import HubConfig
    from .settings import SettingsStore

logger = structlog.get_logger(__name__)


class HostLocator:
    """Resolves and persists the host application's binaries directory."""

    def __init__(
        self,
        config: HubConfig,
        settings: SettingsStore,
        prompter: HostPrompter | None = None,
    ) -> None:
        """Initialize the locator.

        Args:
            config: Hub configuration (executable name, default paths).
            settings: Store the resolved location is persisted in.
            prompter: Asks the operator when nothing else works.
        """
        self.config = config
        self.settings = settings
        self.prompter = prompter or NoPrompter()
        self._log = logger.bind(component="host_locator")

    def resolve(self) -> Path | None:
        """Resolve the host binaries directory.

        Returns:
            The directory, or None if the operator cancelled the prompt.
        """
        persisted = self.settings.get_host_location()
        if persisted is not None:
            if persisted.is_dir():
                return persisted
            self._log.info("host_location_stale", path=str(persisted))
            self.settings.clear_host_location()

        for candidate in self.config.host_default_paths:
            if candidate.is_dir():
                self._log.info("host_location_detected", path=str(candidate))
                self.settings.set_host_location(candidate)
                return candidate

        initial_dir = next((p.parent for p in self.config.host_default_paths if p.parent.is_dir()), None)
        selected = self.prompter.prompt_for_executable(self.config.host_executable, initial_dir)
        if selected is None:
            self._log.info("host_location_prompt_cancelled")
            return None

        directory = self._directory_for(selected)
        if directory is None:
            return None

        self._log.info("host_location_selected", path=str(directory))
        self.settings.set_host_location(directory)
        return directory

    def plugin_root(self) -> Path | None:
        """Resolve the directory plugins are installed into.

        Returns:
            ``<host dir>/<plugin dir name>``, or None if the host is not configured.
        """
        host_dir = self.resolve()
        if host_dir is None:
            return None
        return host_dir / self.config.plugin_dir_name

    def set_location(self, path: Path) -> Path:
        """Set the host location explicitly.

        Args:
            path: The host executable or the directory containing it.

        Returns:
            The directory that was persisted.

        Raises:
            ValueError: If the path does not exist or is not the host executable.
        """
        directory = self._directory_for(path)
        if directory is None:
            raise ValueError(f"{path} is not the {self.config.host_executable} directory")
        self.settings.set_host_location(directory)
        self._log.info("host_location_set", path=str(directory))
        return directory

    def forget(self) -> bool:
        """Forget the persisted host location.

        Returns:
            True if a location had been persisted.
        """
        return self.settings.clear_host_location()

    def _directory_for(self, selected: Path) -> Path | None:
        selected = selected.expanduser().resolve()
        if selected.is_dir():
            executable = self.config.host_executable.lower()
            if not any(p.name.lower() == executable and p.is_file() for p in selected.iterdir()):
                self._log.warning(
                    "host_selection_no_executable",
                    path=str(selected),
                    expected=self.config.host_executable,
                )
                return None
            return selected

        if not selected.is_file():
            self._log.warning("host_selection_missing", path=str(selected))
            return None

        if selected.name.lower() != self.config.host_executable.lower():
            self._log.warning(
                "host_selection_wrong_file",
                path=str(selected),
                expected=self.config.host_executable,
            )
            return None
        return selected.parent
