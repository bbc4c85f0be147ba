"""Wiring of the hub's collaborators.

Front ends build one HubServices from the configuration and hand its
parts to whatever needs them. No module-level state is kept.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .config import ConfigManager, get_data_dir
from .download_manager import DownloadManager
from .extractor import BinaryVersionReader
from .host import HostLocator
from .process import ProcessGuard
from .reconciler import InstallReconciler
from .registry import build_registry
from .releases import ReleaseClient
from .selfupdate import SelfUpdater
from .settings import SettingsStore
from .staging import ArtifactStager

if TYPE_CHECKING:
    from .interfaces import EventSink, HostPrompter
    from .models import HubConfig
    from .registry import PluginRegistry


@dataclass
class HubServices:
    """Everything a front end needs to manage plugins."""

    config: HubConfig
    settings: SettingsStore
    registry: PluginRegistry
    host_locator: HostLocator
    download_manager: DownloadManager
    release_client: ReleaseClient
    reconciler: InstallReconciler
    self_updater: SelfUpdater


def build_services(
    config_manager: ConfigManager | None = None,
    *,
    prompter: HostPrompter | None = None,
    sink: EventSink | None = None,
    settings: SettingsStore | None = None,
    current_version: str = "0.0.0",
    discover_plugins: bool = True,
) -> HubServices:
    """Build the hub's services from configuration.

    Args:
        config_manager: Configuration source. Uses the default file if None.
        prompter: Asks the operator for the host location.
        sink: Default event sink of the reconciler.
        settings: Settings store. Uses the default file if None.
        current_version: Version of the running hub, for self-update checks.
        discover_plugins: Whether to load plugin descriptors from entry points.

    Returns:
        The wired services.
    """
    config_manager = config_manager or ConfigManager()
    config = config_manager.get_config()
    settings = settings or SettingsStore()
    data_dir = config.data_dir or get_data_dir()

    registry = build_registry(config_manager.get_plugins(), discover=discover_plugins)
    host_locator = HostLocator(config, settings, prompter)
    download_manager = DownloadManager.from_config(config)
    release_client = ReleaseClient.from_config(config, download_manager)

    reconciler = InstallReconciler(
        config,
        host_locator,
        ProcessGuard(config.host_process_name, timeout=config.process_check_timeout_seconds),
        release_client,
        ArtifactStager(download_manager, config),
        settings,
        data_dir=data_dir,
        sink=sink,
        binary_reader=BinaryVersionReader(timeout=config.process_check_timeout_seconds),
    )

    self_updater = SelfUpdater(
        release_client,
        download_manager,
        repository=config.app_repository,
        current_version=current_version,
        asset_extensions=config.app_asset_extensions,
    )

    return HubServices(
        config=config,
        settings=settings,
        registry=registry,
        host_locator=host_locator,
        download_manager=download_manager,
        release_client=release_client,
        reconciler=reconciler,
        self_updater=self_updater,
    )
