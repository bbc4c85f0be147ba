"""Catalogue of manageable plugins."""

from __future__ import annotations

from importlib.metadata import entry_points
from typing import TYPE_CHECKING

import structlog

from .models import PluginDescriptor

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = structlog.get_logger(__name__)

ENTRY_POINT_GROUP = "vatacars_hub.plugins"

BUILTIN_PLUGINS: tuple[PluginDescriptor, ...] = (
    PluginDescriptor(
        name="vatACARS",
        source_repository="vatacars/vatsys-plugin",
        description="Datalink (CPDLC/ACARS) client for vatSys",
    ),
    PluginDescriptor(
        name="VatpacPlugin",
        source_repository="badvectors/VatpacPlugin",
        description="VATPAC tools for vatSys",
    ),
    PluginDescriptor(
        name="DiscordPlugin",
        source_repository="badvectors/DiscordPlugin",
        description="Discord rich presence for vatSys",
    ),
    PluginDescriptor(
        name="AirportsPlugin",
        source_repository="badvectors/AirportsPlugin",
        description="Airport information for vatSys",
    ),
    PluginDescriptor(
        name="EventsPlugin",
        source_repository="badvectors/EventsPlugin",
        description="VATSIM events for vatSys",
    ),
    PluginDescriptor(
        name="OzStrips",
        source_repository="maxrumsey/OzStrips",
        description="Electronic flight strips for vatSys",
    ),
)


class PluginRegistry:
    """Registry of plugin descriptors.

    Descriptors can be registered manually, loaded from configuration,
    or discovered via entry points.
    """

    def __init__(self) -> None:
        """Initialize an empty plugin registry."""
        self._plugins: dict[str, PluginDescriptor] = {}

    def register(self, descriptor: PluginDescriptor) -> None:
        """Register a descriptor, replacing any with the same name.

        Args:
            descriptor: The plugin descriptor.
        """
        if descriptor.name in self._plugins:
            logger.debug("plugin_replaced", plugin=descriptor.name)
        self._plugins[descriptor.name] = descriptor
        logger.debug("plugin_registered", plugin=descriptor.name, repository=descriptor.source_repository)

    def register_all(self, descriptors: Iterable[PluginDescriptor]) -> int:
        """Register several descriptors; return how many."""
        count = 0
        for descriptor in descriptors:
            self.register(descriptor)
            count += 1
        return count

    def unregister(self, name: str) -> bool:
        """Unregister a plugin by name.

        Args:
            name: The plugin name to unregister.

        Returns:
            True if the plugin was unregistered, False if not found.
        """
        if name in self._plugins:
            del self._plugins[name]
            logger.debug("plugin_unregistered", plugin=name)
            return True
        return False

    def get(self, name: str) -> PluginDescriptor | None:
        """Get a descriptor by name; an exact match wins over a case-insensitive one."""
        if name in self._plugins:
            return self._plugins[name]
        lowered = name.lower()
        return next((p for n, p in self._plugins.items() if n.lower() == lowered), None)

    def get_all(self) -> list[PluginDescriptor]:
        """Get all registered descriptors, in registration order."""
        return list(self._plugins.values())

    def list_names(self) -> list[str]:
        """List all registered plugin names."""
        return list(self._plugins.keys())

    def __contains__(self, name: object) -> bool:
        """Check if a plugin name is registered."""
        return isinstance(name, str) and self.get(name) is not None

    def __len__(self) -> int:
        """Return the number of registered plugins."""
        return len(self._plugins)

    def discover_plugins(self) -> int:
        """Discover and register descriptors from entry points.

        Uses the ``vatacars_hub.plugins`` entry point group. An entry point
        may expose a single PluginDescriptor or an iterable of them.

        Returns:
            Number of descriptors discovered.
        """
        count = 0

        for ep in entry_points(group=ENTRY_POINT_GROUP):
            try:
                loaded = ep.load()
                items = [loaded] if isinstance(loaded, PluginDescriptor) else list(loaded)
                for item in items:
                    if not isinstance(item, PluginDescriptor):
                        raise TypeError(f"expected PluginDescriptor, got {type(item).__name__}")
                    self.register(item)
                    count += 1
                logger.info("plugin_discovered", entry_point=ep.name, module=ep.value, count=len(items))
            except Exception as e:
                logger.error(
                    "plugin_discovery_failed",
                    entry_point=ep.name,
                    error=str(e),
                )

        return count


def register_builtin_plugins(registry: PluginRegistry) -> int:
    """Register the built-in plugin catalogue.

    Returns:
        Number of descriptors registered.
    """
    return registry.register_all(BUILTIN_PLUGINS)


def build_registry(extra: Iterable[PluginDescriptor] = (), discover: bool = True) -> PluginRegistry:
    """Create a registry with built-in, discovered and extra descriptors.

    Later sources override earlier ones with the same name.
    """
    registry = PluginRegistry()
    register_builtin_plugins(registry)
    if discover:
        registry.discover_plugins()
    registry.register_all(extra)
    return registry
