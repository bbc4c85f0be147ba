"""vatACARS Hub core library.

Installs, updates and removes vatSys plugins published on GitHub Releases.

Module Overview:
    config: YAML configuration and per-user directories
    download_manager: Streaming HTTP downloads and JSON fetches
    elevation: Batched filesystem operations, elevated when needed
    errors: Error taxonomy
    extractor: Version extraction from metadata, free text and binaries
    host: Host application location
    interfaces: Abstract seams (event sinks, prompters, executors)
    models: Pydantic and dataclass data models
    mutex: Single-flight guard keyed by plugin name
    process: Host process detection
    reconciler: The install/update/uninstall state machine
    registry: Plugin catalogue
    releases: GitHub Releases client
    selfupdate: Hub self-update check
    services: Wiring of all of the above
    settings: Persistent key-value settings
    staging: Asset download, extraction and payload location
    streaming: Status events and sinks
    version: Semantic version parsing and comparison
"""

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_package_version

from hub.config import ConfigManager, get_config_dir, get_data_dir
from hub.elevation import LocalExecutor, OperationBatch, PrivilegedExecutor, create_executor
from hub.errors import (
    ElevationDeniedError,
    ExecutionFailedError,
    HostBusyError,
    HostNotConfiguredError,
    HubError,
    MalformedArchiveError,
    NetworkError,
    OperationInProgressError,
    ReleaseNotFoundError,
    VersionUnparseableError,
)
from hub.extractor import extract_version, find_version_in_text, parse_metadata, resolve_remote_version
from hub.host import HostLocator
from hub.models import (
    ArtifactKind,
    HubConfig,
    InstallRecord,
    NotAvailableReason,
    OperationRequest,
    OperationStatus,
    PluginDescriptor,
    ReleaseInfo,
    StatusReport,
)
from hub.process import ProcessGuard
from hub.reconciler import InstallReconciler
from hub.registry import PluginRegistry, register_builtin_plugins
from hub.services import HubServices, build_services
from hub.settings import SettingsStore
from hub.staging import ArtifactStager, StagedPayload, locate_payload
from hub.streaming import EventCollector, EventQueue, StatusEvent
from hub.version import compare_versions, normalize_version, parse_version, update_available

try:
    __version__ = get_package_version("vatacars-hub")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "ArtifactKind",
    "ArtifactStager",
    "ConfigManager",
    "ElevationDeniedError",
    "EventCollector",
    "EventQueue",
    "ExecutionFailedError",
    "HostBusyError",
    "HostLocator",
    "HostNotConfiguredError",
    "HubConfig",
    "HubError",
    "HubServices",
    "InstallReconciler",
    "InstallRecord",
    "LocalExecutor",
    "MalformedArchiveError",
    "NetworkError",
    "NotAvailableReason",
    "OperationBatch",
    "OperationInProgressError",
    "OperationRequest",
    "OperationStatus",
    "PluginDescriptor",
    "PluginRegistry",
    "PrivilegedExecutor",
    "ProcessGuard",
    "ReleaseInfo",
    "ReleaseNotFoundError",
    "SettingsStore",
    "StagedPayload",
    "StatusEvent",
    "StatusReport",
    "VersionUnparseableError",
    "__version__",
    "build_services",
    "compare_versions",
    "create_executor",
    "extract_version",
    "find_version_in_text",
    "get_config_dir",
    "get_data_dir",
    "locate_payload",
    "normalize_version",
    "parse_metadata",
    "parse_version",
    "register_builtin_plugins",
    "resolve_remote_version",
    "update_available",
]
