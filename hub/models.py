"""Core data models for the plugin hub.

Pydantic models cover configuration and anything that crosses the core
boundary as JSON (release descriptors, operation requests). Plain
dataclasses cover values the core derives itself.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path  # noqa: TC003 - needed at runtime by Pydantic
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_ARCHIVE_EXTENSIONS = (".zip",)
DEFAULT_BINARY_EXTENSIONS = (".dll",)

_UNSAFE_NAME = re.compile(r"[\\/:*?\"<>|\x00-\x1f]")


class LogLevel(str, Enum):
    """Log level for hub output."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ArtifactKind(str, Enum):
    """How a plugin is shipped and laid out on disk.

    FILE plugins are a single binary in the shared plugin root with a
    sidecar metadata file. ARCHIVE plugins are extracted into their own
    directory under the plugin root.
    """

    FILE = "file"
    ARCHIVE = "archive"

    @classmethod
    def _missing_(cls, value: object) -> ArtifactKind | None:
        # Wire aliases used by older front ends.
        aliases = {"dll": cls.FILE, "zip": cls.ARCHIVE}
        if isinstance(value, str):
            return aliases.get(value.lower())
        return None

    @classmethod
    def from_filename(
        cls,
        name: str,
        archive_extensions: tuple[str, ...] | list[str] = DEFAULT_ARCHIVE_EXTENSIONS,
        binary_extensions: tuple[str, ...] | list[str] = DEFAULT_BINARY_EXTENSIONS,
    ) -> ArtifactKind | None:
        """Infer the artifact kind from an asset name or URL.

        Args:
            name: Asset file name or download URL.
            archive_extensions: Extensions treated as archives.
            binary_extensions: Extensions treated as flat binaries.

        Returns:
            The artifact kind, or None if the extension is not recognised.
        """
        lowered = name.lower().split("?", 1)[0]
        if any(lowered.endswith(ext.lower()) for ext in archive_extensions):
            return cls.ARCHIVE
        if any(lowered.endswith(ext.lower()) for ext in binary_extensions):
            return cls.FILE
        return None


class OperationStatus(str, Enum):
    """States of the install/update state machine, as reported to callers."""

    IDLE = "idle"
    CHECKING = "checking"
    NOT_AVAILABLE = "not_available"
    UP_TO_DATE = "up_to_date"
    UPDATE_AVAILABLE = "update_available"
    NOT_INSTALLED = "not_installed"
    DOWNLOADING = "downloading"
    INSTALLING = "installing"
    UNINSTALLING = "uninstalling"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether the status ends an operation."""
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {
        OperationStatus.NOT_AVAILABLE,
        OperationStatus.UP_TO_DATE,
        OperationStatus.UPDATE_AVAILABLE,
        OperationStatus.NOT_INSTALLED,
        OperationStatus.RUNNING,
        OperationStatus.DONE,
        OperationStatus.FAILED,
    }
)


class NotAvailableReason(str, Enum):
    """Why a plugin cannot be checked or changed right now."""

    HOST_RUNNING = "host_running"
    HOST_NOT_CONFIGURED = "host_not_configured"
    RELEASE_UNAVAILABLE = "release_unavailable"


class VersionSource(str, Enum):
    """Where a locally installed version was read from."""

    METADATA = "metadata"
    BINARY = "binary"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class PluginDescriptor:
    """A manageable plugin.

    Attributes:
        name: Unique key; also the file or directory name under the plugin root.
        source_repository: GitHub repository in ``owner/repo`` form.
        artifact_kind: Expected layout. None means "whatever the release ships".
        description: Human-readable description.
    """

    name: str
    source_repository: str
    artifact_kind: ArtifactKind | None = None
    description: str = ""

    def __post_init__(self) -> None:
        """Validate the descriptor."""
        validate_plugin_name(self.name)
        if self.source_repository.count("/") != 1 or not all(
            self.source_repository.split("/")
        ):
            raise ValueError(
                f"source_repository must be 'owner/repo', got {self.source_repository!r}"
            )


def validate_plugin_name(name: str) -> str:
    """Reject names that could escape the plugin root.

    Args:
        name: Plugin name.

    Returns:
        The name, unchanged.

    Raises:
        ValueError: If the name is empty, a relative path component, or
            contains path separators or control characters.
    """
    if not name or name in (".", "..") or _UNSAFE_NAME.search(name) or name != name.strip():
        raise ValueError(f"Invalid plugin name: {name!r}")
    return name


class ReleaseInfo(BaseModel):
    """Remote truth for a plugin: the latest published release."""

    tag_version: str = Field(default="", description="Raw tag name, not necessarily semver")
    title: str = Field(default="", description="Release title")
    body_text: str = Field(default="", description="Free-text changelog")
    asset_url: str | None = Field(default=None, description="First recognised asset URL")
    asset_name: str | None = Field(default=None, description="Name of the selected asset")
    asset_kind: ArtifactKind | None = Field(default=None, description="Kind of the selected asset")
    asset_size: int | None = Field(default=None, description="Asset size in bytes")

    @classmethod
    def from_github(
        cls,
        payload: dict[str, Any],
        archive_extensions: tuple[str, ...] | list[str] = DEFAULT_ARCHIVE_EXTENSIONS,
        binary_extensions: tuple[str, ...] | list[str] = DEFAULT_BINARY_EXTENSIONS,
    ) -> ReleaseInfo:
        """Build a ReleaseInfo from a GitHub release JSON object.

        The first asset whose name ends in a recognised archive or binary
        extension is selected.

        Args:
            payload: Decoded ``releases/latest`` response.
            archive_extensions: Extensions treated as archives.
            binary_extensions: Extensions treated as flat binaries.

        Returns:
            Parsed release information.
        """
        asset_url = asset_name = None
        asset_kind = None
        asset_size = None

        for asset in payload.get("assets") or []:
            name = str(asset.get("name") or "")
            kind = ArtifactKind.from_filename(name, archive_extensions, binary_extensions)
            if kind is None or not asset.get("browser_download_url"):
                continue
            asset_url = str(asset["browser_download_url"])
            asset_name = name
            asset_kind = kind
            asset_size = asset.get("size")
            break

        return cls(
            tag_version=str(payload.get("tag_name") or ""),
            title=str(payload.get("name") or payload.get("title") or ""),
            body_text=str(payload.get("body") or ""),
            asset_url=asset_url,
            asset_name=asset_name,
            asset_kind=asset_kind,
            asset_size=asset_size,
        )

    @property
    def has_asset(self) -> bool:
        """Whether the release ships something installable."""
        return self.asset_url is not None


@dataclass
class InstallRecord:
    """Local truth for one plugin, derived from the filesystem on demand."""

    installed: bool
    installed_version: str | None = None
    install_path: Path | None = None
    layout: ArtifactKind | None = None
    version_source: VersionSource | None = None
    extra_paths: list[Path] = field(default_factory=list)

    @classmethod
    def missing(cls) -> InstallRecord:
        """Record for a plugin with nothing on disk."""
        return cls(installed=False)


class OperationRequest(BaseModel):
    """An install/update request as sent by a front end."""

    model_config = ConfigDict(populate_by_name=True)

    plugin_name: str = Field(..., alias="pluginName")
    download_url: str = Field(..., alias="downloadUrl")
    version: str | None = Field(default=None, description="Version the caller expects")
    artifact_kind: ArtifactKind | None = Field(default=None, alias="artifactKind")

    @field_validator("plugin_name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return validate_plugin_name(value)

    @field_validator("download_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.lower().startswith(("https://", "http://")):
            raise ValueError(f"downloadUrl must be an http(s) URL, got {value!r}")
        return value


@dataclass
class StatusReport:
    """Outcome of a status check."""

    plugin_name: str
    status: OperationStatus
    record: InstallRecord = field(default_factory=InstallRecord.missing)
    remote_version: str | None = None
    update_available: bool = False
    reason: NotAvailableReason | None = None
    message: str | None = None
    release: ReleaseInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        d: dict[str, Any] = {
            "pluginName": self.plugin_name,
            "status": self.status.value,
            "installed": self.record.installed,
            "version": self.record.installed_version,
            "remoteVersion": self.remote_version,
            "updateAvailable": self.update_available,
        }
        if self.reason is not None:
            d["reason"] = self.reason.value
        if self.message:
            d["message"] = self.message
        return d


@dataclass
class DownloadResult:
    """Result of a download operation.

    Attributes:
        path: Path to the downloaded file.
        bytes_downloaded: Total bytes downloaded.
        bytes_total: Declared content length, if the server sent one.
        duration_seconds: Time taken for download.
    """

    path: Path
    bytes_downloaded: int = 0
    bytes_total: int | None = None
    duration_seconds: float = 0.0

    @property
    def download_speed_mbps(self) -> float | None:
        """Calculate download speed in MB/s."""
        if self.duration_seconds <= 0 or self.bytes_downloaded <= 0:
            return None
        return (self.bytes_downloaded / (1024 * 1024)) / self.duration_seconds


class HubConfig(BaseModel):
    """Global configuration for the hub."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Global log level")
    log_file: Path | None = Field(default=None, description="Path to log file")

    # Host application
    host_name: str = Field(default="vatSys", description="Display name of the host application")
    host_executable: str = Field(default="vatSys.exe", description="Host executable file name")
    host_process_name: str = Field(default="vatSys.exe", description="Process name to look for")
    host_default_paths: list[Path] = Field(
        default_factory=lambda: [
            Path("C:/Program Files (x86)/vatSys/bin"),
            Path("C:/Program Files/vatSys/bin"),
        ],
        description="Well-known host binaries directories, tried in order",
    )
    plugin_dir_name: str = Field(default="Plugins", description="Plugin root under the host dir")

    # Payload recognition
    archive_extensions: list[str] = Field(default_factory=lambda: list(DEFAULT_ARCHIVE_EXTENSIONS))
    binary_extensions: list[str] = Field(default_factory=lambda: list(DEFAULT_BINARY_EXTENSIONS))
    metadata_filenames: list[str] = Field(
        default_factory=lambda: ["version.json"],
        description="Version-metadata file names, matched case-insensitively",
    )
    sidecar_suffix: str = Field(
        default=".version.json", description="Sidecar metadata suffix for flat-file plugins"
    )
    allow_partial_payload: bool = Field(
        default=False,
        description="Accept an archive directory holding only one of binary/metadata.",
    )
    payload_search_depth: int = Field(default=4, description="Directory levels searched")

    # Remote
    github_api_url: str = Field(default="https://api.github.com")
    app_repository: str = Field(default="vatacars/hub", description="Hub self-update repository")
    app_asset_extensions: list[str] = Field(default_factory=lambda: [".exe", ".msi"])
    user_agent: str = Field(default="vatacars-hub/1.0")
    download_timeout_seconds: int = Field(default=600)
    download_chunk_size: int = Field(default=65536)
    download_max_concurrent: int = Field(default=2)

    # Elevation and process checks
    elevation_timeout_seconds: int = Field(default=300)
    elevation_command: list[str] = Field(
        default_factory=lambda: ["sudo"],
        description="Prefix used to elevate on POSIX systems",
    )
    process_check_timeout_seconds: int = Field(default=10)
    single_flight_timeout_seconds: float = Field(default=600.0)

    # Directories (None = platform defaults)
    data_dir: Path | None = Field(default=None, description="Private data directory")
    temp_dir: Path | None = Field(default=None, description="Staging directory")
