"""Hub self-update check.

Compares the running hub version with the launcher repository's latest
release and can fetch the installer. Running the installer and relaunching
are left to the front end.
"""

from __future__ import annotations

import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from .errors import HubError, NetworkError
from .extractor import resolve_remote_version
from .models import ReleaseInfo
from .releases import select_asset
from .staging import asset_filename
from .version import normalize_version, update_available

if TYPE_CHECKING:
    from collections.abc import Callable

    from .download_manager import DownloadManager
    from .releases import ReleaseClient

logger = structlog.get_logger(__name__)


@dataclass
class SelfUpdateInfo:
    """Result of a self-update check."""

    update_available: bool
    current_version: str
    latest_version: str | None = None
    release_notes: str = ""
    download_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire shape sent to front ends."""
        return {
            "updateAvailable": self.update_available,
            "currentVersion": self.current_version,
            "latestVersion": self.latest_version,
            "releaseNotes": self.release_notes,
            "downloadUrl": self.download_url,
        }


class SelfUpdater:
    """Checks for and downloads new hub releases."""

    def __init__(
        self,
        release_client: ReleaseClient,
        download_manager: DownloadManager,
        repository: str,
        current_version: str,
        asset_extensions: list[str] | None = None,
    ) -> None:
        """Initialize the updater.

        Args:
            release_client: Fetches release documents.
            download_manager: Downloads the installer.
            repository: Launcher repository in ``owner/repo`` form.
            current_version: Version of the running hub.
            asset_extensions: Installer extensions, in order of preference.
        """
        self.release_client = release_client
        self.download_manager = download_manager
        self.repository = repository
        self.current_version = current_version
        self.asset_extensions = asset_extensions or [".exe", ".msi"]
        self._log = logger.bind(component="self_update", repository=repository)

    async def check(self) -> SelfUpdateInfo:
        """Check whether a newer hub release exists.

        Returns:
            The check result. ``update_available`` is False whenever either
            version cannot be compared.

        Raises:
            NetworkError: If the release cannot be fetched.
        """
        payload = await self.release_client.fetch_latest(self.repository)
        release = ReleaseInfo.from_github(payload)
        latest = resolve_remote_version(release)

        asset = None
        for ext in self.asset_extensions:
            asset = select_asset(payload.get("assets") or [], [ext])
            if asset is not None:
                break

        download_url = str(asset["browser_download_url"]) if asset and asset.get("browser_download_url") else None
        current = normalize_version(self.current_version) or self.current_version
        available = download_url is not None and update_available(current, latest)

        self._log.info(
            "self_update_checked",
            current=current,
            latest=latest,
            update_available=available,
        )
        return SelfUpdateInfo(
            update_available=available,
            current_version=current,
            latest_version=latest,
            release_notes=release.body_text,
            download_url=download_url,
        )

    async def download(
        self,
        info: SelfUpdateInfo,
        destination_dir: Path | None = None,
        on_progress: Callable[[int, float | None], None] | None = None,
    ) -> Path:
        """Download the installer of a release found by check().

        Args:
            info: Result of check().
            destination_dir: Where to save the installer (new temp dir if None).
            on_progress: Download progress callback.

        Returns:
            Path to the downloaded installer.

        Raises:
            HubError: If the release has no installer asset.
            NetworkError: If the download fails.
        """
        if info.download_url is None:
            raise HubError("The latest release has no installer to download")

        directory = destination_dir or Path(tempfile.mkdtemp(prefix="hub-selfupdate-"))
        target = directory / asset_filename(info.download_url, f"vatacars-hub-{info.latest_version}.exe")
        try:
            result = await self.download_manager.download(info.download_url, target, on_progress)
        except NetworkError:
            self._log.error("self_update_download_failed", url=info.download_url)
            if destination_dir is None:
                shutil.rmtree(directory, ignore_errors=True)
            raise
        return result.path
