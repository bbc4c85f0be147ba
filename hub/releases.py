"""GitHub Releases lookups."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from .errors import NetworkError, ReleaseNotFoundError
from .models import DEFAULT_ARCHIVE_EXTENSIONS, DEFAULT_BINARY_EXTENSIONS, ReleaseInfo

if TYPE_CHECKING:
    from .download_manager import DownloadManager
    from .models import HubConfig

logger = structlog.get_logger(__name__)

GITHUB_API_URL = "https://api.github.com"
GITHUB_ACCEPT = "application/vnd.github+json"


def select_asset(assets: list[dict[str, Any]], extensions: list[str] | tuple[str, ...]) -> dict[str, Any] | None:
    """Return the first asset whose name ends in one of ``extensions``.

    Examples:
        >>> select_asset([{"name": "notes.txt"}, {"name": "Plugin.zip"}], [".zip"])
        {'name': 'Plugin.zip'}
    """
    lowered = [ext.lower() for ext in extensions]
    for asset in assets:
        name = str(asset.get("name") or "").lower()
        if any(name.endswith(ext) for ext in lowered):
            return asset
    return None


class ReleaseClient:
    """Fetches the latest published release of a repository.

    Releases are fetched fresh on every call and never cached.
    """

    def __init__(
        self,
        download_manager: DownloadManager,
        api_url: str = GITHUB_API_URL,
        archive_extensions: list[str] | tuple[str, ...] = DEFAULT_ARCHIVE_EXTENSIONS,
        binary_extensions: list[str] | tuple[str, ...] = DEFAULT_BINARY_EXTENSIONS,
    ) -> None:
        """Initialize the client.

        Args:
            download_manager: HTTP transport.
            api_url: GitHub API base URL.
            archive_extensions: Asset extensions treated as archives.
            binary_extensions: Asset extensions treated as flat binaries.
        """
        self.download_manager = download_manager
        self.api_url = api_url.rstrip("/")
        self.archive_extensions = list(archive_extensions)
        self.binary_extensions = list(binary_extensions)
        self._log = logger.bind(component="release_client")

    @classmethod
    def from_config(cls, config: HubConfig, download_manager: DownloadManager) -> ReleaseClient:
        """Create a ReleaseClient from HubConfig."""
        return cls(
            download_manager,
            api_url=config.github_api_url,
            archive_extensions=config.archive_extensions,
            binary_extensions=config.binary_extensions,
        )

    async def fetch_latest(self, repository: str) -> dict[str, Any]:
        """Fetch the raw ``releases/latest`` document.

        Raises:
            ReleaseNotFoundError: If the repository has no published release.
            NetworkError: On any other failure.
        """
        url = f"{self.api_url}/repos/{repository}/releases/latest"
        try:
            payload = await self.download_manager.fetch_json(url, headers={"Accept": GITHUB_ACCEPT})
        except NetworkError as e:
            if e.status == 404:
                raise ReleaseNotFoundError(f"No published release for {repository}", status=404) from e
            raise

        if not isinstance(payload, dict):
            raise NetworkError(f"Unexpected release document for {repository}")
        return payload

    async def latest_release(self, repository: str) -> ReleaseInfo:
        """Fetch the latest release of ``repository`` (``owner/repo``).

        Raises:
            ReleaseNotFoundError: If the repository has no published release.
            NetworkError: On any other failure.
        """
        payload = await self.fetch_latest(repository)
        release = ReleaseInfo.from_github(payload, self.archive_extensions, self.binary_extensions)
        self._log.debug(
            "release_fetched",
            repository=repository,
            tag=release.tag_version,
            asset=release.asset_name,
        )
        return release
