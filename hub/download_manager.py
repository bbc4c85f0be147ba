"""HTTP transfers for the hub.

Streams release assets to disk with progress reporting and fetches JSON
documents from the GitHub API. Failures surface as NetworkError. Nothing
here retries: a retry is a new attempt started by the caller.
"""

from __future__ import annotations

import asyncio
import shutil
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiohttp
import structlog

from .errors import NetworkError
from .models import DownloadResult

if TYPE_CHECKING:
    from collections.abc import Callable

    from .models import HubConfig

logger = structlog.get_logger(__name__)

# Default configuration values
DEFAULT_TIMEOUT_SECONDS = 600
DEFAULT_MAX_CONCURRENT = 2
DEFAULT_CHUNK_SIZE = 65536  # 64 KB chunks
DEFAULT_USER_AGENT = "vatacars-hub/1.0"


def compute_percent(bytes_done: int, bytes_total: int | None) -> float | None:
    """Compute download progress, clamped to 0-100.

    Args:
        bytes_done: Bytes received so far.
        bytes_total: Declared content length, if known.

    Returns:
        Percent complete, or None when the total is unknown.

    Examples:
        >>> compute_percent(50, 200)
        25.0
        >>> compute_percent(300, 200)
        100.0
        >>> compute_percent(10, None) is None
        True
    """
    if not bytes_total or bytes_total <= 0:
        return None
    return max(0.0, min(100.0, bytes_done * 100.0 / bytes_total))


class DownloadManager:
    """Streams files and fetches JSON over HTTP.

    Example:
        >>> manager = DownloadManager()
        >>> result = await manager.download(url, Path("/tmp/plugin.zip"), on_progress)
    """

    def __init__(
        self,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        user_agent: str = DEFAULT_USER_AGENT,
        max_concurrent_downloads: int = DEFAULT_MAX_CONCURRENT,
    ) -> None:
        """Initialize the download manager.

        Args:
            timeout_seconds: Total timeout for one request in seconds.
            chunk_size: Read size for streamed downloads.
            user_agent: User-Agent header sent with every request.
            max_concurrent_downloads: Maximum number of concurrent downloads.
        """
        self._timeout_seconds = timeout_seconds
        self._chunk_size = chunk_size
        self._user_agent = user_agent
        self._max_concurrent = max_concurrent_downloads

        # Semaphore for limiting concurrent downloads
        self._download_semaphore = asyncio.Semaphore(max_concurrent_downloads)

        self._log = logger.bind(component="download_manager")

    @classmethod
    def from_config(cls, config: HubConfig) -> DownloadManager:
        """Create a DownloadManager from HubConfig.

        Args:
            config: Hub configuration.

        Returns:
            Configured DownloadManager instance.
        """
        return cls(
            timeout_seconds=config.download_timeout_seconds,
            chunk_size=config.download_chunk_size,
            user_agent=config.user_agent,
            max_concurrent_downloads=config.download_max_concurrent,
        )

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = dict(extra) if extra else {}
        headers.setdefault("User-Agent", self._user_agent)
        return headers

    async def download(
        self,
        url: str,
        destination: Path,
        on_progress: Callable[[int, float | None], None] | None = None,
    ) -> DownloadResult:
        """Stream a file to ``destination``.

        Data goes to a hidden temporary file next to the destination and is
        moved into place only once the transfer completes.

        Args:
            url: URL to download.
            destination: Final file path.
            on_progress: Called after every chunk with the bytes received so
                far and the percent complete (None if the size is unknown).

        Returns:
            DownloadResult describing the transfer.

        Raises:
            NetworkError: On HTTP errors, connection failures or timeouts.
        """
        log = self._log.bind(url=url)
        start_time = time.monotonic()
        timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)

        destination.parent.mkdir(parents=True, exist_ok=True)
        temp_path = destination.parent / f".{destination.name}.download"

        async with self._download_semaphore:
            try:
                async with (
                    aiohttp.ClientSession(timeout=timeout) as session,
                    session.get(url, headers=self._headers()) as response,
                ):
                    if response.status == 404:
                        raise NetworkError(f"File not found: {url}", status=404)
                    if response.status >= 400:
                        raise NetworkError(
                            f"HTTP error {response.status}: {response.reason}",
                            status=response.status,
                        )

                    bytes_total = response.content_length
                    bytes_downloaded = 0

                    with temp_path.open("wb") as f:
                        async for chunk in response.content.iter_chunked(self._chunk_size):
                            f.write(chunk)
                            bytes_downloaded += len(chunk)
                            if on_progress is not None:
                                on_progress(
                                    bytes_downloaded, compute_percent(bytes_downloaded, bytes_total)
                                )

                if bytes_total is not None and bytes_downloaded < bytes_total:
                    raise NetworkError(
                        f"Download truncated: received {bytes_downloaded} of {bytes_total} bytes"
                    )

                shutil.move(str(temp_path), str(destination))

            except aiohttp.ClientError as e:
                temp_path.unlink(missing_ok=True)
                log.warning("download_failed", error=str(e))
                raise NetworkError(f"Network error: {e}") from e

            except TimeoutError:
                temp_path.unlink(missing_ok=True)
                log.warning("download_timeout", timeout=self._timeout_seconds)
                raise NetworkError("Download timed out") from None

            except NetworkError:
                temp_path.unlink(missing_ok=True)
                raise

        duration = time.monotonic() - start_time
        log.info("download_completed", bytes=bytes_downloaded, duration=round(duration, 2))
        return DownloadResult(
            path=destination,
            bytes_downloaded=bytes_downloaded,
            bytes_total=bytes_total,
            duration_seconds=duration,
        )

    async def fetch_json(self, url: str, headers: dict[str, str] | None = None) -> Any:
        """Fetch and decode a JSON document.

        Args:
            url: URL to fetch.
            headers: Extra request headers.

        Returns:
            The decoded JSON value.

        Raises:
            NetworkError: On HTTP errors (``status`` is set), connection
                failures, timeouts or an undecodable body.
        """
        timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
        try:
            async with (
                aiohttp.ClientSession(timeout=timeout) as session,
                session.get(url, headers=self._headers(headers)) as response,
            ):
                if response.status >= 400:
                    raise NetworkError(
                        f"HTTP error {response.status}: {response.reason}",
                        status=response.status,
                    )
                return await response.json(content_type=None)

        except aiohttp.ClientError as e:
            raise NetworkError(f"Network error: {e}") from e
        except TimeoutError:
            raise NetworkError(f"Request timed out: {url}") from None
        except ValueError as e:
            raise NetworkError(f"Invalid JSON from {url}: {e}") from e
