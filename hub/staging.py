"""Download and stage release assets.

Nothing is ever extracted into the plugin directory. Assets are downloaded
into a private scratch directory, archives are expanded there, and the
directory holding the actual payload is located. The reconciler then
copies the payload into place with a privileged batch. Scratch
directories are removed whether staging succeeds or fails.
"""

from __future__ import annotations

import asyncio
import shutil
import tempfile
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlparse

import structlog

from .errors import MalformedArchiveError
from .models import ArtifactKind

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from .download_manager import DownloadManager
    from .models import DownloadResult, HubConfig

logger = structlog.get_logger(__name__)

IGNORED_DIRECTORIES = frozenset({"__MACOSX"})


def safe_extract_zip(archive: Path, destination: Path) -> int:
    """Extract a zip archive, refusing members that escape ``destination``.

    Args:
        archive: Zip file to extract.
        destination: Directory to extract into (created if missing).

    Returns:
        Number of members extracted.

    Raises:
        MalformedArchiveError: If the file is not a valid zip archive, a
            member path points outside the destination, or a member cannot
            be decompressed.
    """
    destination.mkdir(parents=True, exist_ok=True)
    root = destination.resolve()

    try:
        with zipfile.ZipFile(archive, "r") as zf:
            members = zf.infolist()
            for member in members:
                target = (root / member.filename).resolve()
                if not target.is_relative_to(root):
                    raise MalformedArchiveError(f"Archive member escapes extraction root: {member.filename}")
            zf.extractall(root)
    except zipfile.BadZipFile as e:
        raise MalformedArchiveError(f"Not a valid zip archive: {archive.name}: {e}") from e
    except (NotImplementedError, RuntimeError, EOFError, zlib.error) as e:
        # Unsupported compression, encrypted members or truncated data.
        raise MalformedArchiveError(f"Cannot extract {archive.name}: {e}") from e

    return len(members)


@dataclass
class PayloadMatch:
    """A directory found by the payload search.

    Attributes:
        directory: Directory holding the payload.
        binaries: Recognised plugin binaries directly inside it.
        metadata: Version-metadata file directly inside it, if any.
        depth: Levels below the extraction root.
    """

    directory: Path
    binaries: list[Path] = field(default_factory=list)
    metadata: Path | None = None
    depth: int = 0

    @property
    def complete(self) -> bool:
        """Whether both a binary and a metadata file were found."""
        return bool(self.binaries) and self.metadata is not None


def _scan_directory(
    directory: Path,
    depth: int,
    binary_extensions: list[str],
    metadata_names: set[str],
) -> tuple[PayloadMatch, list[Path]]:
    match = PayloadMatch(directory=directory, depth=depth)
    subdirs: list[Path] = []
    for entry in sorted(directory.iterdir(), key=lambda p: p.name.lower()):
        if entry.name.startswith(".") or entry.name in IGNORED_DIRECTORIES:
            continue
        if entry.is_dir():
            subdirs.append(entry)
        elif entry.name.lower() in metadata_names and match.metadata is None:
            match.metadata = entry
        elif any(entry.name.lower().endswith(ext.lower()) for ext in binary_extensions):
            match.binaries.append(entry)
    return match, subdirs


def locate_payload(
    root: Path,
    binary_extensions: list[str] | None = None,
    metadata_filenames: list[str] | None = None,
    max_depth: int = 4,
    allow_partial: bool = False,
) -> PayloadMatch:
    """Find the directory that holds a plugin's payload.

    The search starts at ``root``. A directory holding both a recognised
    binary and a version-metadata file is the payload. Otherwise the search
    descends only while the directory has exactly one subdirectory; with
    several candidates it stops rather than pick one. Hidden directories
    and ``__MACOSX`` are skipped.

    Args:
        root: Extraction root.
        binary_extensions: Extensions of plugin binaries.
        metadata_filenames: Version-metadata file names (case-insensitive).
        max_depth: Deepest level searched below ``root``.
        allow_partial: Fall back to the shallowest directory holding only
            one of the two, with a warning.

    Returns:
        The matched directory.

    Raises:
        MalformedArchiveError: If no directory qualifies.
    """
    binary_extensions = binary_extensions or [".dll"]
    metadata_names = {n.lower() for n in (metadata_filenames or ["version.json"])}

    partial: PayloadMatch | None = None
    directory, depth = root, 0

    while True:
        match, subdirs = _scan_directory(directory, depth, binary_extensions, metadata_names)

        if match.complete:
            logger.debug("payload_located", directory=str(directory), depth=depth)
            return match

        if partial is None and (match.binaries or match.metadata is not None):
            partial = match

        if len(subdirs) != 1 or depth >= max_depth:
            if len(subdirs) > 1:
                logger.debug(
                    "payload_search_ambiguous",
                    directory=str(directory),
                    candidates=[d.name for d in subdirs],
                )
            break
        directory, depth = subdirs[0], depth + 1

    if allow_partial and partial is not None:
        logger.warning(
            "payload_partial_match",
            directory=str(partial.directory),
            has_binary=bool(partial.binaries),
            has_metadata=partial.metadata is not None,
        )
        return partial

    raise MalformedArchiveError(
        "Archive does not contain a plugin binary together with its version metadata"
    )


def asset_filename(url: str, fallback: str) -> str:
    """Derive a safe local file name from a download URL.

    Examples:
        >>> asset_filename("https://github.com/o/r/releases/download/v1/My%20Plugin.zip", "x.zip")
        'My Plugin.zip'
    """
    name = unquote(Path(urlparse(url).path).name)
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        return fallback
    return name


@dataclass
class StagedPayload:
    """A downloaded (and, for archives, extracted) asset ready to place.

    Use as an async context manager; the scratch directory is removed on
    exit::

        async with await stager.prepare(url, kind, name) as staged:
            ...

    Attributes:
        kind: Artifact kind of the asset.
        path: Payload directory (archives) or the binary file (flat files).
        work_dir: Scratch directory owning every staged file.
        metadata: Version-metadata file inside the payload directory.
        download: Download statistics, if this payload was downloaded.
    """

    kind: ArtifactKind
    path: Path
    work_dir: Path
    metadata: Path | None = None
    download: DownloadResult | None = None

    def cleanup(self) -> None:
        """Remove the scratch directory."""
        shutil.rmtree(self.work_dir, ignore_errors=True)
        logger.debug("staging_cleaned", work_dir=str(self.work_dir))

    async def __aenter__(self) -> StagedPayload:
        """Enter the context."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Clean up on exit."""
        self.cleanup()


class ArtifactStager:
    """Downloads release assets and locates their payloads."""

    def __init__(
        self,
        download_manager: DownloadManager,
        config: HubConfig,
        temp_dir: Path | None = None,
    ) -> None:
        """Initialize the stager.

        Args:
            download_manager: Used for all HTTP transfers.
            config: Hub configuration (extensions, search depth).
            temp_dir: Parent for scratch directories (system temp if None).
        """
        self.download_manager = download_manager
        self.config = config
        self.temp_dir = temp_dir or config.temp_dir
        self._log = logger.bind(component="artifact_stager")

    def _scratch(self, prefix: str) -> Path:
        if self.temp_dir is not None:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=prefix, dir=self.temp_dir))

    async def download(
        self,
        url: str,
        destination: Path,
        on_progress: Callable[[int, float | None], None] | None = None,
    ) -> DownloadResult:
        """Download an asset to ``destination``.

        Raises:
            NetworkError: If the transfer fails.
        """
        return await self.download_manager.download(url, destination, on_progress)

    async def stage(self, archive: Path, work_dir: Path | None = None) -> StagedPayload:
        """Extract an archive and locate its payload.

        Args:
            archive: Zip archive to stage.
            work_dir: Scratch directory to own. A fresh one is created if None.

        Returns:
            The staged payload; the caller owns its cleanup.

        Raises:
            MalformedArchiveError: If the archive is invalid or holds no
                recognisable payload. The scratch directory is removed first.
        """
        work_dir = work_dir or self._scratch("hub-stage-")
        extract_dir = work_dir / "extracted"
        try:
            count = await asyncio.to_thread(safe_extract_zip, archive, extract_dir)
            self._log.debug("archive_extracted", archive=archive.name, members=count)
            match = await asyncio.to_thread(
                locate_payload,
                extract_dir,
                self.config.binary_extensions,
                self.config.metadata_filenames,
                self.config.payload_search_depth,
                self.config.allow_partial_payload,
            )
        except BaseException:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise

        return StagedPayload(
            kind=ArtifactKind.ARCHIVE,
            path=match.directory,
            work_dir=work_dir,
            metadata=match.metadata,
        )

    async def prepare(
        self,
        url: str,
        kind: ArtifactKind,
        name: str,
        on_progress: Callable[[int, float | None], None] | None = None,
    ) -> StagedPayload:
        """Download an asset and stage it for placement.

        Args:
            url: Asset URL.
            kind: Artifact kind of the asset.
            name: Plugin name, used for scratch and fallback file names.
            on_progress: Download progress callback.

        Returns:
            The staged payload; the caller owns its cleanup.

        Raises:
            NetworkError: If the download fails.
            MalformedArchiveError: If an archive holds no recognisable payload.
        """
        work_dir = self._scratch(f"hub-{name}-")
        default_ext = (
            self.config.archive_extensions[0]
            if kind == ArtifactKind.ARCHIVE
            else self.config.binary_extensions[0]
        )
        try:
            asset_path = work_dir / asset_filename(url, f"{name}{default_ext}")
            result = await self.download(url, asset_path, on_progress)

            if kind == ArtifactKind.FILE:
                return StagedPayload(kind=kind, path=asset_path, work_dir=work_dir, download=result)

            staged = await self.stage(asset_path, work_dir)
            staged.download = result
            return staged
        except BaseException:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise
