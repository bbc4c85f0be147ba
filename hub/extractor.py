"""Version extraction from heterogeneous sources.

Plugin versions turn up in several shapes, each modelled as its own source
type:

- MetadataPayload: a ``version.json`` style document. It may be a bare
  string, ``{"version": "1.2.3"}`` or ``{"Major": 1, "Minor": 2, "Patch": 3}``.
- FreeText: a release title or changelog with a version embedded in prose.
- BinaryResource: a plugin binary whose file-version resource is queried.

Every source converges on a canonical semantic version string, or None.
Nothing in this module raises for bad input. Failures are logged and
reported as None.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from .version import is_valid, normalize_version

if TYPE_CHECKING:
    from .models import ReleaseInfo

logger = structlog.get_logger(__name__)

# JSON control characters plus DEL; JSON needs none of them outside strings.
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

_TEXT_VERSION_PATTERN = re.compile(
    r"(?:\b(?:version|release)[\s:]*)?"
    r"(?<![\w.])[A-Za-z]?(\d+)\.(\d+)(?:\.(\d+))?(?!\d|\.\d)",
    re.IGNORECASE,
)

_BINARY_VERSION_PATTERN = re.compile(r"^(\d+)\.(\d+)\.(\d+)(?:\.(\d+))?$")

_VERSION_ENV_VAR = "HUB_VERSION_TARGET"


@dataclass(frozen=True)
class MetadataPayload:
    """Structured version metadata, raw or already decoded."""

    content: str | bytes | dict[str, Any]


@dataclass(frozen=True)
class FreeText:
    """Free text that may embed a version string."""

    text: str


@dataclass(frozen=True)
class BinaryResource:
    """A binary file whose embedded file-version resource is queried."""

    path: Path


VersionSourceType = MetadataPayload | FreeText | BinaryResource


def _decode(content: str | bytes) -> str:
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="ignore")
    return content.lstrip("\ufeff")


def _load_json(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except ValueError:
        return False, None


def metadata_version_string(data: Any) -> str | None:
    """Pull the raw version string out of a decoded metadata document.

    The result is not normalised: ``{"Major": 1, "Minor": 4}`` gives ``"1.4"``.

    Args:
        data: Decoded JSON value.

    Returns:
        The raw version string, or None if the document has no usable version.

    Examples:
        >>> metadata_version_string({"Major": 1, "Minor": 4})
        '1.4'
        >>> metadata_version_string({"version": "2.0.1"})
        '2.0.1'
    """
    if isinstance(data, str):
        return data.strip() or None

    if not isinstance(data, dict):
        return None

    fields = {str(k).lower(): v for k, v in data.items()}

    version = fields.get("version")
    if isinstance(version, str):
        return version.strip() or None
    if isinstance(version, dict):
        return metadata_version_string(version)

    if "major" not in fields or "minor" not in fields:
        return None

    parts = [fields["major"], fields["minor"]]
    if fields.get("patch") is not None:
        parts.append(fields["patch"])

    numbers: list[str] = []
    for part in parts:
        # bool is an int subclass; reject it explicitly
        if isinstance(part, bool):
            return None
        if isinstance(part, int) and part >= 0:
            numbers.append(str(part))
        elif isinstance(part, str) and part.strip().isdigit():
            numbers.append(str(int(part.strip())))
        else:
            return None
    return ".".join(numbers)


def parse_metadata(content: str | bytes | dict[str, Any] | None, *, source: str = "") -> str | None:
    """Extract a normalised version from a structured metadata payload.

    Raw payloads that fail to parse are retried once with control
    characters stripped. Anything still unreadable yields None.

    Args:
        content: Raw file content or an already decoded document.
        source: Where the payload came from, for log context.

    Returns:
        A canonical semantic version string, or None.

    Examples:
        >>> parse_metadata('{"Major": 1, "Minor": 4}')
        '1.4.0'
        >>> parse_metadata('"v2.1.0"')
        '2.1.0'
    """
    log = logger.bind(component="extractor", source=source or None)

    if content is None:
        return None

    if isinstance(content, dict):
        data: Any = content
    else:
        text = _decode(content)
        ok, data = _load_json(text)
        if not ok:
            sanitized = _CONTROL_CHARS.sub("", text)
            ok, data = _load_json(sanitized)
            if not ok:
                log.warning("metadata_unparseable", preview=text[:80])
                return None
            log.debug("metadata_sanitized")

    raw = metadata_version_string(data)
    if raw is None:
        log.warning("metadata_without_version")
        return None

    version = normalize_version(raw)
    if version is None:
        log.warning("metadata_version_invalid", raw=raw)
    return version


def read_metadata_file(path: Path) -> str | None:
    """Read and parse a version-metadata file.

    Args:
        path: Path to the metadata file.

    Returns:
        A canonical semantic version string, or None if the file is
        missing, unreadable or holds no valid version.
    """
    try:
        content = path.read_bytes()
    except OSError as e:
        logger.warning("metadata_unreadable", path=str(path), error=str(e))
        return None
    return parse_metadata(content, source=str(path))


def find_version_in_text(text: str | None) -> str | None:
    """Find the first version embedded in free text.

    Examples:
        >>> find_version_in_text("Release v2.3.1 hotfix")
        '2.3.1'
        >>> find_version_in_text("Version 1.4")
        '1.4.0'
        >>> find_version_in_text("no version here") is None
        True
    """
    if not text:
        return None

    for match in _TEXT_VERSION_PATTERN.finditer(text):
        major, minor, patch = match.groups()
        version = normalize_version(f"{int(major)}.{int(minor)}.{int(patch or 0)}")
        if version is not None:
            return version
    return None


def validate_binary_version(output: str | None) -> str | None:
    """Accept only a strictly formed file-version resource value.

    Three or four dotted numeric components are accepted. A fourth
    (revision) component is dropped. Anything else is rejected.

    Examples:
        >>> validate_binary_version("1.2.3.0")
        '1.2.3'
        >>> validate_binary_version("1.2") is None
        True
    """
    if output is None:
        return None
    match = _BINARY_VERSION_PATTERN.match(output.strip())
    if not match:
        return None
    major, minor, patch, _revision = match.groups()
    return f"{int(major)}.{int(minor)}.{int(patch)}"


class BinaryVersionReader:
    """Query the file-version resource of a binary.

    On Windows this asks PowerShell for ``VersionInfo.FileVersion``. Other
    platforms have no such resource and always report None unless a
    custom command is supplied. The target path travels through an
    environment variable, never through the command text.
    """

    def __init__(
        self,
        command: list[str] | None = None,
        timeout: float = 10.0,
    ) -> None:
        """Initialize the reader.

        Args:
            command: Command that prints the version of the file named by
                the ``HUB_VERSION_TARGET`` environment variable. Defaults
                to a PowerShell query on Windows and None elsewhere.
            timeout: Seconds to wait for the query.
        """
        if command is None and sys.platform == "win32":
            command = [
                "powershell",
                "-NoProfile",
                "-NonInteractive",
                "-Command",
                f"(Get-Item -LiteralPath $env:{_VERSION_ENV_VAR}).VersionInfo.FileVersion",
            ]
        self.command = command
        self.timeout = timeout

    async def read(self, path: Path) -> str | None:
        """Read the version of a binary.

        Args:
            path: Path to the binary.

        Returns:
            A canonical semantic version string, or None.
        """
        log = logger.bind(component="binary_version", path=str(path))

        if self.command is None or not path.is_file():
            return None

        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, _VERSION_ENV_VAR: str(path)},
            )
        except OSError as e:
            log.warning("binary_version_query_failed", error=str(e))
            return None

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            log.warning("binary_version_query_timeout", timeout=self.timeout)
            return None

        if process.returncode != 0:
            log.debug("binary_version_query_nonzero", exit_code=process.returncode)
            return None

        raw = stdout.decode("utf-8", errors="ignore").strip()
        version = validate_binary_version(raw)
        if version is None and raw:
            log.debug("binary_version_rejected", raw=raw)
        return version


async def read_binary_version(path: Path, reader: BinaryVersionReader | None = None) -> str | None:
    """Read the version embedded in a binary's file-version resource."""
    return await (reader or BinaryVersionReader()).read(path)


async def extract_version(
    source: VersionSourceType,
    *,
    binary_reader: BinaryVersionReader | None = None,
) -> str | None:
    """Extract a canonical version from any supported source.

    Args:
        source: The version source.
        binary_reader: Reader used for BinaryResource sources.

    Returns:
        A canonical semantic version string, or None.
    """
    match source:
        case MetadataPayload(content=content):
            return parse_metadata(content)
        case FreeText(text=text):
            return find_version_in_text(text)
        case BinaryResource(path=path):
            return await read_binary_version(path, binary_reader)
    raise TypeError(f"Unsupported version source: {type(source).__name__}")


def resolve_remote_version(release: ReleaseInfo) -> str | None:
    """Determine the version a release publishes.

    A valid tag wins. Otherwise the title is searched, then the body.

    Args:
        release: Release information.

    Returns:
        A canonical semantic version string, or None.
    """
    if release.tag_version and is_valid(release.tag_version):
        return normalize_version(release.tag_version)

    for text in (release.title, release.body_text):
        version = find_version_in_text(text)
        if version is not None:
            return version

    logger.debug(
        "remote_version_unresolved",
        tag=release.tag_version,
        title=release.title,
    )
    return None
