"""Semantic version parsing and comparison.

Plugin authors publish versions in whatever shape they like, so everything
that reaches comparison has to go through this module first. Only strict
three-component semantic versions (optionally with prerelease and build
suffixes) are considered comparable:

- ``1.2.3``, ``1.2.3-rc.1``, ``1.2.3+build.5`` are valid
- ``v1.2.3`` is valid after the leading ``v`` is stripped
- ``1.2`` is not valid until normalised to ``1.2.0`` via normalize_version()
"""

from __future__ import annotations

import re
from functools import total_ordering
from typing import NamedTuple

import structlog

from .errors import VersionUnparseableError

logger = structlog.get_logger(__name__)


class VersionComponents(NamedTuple):
    """Parsed version components."""

    major: int
    minor: int
    patch: int
    prerelease: str | None = None
    build: str | None = None


SEMVER_PATTERN = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)

TWO_COMPONENT_PATTERN = re.compile(r"^(\d+)\.(\d+)$")


def clean_version(version: str) -> str:
    """Strip whitespace and a leading ``v``/``V`` prefix.

    Examples:
        >>> clean_version(" v1.2.3 ")
        '1.2.3'
    """
    version = version.strip()
    if version[:1] in ("v", "V"):
        version = version[1:]
    return version


def parse_version(version: str) -> VersionComponents:
    """Parse a semantic version string into components.

    Args:
        version: Version string to parse. A leading ``v`` is tolerated.

    Returns:
        VersionComponents tuple with major, minor, patch, prerelease, build.

    Raises:
        VersionUnparseableError: If the string is not a valid semantic version.

    Examples:
        >>> parse_version("1.2.3")
        VersionComponents(major=1, minor=2, patch=3, prerelease=None, build=None)
        >>> parse_version("v2.0.0-rc.1")
        VersionComponents(major=2, minor=0, patch=0, prerelease='rc.1', build=None)
    """
    match = SEMVER_PATTERN.match(clean_version(version))
    if not match:
        raise VersionUnparseableError(f"Not a semantic version: {version!r}")

    return VersionComponents(
        major=int(match.group(1)),
        minor=int(match.group(2)),
        patch=int(match.group(3)),
        prerelease=match.group(4),
        build=match.group(5),
    )


def is_valid(version: str | None) -> bool:
    """Check whether a string is a valid semantic version."""
    if not version:
        return False
    return SEMVER_PATTERN.match(clean_version(version)) is not None


def _compare_prerelease(pre1: str | None, pre2: str | None) -> int:
    """Compare prerelease tags using semantic-versioning precedence.

    A version without a prerelease tag ranks above one with a tag. Dot
    separated identifiers are compared left to right; numeric identifiers
    compare numerically and rank below alphanumeric ones.

    Args:
        pre1: First prerelease tag.
        pre2: Second prerelease tag.

    Returns:
        -1, 0 or 1.
    """
    if pre1 == pre2:
        return 0
    if pre1 is None:
        return 1
    if pre2 is None:
        return -1

    parts1 = pre1.split(".")
    parts2 = pre2.split(".")

    for a, b in zip(parts1, parts2, strict=False):
        if a == b:
            continue
        a_num, b_num = a.isdigit(), b.isdigit()
        if a_num and b_num:
            return -1 if int(a) < int(b) else 1
        if a_num:
            return -1
        if b_num:
            return 1
        return -1 if a < b else 1

    if len(parts1) == len(parts2):
        return 0
    return -1 if len(parts1) < len(parts2) else 1


def compare_versions(version1: str, version2: str) -> int:
    """Compare two semantic version strings.

    Build metadata is ignored, as semantic versioning requires.

    Args:
        version1: First version string.
        version2: Second version string.

    Returns:
        -1 if version1 < version2
         0 if version1 == version2
         1 if version1 > version2

    Raises:
        VersionUnparseableError: If either version cannot be parsed.

    Examples:
        >>> compare_versions("1.2.3", "1.3.0")
        -1
        >>> compare_versions("1.3.0", "1.3.0+build.7")
        0
        >>> compare_versions("1.2.3-alpha", "1.2.3")
        -1
    """
    v1 = parse_version(version1)
    v2 = parse_version(version2)

    core1 = (v1.major, v1.minor, v1.patch)
    core2 = (v2.major, v2.minor, v2.patch)
    if core1 != core2:
        return -1 if core1 < core2 else 1

    return _compare_prerelease(v1.prerelease, v2.prerelease)


def update_available(installed: str | None, available: str | None) -> bool:
    """Decide whether the remote version is strictly newer than the local one.

    Incomparable inputs never trigger an update: if either side is missing
    or fails to parse, the answer is False.

    Args:
        installed: Locally installed version (None if unknown).
        available: Latest remote version (None if unknown).

    Returns:
        True only if both versions are valid and available > installed.

    Examples:
        >>> update_available("1.2.3", "1.3.0")
        True
        >>> update_available("1.3.0", "1.3.0")
        False
        >>> update_available("unknown", "1.3.0")
        False
    """
    if installed is None or available is None:
        return False

    try:
        return compare_versions(installed, available) < 0
    except VersionUnparseableError as e:
        logger.debug("version_unparseable", installed=installed, available=available, error=str(e))
        return False


def normalize_version(version: str | None) -> str | None:
    """Normalise a version string to canonical semantic-version form.

    Strips a leading ``v``, pads a bare ``major.minor`` with a zero patch
    component, and rejects everything else that is not a valid semantic
    version.

    Args:
        version: Raw version string.

    Returns:
        The canonical version string, or None if it cannot be normalised.

    Examples:
        >>> normalize_version("v1.2.3")
        '1.2.3'
        >>> normalize_version("1.4")
        '1.4.0'
        >>> normalize_version("latest") is None
        True
    """
    if version is None:
        return None

    cleaned = clean_version(str(version))
    if TWO_COMPONENT_PATTERN.match(cleaned):
        major, minor = cleaned.split(".")
        cleaned = f"{int(major)}.{int(minor)}.0"

    if not SEMVER_PATTERN.match(cleaned):
        return None
    return cleaned


@total_ordering
class Version:
    """A comparable semantic version.

    Attributes:
        raw: The canonical version string.
        components: Parsed version components.

    Example:
        >>> Version("1.2.3") < Version("v1.10.0")
        True
    """

    raw: str
    components: VersionComponents

    def __init__(self, version: str) -> None:
        """Initialize a Version object.

        Args:
            version: Version string to parse.

        Raises:
            VersionUnparseableError: If the version cannot be parsed.
        """
        self.raw = clean_version(version)
        self.components = parse_version(self.raw)

    def __str__(self) -> str:
        """Return the canonical version string."""
        return self.raw

    def __repr__(self) -> str:
        """Return a repr string."""
        return f"Version({self.raw!r})"

    def __eq__(self, other: object) -> bool:
        """Check equality with another Version."""
        if not isinstance(other, Version):
            return NotImplemented
        return compare_versions(self.raw, other.raw) == 0

    def __lt__(self, other: object) -> bool:
        """Check if this version is less than another."""
        if not isinstance(other, Version):
            return NotImplemented
        return compare_versions(self.raw, other.raw) < 0

    def __hash__(self) -> int:
        """Return hash for use in sets/dicts."""
        c = self.components
        return hash((c.major, c.minor, c.patch, c.prerelease))
