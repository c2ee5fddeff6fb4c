"""Semantic version parsing and ordering.

Version string format (semver 2.0.0):
    MAJOR.MINOR.PATCH[-prerelease][+build]

Examples:
    1.3.0
    2.0.0-beta.2
    1.4.1+20260125.abc123

Build metadata is kept for display but ignored for ordering and uniqueness,
so ``1.3.0+a`` and ``1.3.0+b`` name the same release.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# semver.org reference grammar, no leading zeros; use fullmatch (ASCII digits only)
VERSION_PATTERN = re.compile(
    r"(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)"
    r"(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+(?P<build>[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?",
    re.ASCII,
)

# Keeps version strings usable as path segments and log fields
MAX_VERSION_LENGTH = 64

_PrereleaseKey = tuple[tuple[int, int, str], ...]


@dataclass(frozen=True)
class SemVer:
    """Parsed semantic version.

    Attributes:
        major: Major version number.
        minor: Minor version number.
        patch: Patch version number.
        prerelease: Dot-separated prerelease identifiers (empty for releases).
        build: Build metadata (ignored for precedence).
        raw: Original version string.
    """

    major: int
    minor: int
    patch: int
    prerelease: tuple[str, ...]
    build: str
    raw: str

    def __str__(self) -> str:
        """Return the raw version string."""
        return self.raw

    @property
    def is_prerelease(self) -> bool:
        """True for versions such as 2.0.0-beta.1."""
        return bool(self.prerelease)

    @property
    def core(self) -> str:
        """Version without build metadata (the uniqueness key)."""
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += "-" + ".".join(self.prerelease)
        return text

    def precedence_key(self) -> tuple[int, int, int, int, _PrereleaseKey]:
        """Sort key implementing semver precedence.

        A release sorts above any of its prereleases. Numeric identifiers
        compare numerically and sort below alphanumeric ones; a shorter
        identifier list sorts first when all preceding identifiers match.
        """
        if not self.prerelease:
            return (self.major, self.minor, self.patch, 1, ())
        identifiers = tuple(
            (0, int(part), "") if part.isdigit() else (1, 0, part) for part in self.prerelease
        )
        return (self.major, self.minor, self.patch, 0, identifiers)

    def __lt__(self, other: SemVer) -> bool:
        return self.precedence_key() < other.precedence_key()

    def __le__(self, other: SemVer) -> bool:
        return self.precedence_key() <= other.precedence_key()

    def __gt__(self, other: SemVer) -> bool:
        return self.precedence_key() > other.precedence_key()

    def __ge__(self, other: SemVer) -> bool:
        return self.precedence_key() >= other.precedence_key()


def parse_version(version_str: str) -> SemVer:
    """Parse a semantic version string.

    Args:
        version_str: Version string such as ``1.3.0`` or ``2.0.0-rc.1+build.7``.

    Returns:
        SemVer with parsed components.

    Raises:
        ValueError: If the string is not a valid semantic version.
    """
    if len(version_str) > MAX_VERSION_LENGTH:
        msg = f"Invalid version string: longer than {MAX_VERSION_LENGTH} characters"
        raise ValueError(msg)

    match = VERSION_PATTERN.fullmatch(version_str)
    if match is None:
        msg = f"Invalid version string: {version_str!r}. Expected MAJOR.MINOR.PATCH[-pre][+build]"
        raise ValueError(msg)

    prerelease = match.group("prerelease")
    return SemVer(
        major=int(match.group("major")),
        minor=int(match.group("minor")),
        patch=int(match.group("patch")),
        prerelease=tuple(prerelease.split(".")) if prerelease else (),
        build=match.group("build") or "",
        raw=version_str,
    )


def is_valid_version(version_str: str) -> bool:
    """Check a version string without raising."""
    try:
        parse_version(version_str)
    except ValueError:
        return False
    return True
