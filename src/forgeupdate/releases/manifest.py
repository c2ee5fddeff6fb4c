"""Manifest files and artifact integrity helpers.

Release directory layout (any depth below the release root):

    BuildingForge-1.3.0-linux-x64.AppImage
    BuildingForge-1.3.0-linux-x64.AppImage.manifest.json

Each ``*.manifest.json`` pairs with the artifact of the same name minus the
suffix, in the same directory.

checksums.sha256 format (summary written by the release tooling):
    sha256  filename
    abc123...  BuildingForge-1.3.0-linux-x64.AppImage
"""

from __future__ import annotations

import hashlib
from pathlib import Path, PurePath
from typing import TYPE_CHECKING

from pydantic import ValidationError

from forgeupdate.contracts.release import ManifestDocument

if TYPE_CHECKING:
    from collections.abc import Iterable

MANIFEST_SUFFIX = ".manifest.json"
CHECKSUMS_FILENAME = "checksums.sha256"

# Files in the release directory that are neither artifacts nor manifests
AUXILIARY_SUFFIXES = frozenset({".sig", ".sha256", ".md", ".html"})

HASH_CHUNK_BYTES = 1024 * 1024


class ManifestError(Exception):
    """Base exception for manifest operations."""

class ManifestValidationError(ManifestError):
    """Raised when a manifest or its artifact fails validation."""


def compute_file_sha256(filepath: Path) -> str:
    """Compute SHA256 hash of a file.

    Args:
        filepath: Path to file.

    Returns:
        Hex-encoded SHA256 hash (64 chars).

    Raises:
        FileNotFoundError: If file doesn't exist.
    """
    hasher = hashlib.sha256()
    with filepath.open("rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_BYTES), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def parse_checksums_txt(content: str) -> dict[str, str]:
    """Parse checksums.sha256 content into filename -> sha256 mapping.

    Format: sha256  filename (two spaces between hash and name)
    """
    checksums: dict[str, str] = {}
    for line in content.strip().split("\n"):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(maxsplit=1)
        if len(parts) == 2:
            sha256, filename = parts
            checksums[filename.strip()] = sha256.strip().lower()
    return checksums


def generate_checksums_txt(entries: Iterable[tuple[str, str]]) -> str:
    """Generate checksums.sha256 content.

    Args:
        entries: (filename, sha256) pairs.

    Returns:
        ``sha256  filename`` lines sorted by filename.
    """
    lines = [f"{sha256}  {name}" for name, sha256 in sorted(entries)]
    return "\n".join(lines) + "\n"


def is_manifest_file(path: Path) -> bool:
    """True for ``*.manifest.json`` files."""
    return path.name.endswith(MANIFEST_SUFFIX) and len(path.name) > len(MANIFEST_SUFFIX)


def is_candidate_artifact(path: Path) -> bool:
    """True for files that could be artifacts (not manifests or release tooling output)."""
    if path.name.startswith(".") or is_manifest_file(path):
        return False
    if path.name == CHECKSUMS_FILENAME or path.suffix.lower() in AUXILIARY_SUFFIXES:
        return False
    return not path.name.endswith(".json")


def artifact_for_manifest(manifest_path: Path) -> Path:
    """Path of the artifact paired with a manifest file."""
    return manifest_path.with_name(manifest_path.name[: -len(MANIFEST_SUFFIX)])


def manifest_for_artifact(artifact_path: Path) -> Path:
    """Path of the manifest file paired with an artifact."""
    return artifact_path.with_name(artifact_path.name + MANIFEST_SUFFIX)


def load_manifest_document(manifest_path: Path) -> ManifestDocument:
    """Load and schema-validate a manifest file.

    Raises:
        ManifestValidationError: If the file is not valid JSON or fails the schema.
        OSError: If the file cannot be read.
    """
    data = manifest_path.read_bytes()
    try:
        return ManifestDocument.from_json(data)
    except ValidationError as e:
        fields = ",".join(str(err["loc"][0]) for err in e.errors() if err["loc"]) or "document"
        raise ManifestValidationError(f"Schema validation failed ({fields})") from None
    except ValueError:
        # orjson.JSONDecodeError subclasses ValueError
        raise ManifestValidationError("Manifest is not valid JSON") from None


def save_manifest_document(document: ManifestDocument, artifact_path: Path) -> Path:
    """Write a manifest next to its artifact.

    Returns:
        Path of the written manifest file.
    """
    manifest_path = manifest_for_artifact(artifact_path)
    manifest_path.write_bytes(document.to_json() + b"\n")
    return manifest_path


def resolve_artifact(release_root: Path, artifact_path: Path) -> str:
    """Validate an artifact location and return it relative to the release root.

    Checks:
    1. Artifact name is a plain file name (no separators, not . or ..)
    2. Path stays inside the release root after resolution
    3. File exists, is a regular file, and is not a symlink

    Raises:
        ManifestValidationError: If any check fails.
    """
    name = artifact_path.name
    if not name or name in (".", "..") or len(PurePath(name).parts) != 1:
        raise ManifestValidationError(f"Invalid artifact name: {name!r}")

    if artifact_path.is_symlink():
        raise ManifestValidationError(f"Artifact is a symlink (not allowed): {name}")

    # relative_to() is immune to prefix collisions (/rel/dir vs /rel/dir_evil)
    try:
        relative = artifact_path.resolve().relative_to(release_root.resolve())
    except ValueError:
        raise ManifestValidationError(f"Artifact path escapes release directory: {name}") from None
    except OSError:
        raise ManifestValidationError(f"Cannot resolve artifact path: {name}") from None

    if not artifact_path.is_file():
        raise ManifestValidationError(f"Artifact file missing: {name}")

    return relative.as_posix()
