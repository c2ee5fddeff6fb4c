"""
Filesystem-backed release catalog.

The store scans the release directory, admits only manifests whose signature
verifies and whose artifact hashes to the signed checksum, and publishes the
result as one immutable Catalog. Readers take ``store.snapshot`` once per
request; a reload replaces the reference in a single assignment, so no reader
ever sees a mix of old and new manifests.

A scan that fails as a whole (unreadable directory, timeout) is discarded and
the previous catalog stays active; no new scan starts while a timed-out one
is still running. Individual bad manifests are excluded and logged without
affecting the rest of the scan.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import IO, TYPE_CHECKING

from forgeupdate.contracts.release import Platform, ReleaseManifest
from forgeupdate.contracts.version import parse_version
from forgeupdate.releases.manifest import (
    ManifestError,
    artifact_for_manifest,
    compute_file_sha256,
    is_candidate_artifact,
    is_manifest_file,
    load_manifest_document,
    manifest_for_artifact,
    resolve_artifact,
)

if TYPE_CHECKING:
    from forgeupdate.signing.verifier import SignatureVerifier

logger = logging.getLogger(__name__)

# (platform, version core) -> manifest
CatalogKey = tuple[Platform, str]

# artifact path -> (size_bytes, mtime_ns, sha256)
HashCache = dict[str, tuple[int, int, str]]


class ReleaseStoreError(Exception):
    """Base exception for release store operations."""


class ReleaseNotFoundError(ReleaseStoreError):
    """Requested release is not in the catalog (or failed verification)."""


class CatalogUnavailableError(ReleaseStoreError):
    """No catalog has ever loaded, or the storage backend is unreachable."""


@dataclass(frozen=True)
class Catalog:
    """Immutable snapshot of servable releases.

    Attributes:
        releases: Verified manifests keyed by (platform, version core).
        latest: Highest version per platform.
        loaded_at: When the scan completed.
        excluded: Number of manifests/artifacts rejected by the scan.
    """

    releases: Mapping[CatalogKey, ReleaseManifest]
    latest: Mapping[Platform, ReleaseManifest]
    loaded_at: datetime
    excluded: int = 0
    # artifact path -> (size_bytes, mtime_ns) observed when hashed
    stamps: Mapping[str, tuple[int, int]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.releases)

    def get(self, version: str, platform: Platform | str) -> ReleaseManifest | None:
        """Look up one release; malformed input simply finds nothing."""
        resolved = platform if isinstance(platform, Platform) else Platform.parse(platform)
        if resolved is None:
            return None
        try:
            core = parse_version(version).core
        except ValueError:
            return None
        return self.releases.get((resolved, core))

    def get_latest(self, platform: Platform | str) -> ReleaseManifest | None:
        """Highest version for a platform, if any."""
        resolved = platform if isinstance(platform, Platform) else Platform.parse(platform)
        if resolved is None:
            return None
        return self.latest.get(resolved)

    def known_releases(self) -> frozenset[tuple[str, str]]:
        """(version, platform) pairs present in the catalog."""
        return frozenset((m.version, m.platform.value) for m in self.releases.values())


@dataclass
class ArtifactHandle:
    """Open artifact ready for streaming. Close it (or use ``with``) when done."""

    manifest: ReleaseManifest
    file: IO[bytes]
    size_bytes: int

    def close(self) -> None:
        self.file.close()

    def __enter__(self) -> ArtifactHandle:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


@dataclass
class ScanResult:
    """Output of one directory scan (built off the event loop)."""

    catalog: Catalog
    hash_cache: HashCache
    problems: list[str] = field(default_factory=list)


def build_catalog(
    manifests: list[ReleaseManifest],
    *,
    excluded: int = 0,
    stamps: Mapping[str, tuple[int, int]] | None = None,
) -> Catalog:
    """Assemble a catalog, dropping (version, platform) duplicates entirely.

    Two manifests claiming the same version for the same platform are
    ambiguous; neither is served.
    """
    grouped: dict[CatalogKey, list[ReleaseManifest]] = {}
    for manifest in manifests:
        key = (manifest.platform, manifest.semver.core)
        grouped.setdefault(key, []).append(manifest)

    releases: dict[CatalogKey, ReleaseManifest] = {}
    for key, entries in grouped.items():
        if len(entries) > 1:
            excluded += len(entries)
            logger.error(
                "Duplicate release excluded",
                extra={
                    "version": key[1],
                    "platform": key[0].value,
                    "artifacts": sorted(e.artifact_path for e in entries),
                },
            )
            continue
        releases[key] = entries[0]

    latest: dict[Platform, ReleaseManifest] = {}
    for manifest in releases.values():
        current = latest.get(manifest.platform)
        if current is None or manifest.semver > current.semver:
            latest[manifest.platform] = manifest

    stamps = stamps or {}
    kept_stamps = {
        m.artifact_path: stamps[m.artifact_path]
        for m in releases.values()
        if m.artifact_path in stamps
    }
    return Catalog(
        releases=MappingProxyType(releases),
        latest=MappingProxyType(latest),
        loaded_at=datetime.now(UTC),
        excluded=excluded,
        stamps=MappingProxyType(kept_stamps),
    )


def scan_release_dir(
    release_root: Path,
    verifier: SignatureVerifier,
    hash_cache: Mapping[str, tuple[int, int, str]] | None = None,
) -> ScanResult:
    """Scan a release directory into a verified catalog.

    Runs blocking filesystem work; call it from a worker thread.

    Args:
        release_root: Release directory.
        verifier: Signature verifier for the trusted key.
        hash_cache: Previous scan's hashes, reused for unchanged files.

    Returns:
        ScanResult with the new catalog and refreshed hash cache.

    Raises:
        CatalogUnavailableError: If the directory cannot be listed.
    """
    previous = hash_cache or {}
    new_cache: HashCache = {}
    problems: list[str] = []

    try:
        if not release_root.is_dir():
            raise CatalogUnavailableError("Release directory is not available")
        files = sorted(p for p in release_root.rglob("*") if p.is_file() or p.is_symlink())
    except OSError as e:
        raise CatalogUnavailableError(f"Cannot list release directory: {e.strerror}") from e

    manifest_files = [p for p in files if is_manifest_file(p)]
    artifact_files = [p for p in files if is_candidate_artifact(p)]

    accepted: list[ReleaseManifest] = []
    stamps: dict[str, tuple[int, int]] = {}

    def reject(manifest_path: Path, reason: str) -> None:
        rel = _relative_name(release_root, manifest_path)
        problems.append(f"{rel}: {reason}")
        logger.warning("Manifest excluded from catalog", extra={"manifest": rel, "reason": reason})

    for manifest_path in manifest_files:
        artifact_path = artifact_for_manifest(manifest_path)
        if not artifact_path.exists() and not artifact_path.is_symlink():
            reject(manifest_path, "artifact missing")
            continue

        try:
            document = load_manifest_document(manifest_path)
        except ManifestError as e:
            reject(manifest_path, str(e))
            continue
        except OSError as e:
            reject(manifest_path, f"unreadable ({e.strerror})")
            continue

        if not verifier.verify(document):
            reject(manifest_path, "signature verification failed")
            continue

        try:
            relative = resolve_artifact(release_root, artifact_path)
            stat = artifact_path.stat()
            cached = previous.get(relative)
            if cached is not None and cached[0] == stat.st_size and cached[1] == stat.st_mtime_ns:
                sha256 = cached[2]
            else:
                sha256 = compute_file_sha256(artifact_path)
        except ManifestError as e:
            reject(manifest_path, str(e))
            continue
        except OSError as e:
            reject(manifest_path, f"artifact unreadable ({e.strerror})")
            continue

        new_cache[relative] = (stat.st_size, stat.st_mtime_ns, sha256)

        if sha256 != document.checksum:
            reject(manifest_path, "artifact checksum mismatch")
            continue

        accepted.append(
            ReleaseManifest.from_document(document, artifact_path=relative, size_bytes=stat.st_size)
        )
        stamps[relative] = (stat.st_size, stat.st_mtime_ns)

    for artifact_path in artifact_files:
        if not manifest_for_artifact(artifact_path).exists():
            rel = _relative_name(release_root, artifact_path)
            problems.append(f"{rel}: no manifest")
            logger.warning("Artifact without manifest excluded", extra={"artifact": rel})

    excluded = len(manifest_files) - len(accepted)
    catalog = build_catalog(accepted, excluded=excluded, stamps=stamps)
    return ScanResult(catalog=catalog, hash_cache=new_cache, problems=problems)


def _relative_name(root: Path, path: Path) -> str:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return path.name


def _open_checked(path: Path, expected: tuple[int, int] | None) -> tuple[IO[bytes], int]:
    """Open an artifact, refusing files that changed since they were hashed."""
    f = path.open("rb")
    try:
        stat = os.fstat(f.fileno())
        if expected is not None and (stat.st_size, stat.st_mtime_ns) != expected:
            raise ReleaseNotFoundError("Artifact changed since catalog load")
    except BaseException:
        f.close()
        raise
    return f, stat.st_size


ReloadCallback = Callable[[Catalog], None]


class ReleaseStore:
    """
    Read-mostly release catalog with atomic snapshot swaps.

    Usage:
        store = ReleaseStore(release_dir, verifier)
        await store.reload()
        manifest = store.list_latest(Platform.LINUX_X64)
        async with asyncio.TaskGroup() as tg:
            tg.create_task(store.run(interval_s=30.0, stop=stop_event))
    """

    def __init__(
        self,
        release_dir: Path,
        verifier: SignatureVerifier,
        *,
        reload_timeout_s: float = 20.0,
        open_timeout_s: float = 5.0,
        on_reload: ReloadCallback | None = None,
    ) -> None:
        """
        Initialize the store (no I/O until reload()).

        Args:
            release_dir: Directory scanned for manifests and artifacts.
            verifier: Signature verifier for the trusted key.
            reload_timeout_s: Upper bound on one full scan.
            open_timeout_s: Upper bound on opening one artifact.
            on_reload: Called with each newly activated catalog.
        """
        self._release_dir = Path(release_dir)
        self._verifier = verifier
        self._reload_timeout_s = reload_timeout_s
        self._open_timeout_s = open_timeout_s
        self._on_reload = on_reload

        self._catalog: Catalog | None = None
        self._hash_cache: HashCache = {}
        self._reload_lock = asyncio.Lock()
        # Completes only when the scan thread returns, not when reload() gives up on it
        self._scan: asyncio.Future[ScanResult] | None = None

        self.reload_count = 0
        self.reload_failures = 0
        self.last_reload_error: str | None = None
        self.last_reload_duration_s: float = 0.0

    @property
    def release_dir(self) -> Path:
        return self._release_dir

    @property
    def verifier(self) -> SignatureVerifier:
        return self._verifier

    @property
    def is_loaded(self) -> bool:
        """True once any scan has succeeded."""
        return self._catalog is not None

    @property
    def scan_in_progress(self) -> bool:
        """True while a directory scan thread is still running."""
        return self._scan is not None and not self._scan.done()

    @property
    def snapshot(self) -> Catalog:
        """Current catalog reference; hold it for the duration of one request.

        Raises:
            CatalogUnavailableError: If no catalog has loaded yet.
        """
        catalog = self._catalog
        if catalog is None:
            raise CatalogUnavailableError("No release catalog loaded")
        return catalog

    async def reload(self) -> bool:
        """Rescan the release directory and swap in the result.

        Returns:
            True if a new catalog was activated, False if the previous one was kept.
        """
        async with self._reload_lock:
            started = time.monotonic()
            if self.scan_in_progress:
                # A timed-out scan still holds its worker thread
                return self._reload_failed("previous scan still running", started)
            self._scan = asyncio.ensure_future(
                asyncio.to_thread(
                    scan_release_dir, self._release_dir, self._verifier, dict(self._hash_cache)
                )
            )
            try:
                result = await asyncio.wait_for(
                    asyncio.shield(self._scan), timeout=self._reload_timeout_s
                )
            except TimeoutError:
                return self._reload_failed("scan timed out", started)
            except CatalogUnavailableError as e:
                return self._reload_failed(str(e), started)

            self._catalog = result.catalog
            self._hash_cache = result.hash_cache
            self.reload_count += 1
            self.last_reload_error = None
            self.last_reload_duration_s = time.monotonic() - started

            logger.info(
                "Release catalog loaded",
                extra={
                    "releases": len(result.catalog),
                    "excluded": result.catalog.excluded,
                    "platforms": sorted(p.value for p in result.catalog.latest),
                    "duration_s": round(self.last_reload_duration_s, 3),
                },
            )
            if self._on_reload is not None:
                self._on_reload(result.catalog)
            return True

    def _reload_failed(self, reason: str, started: float) -> bool:
        self.reload_failures += 1
        self.last_reload_error = reason
        self.last_reload_duration_s = time.monotonic() - started
        logger.error(
            "Catalog reload failed; keeping previous catalog",
            extra={"reason": reason, "has_catalog": self._catalog is not None},
        )
        return False

    async def run(self, interval_s: float, stop: asyncio.Event) -> None:
        """Reload on a fixed interval until ``stop`` is set."""
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_s)
            except TimeoutError:
                await self.reload()

    def list_latest(self, platform: Platform | str) -> ReleaseManifest:
        """Latest release for a platform.

        Raises:
            ReleaseNotFoundError: If the platform has no releases.
            CatalogUnavailableError: If no catalog has loaded.
        """
        manifest = self.snapshot.get_latest(platform)
        if manifest is None:
            raise ReleaseNotFoundError("No release for platform")
        return manifest

    def get(self, version: str, platform: Platform | str) -> ReleaseManifest:
        """Specific release.

        Raises:
            ReleaseNotFoundError: If absent (including failed verification).
            CatalogUnavailableError: If no catalog has loaded.
        """
        manifest = self.snapshot.get(version, platform)
        if manifest is None:
            raise ReleaseNotFoundError("Release not found")
        return manifest

    async def open_artifact(self, version: str, platform: Platform | str) -> ArtifactHandle:
        """Open the artifact of a catalog release.

        Raises:
            ReleaseNotFoundError: If absent or the file changed since it was verified.
            CatalogUnavailableError: If no catalog has loaded, or opening timed out.
        """
        catalog = self.snapshot
        manifest = catalog.get(version, platform)
        if manifest is None:
            raise ReleaseNotFoundError("Release not found")
        return await self.open_manifest_artifact(manifest, catalog)

    async def open_manifest_artifact(
        self, manifest: ReleaseManifest, catalog: Catalog | None = None
    ) -> ArtifactHandle:
        """Open the artifact for a manifest taken from ``catalog`` (default: current)."""
        stamps = (catalog or self.snapshot).stamps
        path = self._release_dir / manifest.artifact_path
        try:
            f, size = await asyncio.wait_for(
                asyncio.to_thread(_open_checked, path, stamps.get(manifest.artifact_path)),
                timeout=self._open_timeout_s,
            )
        except TimeoutError:
            logger.error("Artifact open timed out", extra={"artifact": manifest.artifact_name})
            raise CatalogUnavailableError("Artifact storage timed out") from None
        except ReleaseNotFoundError:
            logger.warning(
                "Artifact changed since verification; refusing to serve",
                extra={"artifact": manifest.artifact_name},
            )
            raise
        except OSError as e:
            logger.warning(
                "Artifact unavailable",
                extra={"artifact": manifest.artifact_name, "reason": e.strerror},
            )
            raise ReleaseNotFoundError("Artifact unavailable") from None
        return ArtifactHandle(manifest=manifest, file=f, size_bytes=size)
