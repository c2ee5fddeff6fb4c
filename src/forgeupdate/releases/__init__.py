"""Release catalog and artifact management.

- Manifest files paired with artifacts (``*.manifest.json``)
- Load-time signature and checksum verification
- Immutable catalog snapshots with periodic reload
"""

from forgeupdate.releases.manifest import (
    CHECKSUMS_FILENAME,
    MANIFEST_SUFFIX,
    ManifestError,
    ManifestValidationError,
    compute_file_sha256,
    generate_checksums_txt,
    load_manifest_document,
    parse_checksums_txt,
    save_manifest_document,
)
from forgeupdate.releases.store import (
    ArtifactHandle,
    Catalog,
    CatalogUnavailableError,
    ReleaseNotFoundError,
    ReleaseStore,
    ReleaseStoreError,
    build_catalog,
    scan_release_dir,
)

__all__ = [
    "CHECKSUMS_FILENAME",
    "MANIFEST_SUFFIX",
    "ArtifactHandle",
    "Catalog",
    "CatalogUnavailableError",
    "ManifestError",
    "ManifestValidationError",
    "ReleaseNotFoundError",
    "ReleaseStore",
    "ReleaseStoreError",
    "build_catalog",
    "compute_file_sha256",
    "generate_checksums_txt",
    "load_manifest_document",
    "parse_checksums_txt",
    "save_manifest_document",
    "scan_release_dir",
]
