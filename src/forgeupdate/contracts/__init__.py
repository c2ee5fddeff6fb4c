"""Data contracts shared between update server components."""

from forgeupdate.contracts.events import DownloadEvent, EventType
from forgeupdate.contracts.release import (
    SIGNING_PAYLOAD_PREFIX,
    ManifestDocument,
    Platform,
    ReleaseManifest,
    signing_payload,
)
from forgeupdate.contracts.version import SemVer, is_valid_version, parse_version

__all__ = [
    "SIGNING_PAYLOAD_PREFIX",
    "DownloadEvent",
    "EventType",
    "ManifestDocument",
    "Platform",
    "ReleaseManifest",
    "SemVer",
    "is_valid_version",
    "parse_version",
    "signing_payload",
]
