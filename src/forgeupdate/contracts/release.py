"""
Release contracts for the update server.

ManifestDocument is the on-disk ``*.manifest.json`` written by the release
pipeline. ReleaseManifest is the catalog entry built from a document once its
signature and artifact checksum have been verified.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum

import orjson
from pydantic import BaseModel, ConfigDict, Field, field_validator

from forgeupdate.contracts.version import SemVer, parse_version

# Domain prefix of the signing payload; bump the suffix if the payload layout changes
SIGNING_PAYLOAD_PREFIX = "forgeupdate-manifest-v1"

_SHA256_HEX = re.compile(r"[0-9a-f]{64}")


class Platform(str, Enum):
    """Supported OS/architecture targets."""

    WIN_X64 = "win-x64"
    WIN_ARM64 = "win-arm64"
    MAC_X64 = "mac-x64"
    MAC_ARM64 = "mac-arm64"
    LINUX_X64 = "linux-x64"
    LINUX_ARM64 = "linux-arm64"

    @classmethod
    def parse(cls, value: str) -> Platform | None:
        """Return the platform for a tag, or None for unknown tags."""
        try:
            return cls(value)
        except ValueError:
            return None


def signing_payload(version: str, platform: Platform | str, checksum: str) -> bytes:
    """Canonical bytes covered by a manifest signature.

    Fields are newline-separated; none of them may contain a newline, so the
    encoding is unambiguous.
    """
    platform_tag = platform.value if isinstance(platform, Platform) else platform
    return f"{SIGNING_PAYLOAD_PREFIX}\n{version}\n{platform_tag}\n{checksum}".encode()


class ManifestDocument(BaseModel):
    """
    Manifest file as produced by the release pipeline.

    Attributes:
        version: Semantic version string.
        platform: Target platform tag.
        checksum: Lowercase hex SHA-256 of the paired artifact.
        signature: Base64 Ed25519 signature over signing_payload().
        published_at: Publish timestamp (timezone-aware).
        cdn_url: Explicit CDN location overriding the URL template.
        mirrored: True once the pipeline has confirmed the CDN copy.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str = Field(..., min_length=5, description="Semantic version")
    platform: Platform = Field(..., description="Target platform")
    checksum: str = Field(..., description="SHA-256 of artifact (hex)")
    signature: str = Field(..., min_length=1, description="Base64 detached signature")
    published_at: datetime = Field(..., description="Publish timestamp")
    cdn_url: str | None = Field(default=None, description="Explicit CDN URL override")
    mirrored: bool = Field(default=False, description="Artifact confirmed on CDN")

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Reject malformed semantic versions."""
        parse_version(v)
        return v

    @field_validator("checksum")
    @classmethod
    def validate_checksum(cls, v: str) -> str:
        """Normalize and validate the SHA-256 hex digest."""
        v = v.strip().lower()
        if not _SHA256_HEX.fullmatch(v):
            raise ValueError("checksum must be 64 hex characters (SHA-256)")
        return v

    @field_validator("published_at")
    @classmethod
    def validate_published_at(cls, v: datetime) -> datetime:
        """Require an explicit timezone."""
        if v.tzinfo is None:
            raise ValueError("published_at must include a timezone offset")
        return v

    @field_validator("cdn_url")
    @classmethod
    def validate_cdn_url(cls, v: str | None) -> str | None:
        """Only absolute https URLs may be used as redirect targets."""
        if v is not None and not v.startswith("https://"):
            raise ValueError("cdn_url must be an absolute https URL")
        return v

    def signing_payload(self) -> bytes:
        """Bytes covered by this document's signature."""
        return signing_payload(self.version, self.platform, self.checksum)

    def to_json(self) -> bytes:
        """Serialize to JSON bytes using orjson."""
        return orjson.dumps(self.model_dump(mode="json", exclude_none=True), option=orjson.OPT_INDENT_2)

    @classmethod
    def from_json(cls, data: bytes | str) -> ManifestDocument:
        """Deserialize from JSON."""
        if isinstance(data, str):
            data = data.encode()
        return cls.model_validate(orjson.loads(data))


class ReleaseManifest(BaseModel):
    """
    Verified catalog entry for one published release.

    Only the Release Store creates these, after the signature verified and
    the artifact on disk hashed to ``checksum``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str = Field(..., min_length=5, description="Semantic version")
    platform: Platform = Field(..., description="Target platform")
    artifact_path: str = Field(..., min_length=1, description="Artifact path relative to release dir")
    checksum: str = Field(..., description="SHA-256 of artifact (hex)")
    signature: str = Field(..., min_length=1, description="Base64 detached signature")
    published_at: datetime = Field(..., description="Publish timestamp")
    size_bytes: int = Field(..., ge=0, description="Artifact size in bytes")
    cdn_url: str | None = Field(default=None, description="Explicit CDN URL override")
    mirrored: bool = Field(default=False, description="Artifact confirmed on CDN")

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Reject malformed semantic versions."""
        parse_version(v)
        return v

    @property
    def semver(self) -> SemVer:
        """Parsed version."""
        return parse_version(self.version)

    @property
    def artifact_name(self) -> str:
        """Artifact file name without directories."""
        return self.artifact_path.rsplit("/", 1)[-1]

    @classmethod
    def from_document(
        cls, document: ManifestDocument, *, artifact_path: str, size_bytes: int
    ) -> ReleaseManifest:
        """Build a catalog entry from a verified manifest document."""
        return cls(
            version=document.version,
            platform=document.platform,
            artifact_path=artifact_path,
            checksum=document.checksum,
            signature=document.signature,
            published_at=document.published_at,
            size_bytes=size_bytes,
            cdn_url=document.cdn_url,
            mirrored=document.mirrored,
        )

    def signing_payload(self) -> bytes:
        """Bytes covered by this manifest's signature."""
        return signing_payload(self.version, self.platform, self.checksum)

    def public_dict(self, download_url: str) -> dict[str, object]:
        """Client-facing representation (no server paths)."""
        return {
            "version": self.version,
            "platform": self.platform.value,
            "checksum": self.checksum,
            "signature": self.signature,
            "published_at": self.published_at.isoformat(),
            "size_bytes": self.size_bytes,
            "download_url": download_url,
        }
