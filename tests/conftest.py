"""Shared fixtures: a release signing key and a release directory builder."""

from __future__ import annotations

import base64
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest
from nacl.encoding import Base64Encoder
from nacl.signing import SigningKey

from forgeupdate.contracts.release import ManifestDocument, Platform, signing_payload
from forgeupdate.releases.manifest import compute_file_sha256, save_manifest_document
from forgeupdate.signing.verifier import SignatureVerifier

PUBLISHED_AT = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

Publish = Callable[..., Path]


def sign(key: SigningKey, version: str, platform: Platform | str, checksum: str) -> str:
    """Base64 detached signature over the manifest payload."""
    payload = signing_payload(version, platform, checksum)
    return base64.b64encode(key.sign(payload).signature).decode()


@pytest.fixture()
def signing_key() -> SigningKey:
    """Fresh release signing key."""
    return SigningKey.generate()


@pytest.fixture()
def public_key_b64(signing_key: SigningKey) -> str:
    return signing_key.verify_key.encode(encoder=Base64Encoder).decode()


@pytest.fixture()
def verifier(public_key_b64: str) -> SignatureVerifier:
    return SignatureVerifier.from_base64(public_key_b64)


@pytest.fixture()
def release_dir(tmp_path: Path) -> Path:
    d = tmp_path / "releases"
    d.mkdir()
    return d


@pytest.fixture()
def publish(release_dir: Path, signing_key: SigningKey) -> Publish:
    """Write an artifact plus signed manifest into the release directory.

    Keyword overrides let tests produce broken releases:
        checksum: manifest checksum (default: real hash of content)
        key: signing key (default: the trusted key)
        name: artifact file name
        subdir: directory below the release root
    """

    def _publish(
        version: str,
        platform: str = "linux-x64",
        content: bytes | None = None,
        *,
        name: str | None = None,
        subdir: str | None = None,
        checksum: str | None = None,
        key: SigningKey | None = None,
        published_at: datetime = PUBLISHED_AT,
        cdn_url: str | None = None,
        mirrored: bool = False,
    ) -> Path:
        target_dir = release_dir / subdir if subdir else release_dir
        target_dir.mkdir(parents=True, exist_ok=True)
        artifact = target_dir / (name or f"BuildingForge-{version}-{platform}.bin")
        artifact.write_bytes(content if content is not None else f"forge {version} {platform}".encode())

        digest = checksum or compute_file_sha256(artifact)
        document = ManifestDocument(
            version=version,
            platform=Platform(platform),
            checksum=digest,
            signature=sign(key or signing_key, version, platform, digest),
            published_at=published_at,
            cdn_url=cdn_url,
            mirrored=mirrored,
        )
        save_manifest_document(document, artifact)
        return artifact

    return _publish
