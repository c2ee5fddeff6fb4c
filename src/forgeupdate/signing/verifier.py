"""
Ed25519 signature verification for release manifests.

The release pipeline signs ``signing_payload(version, platform, checksum)``
offline; only the public key is ever present on this server. Verification is
pure: no disk or network access after the key has been loaded.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import TYPE_CHECKING

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import VerifyKey

from forgeupdate.config import ConfigurationError

if TYPE_CHECKING:
    from forgeupdate.contracts.release import ManifestDocument, ReleaseManifest

logger = logging.getLogger(__name__)

ED25519_PUBLIC_KEY_BYTES = 32
ED25519_SIGNATURE_BYTES = 64


def _b64decode(value: str) -> bytes:
    """Strict base64 decoding (raises binascii.Error on junk)."""
    return base64.b64decode(value.strip(), validate=True)


def load_public_key(material: str) -> VerifyKey:
    """Load an Ed25519 public key from base64 text.

    Args:
        material: Base64 encoding of the 32 raw key bytes.

    Returns:
        VerifyKey ready for verification.

    Raises:
        ConfigurationError: If the material is empty, not base64, or the wrong length.
    """
    if not material or not material.strip():
        raise ConfigurationError("Public key material is empty")
    try:
        raw = _b64decode(material)
    except (binascii.Error, ValueError):
        raise ConfigurationError("Public key is not valid base64") from None
    if len(raw) != ED25519_PUBLIC_KEY_BYTES:
        msg = f"Public key must be {ED25519_PUBLIC_KEY_BYTES} bytes, got {len(raw)}"
        raise ConfigurationError(msg)
    try:
        return VerifyKey(raw)
    except (CryptoError, TypeError, ValueError):
        raise ConfigurationError("Public key is not a valid Ed25519 key") from None


class SignatureVerifier:
    """
    Verifies manifest signatures against a single trusted public key.

    Usage:
        verifier = SignatureVerifier.from_base64(config.public_key)
        if verifier.verify(manifest):
            ...
    """

    def __init__(self, verify_key: VerifyKey) -> None:
        self._key = verify_key

    @classmethod
    def from_base64(cls, material: str) -> SignatureVerifier:
        """Create a verifier from base64 key material.

        Raises:
            ConfigurationError: If the key is missing or invalid.
        """
        return cls(load_public_key(material))

    @property
    def key_id(self) -> str:
        """Short fingerprint of the trusted key for logs."""
        return bytes(self._key).hex()[:16]

    def verify_payload(self, payload: bytes, signature_b64: str) -> bool:
        """Check a base64 signature over raw payload bytes."""
        try:
            signature = _b64decode(signature_b64)
        except (binascii.Error, ValueError):
            return False
        if len(signature) != ED25519_SIGNATURE_BYTES:
            return False
        try:
            self._key.verify(payload, signature)
        except BadSignatureError:
            return False
        return True

    def verify(self, manifest: ManifestDocument | ReleaseManifest) -> bool:
        """Check a manifest's signature over (version, platform, checksum).

        Args:
            manifest: Manifest document or catalog entry.

        Returns:
            True only if the signature is valid for the exact field tuple.
        """
        valid = self.verify_payload(manifest.signing_payload(), manifest.signature)
        if not valid:
            logger.debug(
                "Signature rejected",
                extra={"version": manifest.version, "platform": manifest.platform.value},
            )
        return valid
