"""Tests for Ed25519 manifest signature verification."""

from __future__ import annotations

import base64
from datetime import UTC, datetime

import pytest
from nacl.encoding import Base64Encoder
from nacl.signing import SigningKey

from forgeupdate.config import ConfigurationError
from forgeupdate.contracts.release import ManifestDocument, Platform, signing_payload
from forgeupdate.signing.verifier import SignatureVerifier, load_public_key

CHECKSUM = "0f" * 32


def signed_document(key: SigningKey, **overrides: object) -> ManifestDocument:
    """Sign (1.3.0, linux-x64, CHECKSUM), then apply overrides without re-signing."""
    payload = signing_payload("1.3.0", Platform.LINUX_X64, CHECKSUM)
    fields: dict[str, object] = {
        "version": "1.3.0",
        "platform": Platform.LINUX_X64,
        "checksum": CHECKSUM,
        "signature": base64.b64encode(key.sign(payload).signature).decode(),
        "published_at": datetime(2024, 5, 1, tzinfo=UTC),
    }
    fields.update(overrides)
    return ManifestDocument(**fields)  # type: ignore[arg-type]


class TestLoadPublicKey:
    def test_valid(self, public_key_b64: str) -> None:
        assert bytes(load_public_key(public_key_b64)) == base64.b64decode(public_key_b64)

    @pytest.mark.parametrize(
        "material",
        ["", "   ", "not base64!!", base64.b64encode(b"short").decode()],
    )
    def test_invalid(self, material: str) -> None:
        with pytest.raises(ConfigurationError):
            load_public_key(material)


class TestSignatureVerifier:
    def test_valid_signature(self, signing_key: SigningKey, verifier: SignatureVerifier) -> None:
        assert verifier.verify(signed_document(signing_key))

    @pytest.mark.parametrize(
        "override",
        [
            {"version": "1.3.1"},
            {"platform": Platform.LINUX_ARM64},
            {"checksum": "1f" * 32},
        ],
    )
    def test_any_field_mutation_invalidates(
        self, signing_key: SigningKey, verifier: SignatureVerifier, override: dict[str, object]
    ) -> None:
        """Changing version, platform or checksum breaks the signature."""
        assert not verifier.verify(signed_document(signing_key, **override))

    def test_other_key_rejected(self, verifier: SignatureVerifier) -> None:
        assert not verifier.verify(signed_document(SigningKey.generate()))

    @pytest.mark.parametrize(
        "signature",
        ["!!!", base64.b64encode(b"x" * 63).decode(), base64.b64encode(b"x" * 64).decode()],
    )
    def test_malformed_signature(
        self, signing_key: SigningKey, verifier: SignatureVerifier, signature: str
    ) -> None:
        assert not verifier.verify(signed_document(signing_key, signature=signature))

    def test_unsigned_metadata_not_covered(
        self, signing_key: SigningKey, verifier: SignatureVerifier
    ) -> None:
        """published_at and the CDN flags are outside the signed payload."""
        doc = signed_document(signing_key, mirrored=True)
        assert verifier.verify(doc)

    def test_key_id(self, signing_key: SigningKey) -> None:
        verifier = SignatureVerifier(signing_key.verify_key)
        assert verifier.key_id == bytes(signing_key.verify_key).hex()[:16]
        encoded = signing_key.verify_key.encode(encoder=Base64Encoder).decode()
        assert SignatureVerifier.from_base64(encoded).key_id == verifier.key_id
