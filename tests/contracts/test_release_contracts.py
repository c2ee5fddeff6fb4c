"""Tests for manifest and event contracts."""

from __future__ import annotations

from datetime import UTC, datetime

import orjson
import pytest
from pydantic import ValidationError

from forgeupdate.contracts.events import DownloadEvent, EventType
from forgeupdate.contracts.release import (
    SIGNING_PAYLOAD_PREFIX,
    ManifestDocument,
    Platform,
    ReleaseManifest,
    signing_payload,
)

CHECKSUM = "ab" * 32


def make_document(**overrides: object) -> ManifestDocument:
    fields: dict[str, object] = {
        "version": "1.3.0",
        "platform": Platform.LINUX_X64,
        "checksum": CHECKSUM,
        "signature": "c2ln",
        "published_at": datetime(2024, 5, 1, tzinfo=UTC),
    }
    fields.update(overrides)
    return ManifestDocument(**fields)  # type: ignore[arg-type]


class TestPlatform:
    def test_parse_known(self) -> None:
        assert Platform.parse("mac-arm64") is Platform.MAC_ARM64

    @pytest.mark.parametrize("tag", ["", "macos", "MAC-ARM64", "linux-x64 ", "../etc"])
    def test_parse_unknown(self, tag: str) -> None:
        assert Platform.parse(tag) is None


class TestSigningPayload:
    def test_layout(self) -> None:
        payload = signing_payload("1.3.0", Platform.WIN_X64, CHECKSUM)
        assert payload == f"{SIGNING_PAYLOAD_PREFIX}\n1.3.0\nwin-x64\n{CHECKSUM}".encode()

    def test_string_platform_equivalent(self) -> None:
        assert signing_payload("1.3.0", "win-x64", CHECKSUM) == signing_payload(
            "1.3.0", Platform.WIN_X64, CHECKSUM
        )

    def test_each_field_changes_payload(self) -> None:
        base = signing_payload("1.3.0", Platform.WIN_X64, CHECKSUM)
        assert signing_payload("1.3.1", Platform.WIN_X64, CHECKSUM) != base
        assert signing_payload("1.3.0", Platform.WIN_ARM64, CHECKSUM) != base
        assert signing_payload("1.3.0", Platform.WIN_X64, "cd" * 32) != base


class TestManifestDocument:
    """Schema validation of manifest files."""

    def test_checksum_normalized(self) -> None:
        doc = make_document(checksum=CHECKSUM.upper())
        assert doc.checksum == CHECKSUM

    @pytest.mark.parametrize("checksum", ["", "ab" * 31, "zz" * 32, "ab" * 33])
    def test_bad_checksum(self, checksum: str) -> None:
        with pytest.raises(ValidationError):
            make_document(checksum=checksum)

    def test_bad_version(self) -> None:
        with pytest.raises(ValidationError):
            make_document(version="1.3")

    def test_version_with_newline_rejected(self) -> None:
        """Signed fields are newline-separated, so a version may not carry one."""
        with pytest.raises(ValidationError):
            make_document(version="1.3.0\n")

    def test_naive_timestamp_rejected(self) -> None:
        with pytest.raises(ValidationError):
            make_document(published_at=datetime(2024, 5, 1))

    def test_cdn_url_must_be_https(self) -> None:
        with pytest.raises(ValidationError):
            make_document(cdn_url="http://cdn.example.com/a.bin")
        assert make_document(cdn_url="https://cdn.example.com/a.bin").cdn_url is not None

    def test_unknown_field_rejected(self) -> None:
        data = orjson.loads(make_document().to_json())
        data["extra"] = 1
        with pytest.raises(ValidationError):
            ManifestDocument.model_validate(data)

    def test_json_roundtrip(self) -> None:
        doc = make_document(mirrored=True)
        assert ManifestDocument.from_json(doc.to_json()) == doc

    def test_frozen(self) -> None:
        doc = make_document()
        with pytest.raises(ValidationError):
            doc.version = "9.9.9"  # type: ignore[misc]


class TestReleaseManifest:
    def test_public_dict_hides_server_paths(self) -> None:
        manifest = ReleaseManifest.from_document(
            make_document(),
            artifact_path="stable/BuildingForge-1.3.0.AppImage",
            size_bytes=42,
        )
        public = manifest.public_dict(download_url="/releases/1.3.0/linux-x64/download")
        assert public["version"] == "1.3.0"
        assert public["platform"] == "linux-x64"
        assert public["size_bytes"] == 42
        assert "artifact_path" not in public
        assert "stable" not in orjson.dumps(public).decode()

    def test_artifact_name(self) -> None:
        manifest = ReleaseManifest.from_document(
            make_document(), artifact_path="stable/x.bin", size_bytes=1
        )
        assert manifest.artifact_name == "x.bin"
        assert manifest.signing_payload() == make_document().signing_payload()


class TestDownloadEvent:
    def test_defaults_timestamp(self) -> None:
        event = DownloadEvent(
            version="1.3.0", platform="linux-x64", client_id="abc", event_type=EventType.CHECK
        )
        assert event.timestamp.tzinfo is not None

    def test_empty_client_id_rejected(self) -> None:
        with pytest.raises(ValidationError):
            DownloadEvent(
                version="1.3.0", platform="linux-x64", client_id="", event_type=EventType.CHECK
            )

    def test_to_json(self) -> None:
        event = DownloadEvent(
            version="1.3.0",
            platform="linux-x64",
            client_id="abc",
            event_type=EventType.DOWNLOAD_PARTIAL,
        )
        assert orjson.loads(event.to_json())["event_type"] == "download-partial"
