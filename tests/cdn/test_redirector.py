"""Tests for the CDN redirect policy."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from forgeupdate.cdn.redirector import (
    CdnRedirector,
    RedirectTo,
    StreamDirect,
    validate_template,
)
from forgeupdate.config import CdnConfig
from forgeupdate.contracts.release import Platform, ReleaseManifest

PUBLISHED = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
TEMPLATE = "https://cdn.example.com/{version}/{platform}/{artifact}"


def manifest(**overrides: object) -> ReleaseManifest:
    fields: dict[str, object] = {
        "version": "1.3.0",
        "platform": Platform.LINUX_X64,
        "artifact_path": "stable/Building Forge 1.3.0.AppImage",
        "checksum": "ab" * 32,
        "signature": "c2ln",
        "published_at": PUBLISHED,
        "size_bytes": 10,
    }
    fields.update(overrides)
    return ReleaseManifest(**fields)  # type: ignore[arg-type]


def redirector(clock_offset_s: float = 0.0, **config: object) -> CdnRedirector:
    now = PUBLISHED.timestamp() + clock_offset_s
    return CdnRedirector(CdnConfig(**config), time_fn=lambda: now)  # type: ignore[arg-type]


class TestValidateTemplate:
    def test_known_fields(self) -> None:
        validate_template(TEMPLATE + "?sha={checksum}")

    @pytest.mark.parametrize("template", ["https://x/{file}", "https://x/{}", "https://x/{version"])
    def test_rejected(self, template: str) -> None:
        with pytest.raises(ValueError):
            validate_template(template)

    def test_config_rejects_http_template(self) -> None:
        with pytest.raises(ValueError):
            CdnConfig(enabled=True, url_template="http://cdn.example.com/{artifact}")


class TestResolve:
    def test_disabled_streams(self) -> None:
        result = redirector(enabled=False, url_template=TEMPLATE).resolve(manifest(mirrored=True))
        assert result == StreamDirect(reason="cdn-disabled")

    def test_mirrored_redirects(self) -> None:
        result = redirector(enabled=True, url_template=TEMPLATE).resolve(manifest(mirrored=True))
        assert result == RedirectTo(
            url="https://cdn.example.com/1.3.0/linux-x64/Building%20Forge%201.3.0.AppImage"
        )

    def test_not_mirrored_streams(self) -> None:
        """Without confirmation the server keeps serving the bytes itself."""
        result = redirector(enabled=True, url_template=TEMPLATE).resolve(manifest())
        assert result == StreamDirect(reason="not-mirrored")

    def test_mirror_delay(self) -> None:
        fresh = redirector(59.0, enabled=True, url_template=TEMPLATE, mirror_delay_s=60.0)
        aged = redirector(61.0, enabled=True, url_template=TEMPLATE, mirror_delay_s=60.0)
        assert isinstance(fresh.resolve(manifest()), StreamDirect)
        assert isinstance(aged.resolve(manifest()), RedirectTo)

    def test_explicit_cdn_url_wins(self) -> None:
        m = manifest(cdn_url="https://mirror.example.net/forge.AppImage")
        result = redirector(enabled=True).resolve(m)
        assert result == RedirectTo(url="https://mirror.example.net/forge.AppImage")

    def test_no_template_streams(self) -> None:
        result = redirector(enabled=True).resolve(manifest(mirrored=True))
        assert result == StreamDirect(reason="no-template")

    def test_checksum_field(self) -> None:
        r = redirector(enabled=True, url_template="https://cdn.example.com/by-hash/{checksum}")
        assert r.template_url(manifest()) == f"https://cdn.example.com/by-hash/{'ab' * 32}"
