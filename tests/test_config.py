"""
Configuration tests.

Covers environment parsing (ServerConfig.from_env) and __post_init__
validation of each config section.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from forgeupdate.config import (
    CdnConfig,
    ConfigurationError,
    RateLimitConfig,
    ServerConfig,
    StatsConfig,
)

KEY = "MCowBQYDK2VwAyEA"  # any non-empty value; key decoding happens elsewhere


def base_env(tmp_path: Path, **extra: str) -> dict[str, str]:
    env = {"RELEASE_DIR": str(tmp_path), "PUBLIC_KEY": KEY}
    env.update(extra)
    return env


class TestFromEnv:
    def test_defaults(self, tmp_path: Path) -> None:
        config = ServerConfig.from_env(base_env(tmp_path))
        assert config.release_dir == tmp_path
        assert config.port == 3000
        assert config.host == "0.0.0.0"
        assert config.cdn.enabled is False
        assert config.stats.enabled is True
        assert config.rate_limit.download_limit == 20
        assert config.trust_proxy is False
        assert config.log_format == "json"

    def test_release_dir_required(self) -> None:
        with pytest.raises(ConfigurationError, match="RELEASE_DIR"):
            ServerConfig.from_env({"PUBLIC_KEY": KEY})

    def test_public_key_required(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="PUBLIC_KEY"):
            ServerConfig.from_env({"RELEASE_DIR": str(tmp_path)})

    def test_public_key_file(self, tmp_path: Path) -> None:
        key_file = tmp_path / "release.pub"
        key_file.write_text(f"{KEY}\n", encoding="utf-8")
        config = ServerConfig.from_env(
            {"RELEASE_DIR": str(tmp_path), "PUBLIC_KEY_FILE": str(key_file)}
        )
        assert config.public_key == KEY

    def test_unreadable_public_key_file(self, tmp_path: Path) -> None:
        env = {"RELEASE_DIR": str(tmp_path), "PUBLIC_KEY_FILE": str(tmp_path / "missing.pub")}
        with pytest.raises(ConfigurationError, match="PUBLIC_KEY_FILE"):
            ServerConfig.from_env(env)

    def test_inline_key_wins_over_file(self, tmp_path: Path) -> None:
        env = base_env(tmp_path, PUBLIC_KEY_FILE=str(tmp_path / "missing.pub"))
        assert ServerConfig.from_env(env).public_key == KEY

    def test_feature_flags(self, tmp_path: Path) -> None:
        env = base_env(
            tmp_path,
            ENABLE_CDN="true",
            CDN_URL_TEMPLATE="https://cdn.example.com/{version}/{artifact}",
            ENABLE_STATS="0",
            TRUST_PROXY="yes",
        )
        config = ServerConfig.from_env(env)
        assert config.cdn.enabled is True
        assert config.cdn.url_template == "https://cdn.example.com/{version}/{artifact}"
        assert config.stats.enabled is False
        assert config.trust_proxy is True

    def test_cdn_url_fallback(self, tmp_path: Path) -> None:
        env = base_env(tmp_path, CDN_URL="https://cdn.example.com/{artifact}")
        assert ServerConfig.from_env(env).cdn.url_template == "https://cdn.example.com/{artifact}"

    def test_rate_limits(self, tmp_path: Path) -> None:
        env = base_env(
            tmp_path,
            RATE_LIMIT_WINDOW_S="30",
            RATE_LIMIT_METADATA="10",
            RATE_LIMIT_DOWNLOAD="2",
            RATE_LIMIT_IDLE_TTL_S="90",
        )
        limits = ServerConfig.from_env(env).rate_limit
        assert limits.window_s == 30.0
        assert limits.metadata_limit == 10
        assert limits.download_limit == 2
        assert limits.idle_ttl_s == 90.0

    def test_cors_origins_list(self, tmp_path: Path) -> None:
        env = base_env(tmp_path, CORS_ALLOWED_ORIGINS=" app://forge , https://forge.example.com,")
        config = ServerConfig.from_env(env)
        assert config.cors_allowed_origins == ("app://forge", "https://forge.example.com")

    @pytest.mark.parametrize(
        ("name", "value", "message"),
        [
            ("PORT", "http", "PORT must be an integer"),
            ("PORT", "0", "port must be in"),
            ("ENABLE_CDN", "maybe", "ENABLE_CDN must be a boolean"),
            ("RATE_LIMIT_DOWNLOAD", "0", "download_limit"),
            ("CDN_URL_TEMPLATE", "http://cdn.example.com/{artifact}", "https"),
            ("CDN_URL_TEMPLATE", "https://cdn.example.com/{secret}", "Unknown CDN template field"),
            ("LOG_FORMAT", "xml", "log_format"),
            ("PUBLIC_BASE_URL", "updates.example.com", "public_base_url"),
        ],
    )
    def test_invalid_values_are_configuration_errors(
        self, tmp_path: Path, name: str, value: str, message: str
    ) -> None:
        with pytest.raises(ConfigurationError, match=message):
            ServerConfig.from_env(base_env(tmp_path, **{name: value}))


class TestReleaseDirCheck:
    def test_missing_dir(self, tmp_path: Path) -> None:
        config = ServerConfig(release_dir=tmp_path / "nope", public_key=KEY)
        with pytest.raises(ConfigurationError, match="does not exist"):
            config.check_release_dir()

    def test_file_instead_of_dir(self, tmp_path: Path) -> None:
        target = tmp_path / "file"
        target.write_text("x", encoding="utf-8")
        config = ServerConfig(release_dir=target, public_key=KEY)
        with pytest.raises(ConfigurationError, match="not a directory"):
            config.check_release_dir()

    def test_existing_dir(self, tmp_path: Path) -> None:
        ServerConfig(release_dir=tmp_path, public_key=KEY).check_release_dir()


class TestRedacted:
    def test_no_secrets(self, tmp_path: Path) -> None:
        env = base_env(tmp_path, CLIENT_ID_SALT="pepper")
        redacted = ServerConfig.from_env(env).redacted()
        values = " ".join(str(v) for v in redacted.values())
        assert KEY not in values
        assert "pepper" not in values
        assert redacted["release_dir"] == str(tmp_path)


class TestSectionValidation:
    def test_rate_limit_idle_ttl_below_window(self) -> None:
        with pytest.raises(ValueError, match="idle_ttl_s"):
            RateLimitConfig(window_s=60, idle_ttl_s=30)

    def test_rate_limit_window_positive(self) -> None:
        with pytest.raises(ValueError, match="window_s"):
            RateLimitConfig(window_s=0)

    def test_cdn_negative_delay(self) -> None:
        with pytest.raises(ValueError, match="mirror_delay_s"):
            CdnConfig(mirror_delay_s=-1)

    def test_stats_retention_positive(self) -> None:
        with pytest.raises(ValueError, match="retention_s"):
            StatsConfig(retention_s=0)

    def test_public_base_url_trailing_slash_stripped(self, tmp_path: Path) -> None:
        config = ServerConfig(
            release_dir=tmp_path, public_key=KEY, public_base_url="https://updates.example.com/"
        )
        assert config.public_base_url == "https://updates.example.com"
