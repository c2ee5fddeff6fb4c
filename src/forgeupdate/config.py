"""
Server configuration.

All settings come from the process environment (see ``ServerConfig.from_env``).
Invalid or missing required settings raise ConfigurationError, and the process
refuses to start rather than serving with verification disabled.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from forgeupdate.cdn.redirector import validate_template

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


class ConfigurationError(Exception):
    """Raised when the server cannot start with the given configuration."""


@dataclass
class RateLimitConfig:
    """Per-client request budgets per route class."""

    window_s: float = 60.0
    metadata_limit: int = 120
    download_limit: int = 20

    # Idle buckets older than this are garbage-collected
    idle_ttl_s: float = 600.0

    # Hard cap on tracked buckets; least recently seen are evicted past it
    max_buckets: int = 100_000

    def __post_init__(self) -> None:
        if self.window_s <= 0:
            raise ValueError(f"window_s must be > 0, got {self.window_s}")
        if self.metadata_limit < 1:
            raise ValueError(f"metadata_limit must be >= 1, got {self.metadata_limit}")
        if self.download_limit < 1:
            raise ValueError(f"download_limit must be >= 1, got {self.download_limit}")
        if self.idle_ttl_s < self.window_s:
            raise ValueError(
                f"idle_ttl_s must be >= window_s ({self.window_s}), got {self.idle_ttl_s}"
            )
        if self.max_buckets < 1:
            raise ValueError(f"max_buckets must be >= 1, got {self.max_buckets}")


@dataclass
class CdnConfig:
    """CDN redirect configuration."""

    enabled: bool = False
    # e.g. https://cdn.example.com/releases/{version}/{platform}/{artifact}
    url_template: str = ""
    # Artifacts older than this are assumed mirrored; None means only explicit flags count
    mirror_delay_s: float | None = None

    def __post_init__(self) -> None:
        if self.url_template:
            if not self.url_template.startswith("https://"):
                raise ValueError("CDN url_template must be an absolute https URL")
            validate_template(self.url_template)
        if self.mirror_delay_s is not None and self.mirror_delay_s < 0:
            raise ValueError(f"mirror_delay_s must be >= 0, got {self.mirror_delay_s}")


@dataclass
class StatsConfig:
    """Stats collection configuration."""

    enabled: bool = True
    flush_interval_s: float = 60.0
    flush_timeout_s: float = 5.0
    retention_s: float = 3600.0
    max_raw_events: int = 50_000

    def __post_init__(self) -> None:
        if self.flush_interval_s <= 0:
            raise ValueError(f"flush_interval_s must be > 0, got {self.flush_interval_s}")
        if self.flush_timeout_s <= 0:
            raise ValueError(f"flush_timeout_s must be > 0, got {self.flush_timeout_s}")
        if self.retention_s <= 0:
            raise ValueError(f"retention_s must be > 0, got {self.retention_s}")
        if self.max_raw_events < 1:
            raise ValueError(f"max_raw_events must be >= 1, got {self.max_raw_events}")


@dataclass
class ServerConfig:
    """Main server configuration."""

    release_dir: Path
    public_key: str  # base64 Ed25519 public key (32 raw bytes)

    host: str = "0.0.0.0"
    port: int = 3000

    # Absolute base for download_url in manifest responses; relative URLs if empty
    public_base_url: str = ""

    reload_interval_s: float = 30.0
    reload_timeout_s: float = 20.0
    artifact_open_timeout_s: float = 5.0

    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    cdn: CdnConfig = field(default_factory=CdnConfig)
    stats: StatsConfig = field(default_factory=StatsConfig)

    # Origins allowed to call the API cross-origin (desktop client update checks)
    cors_allowed_origins: tuple[str, ...] = ()

    # Take the client address from X-Forwarded-For (only behind a trusted proxy)
    trust_proxy: bool = False

    # Salt for client id hashing; random per process if empty
    client_id_salt: str = ""

    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"

    def __post_init__(self) -> None:
        self.release_dir = Path(self.release_dir)
        if not 0 < self.port <= 65535:
            raise ValueError(f"port must be in 1..65535, got {self.port}")
        if not self.public_key.strip():
            raise ValueError("public_key is required")
        if self.reload_interval_s <= 0:
            raise ValueError(f"reload_interval_s must be > 0, got {self.reload_interval_s}")
        if self.reload_timeout_s <= 0:
            raise ValueError(f"reload_timeout_s must be > 0, got {self.reload_timeout_s}")
        if self.artifact_open_timeout_s <= 0:
            raise ValueError(
                f"artifact_open_timeout_s must be > 0, got {self.artifact_open_timeout_s}"
            )
        if self.public_base_url:
            if not self.public_base_url.startswith(("http://", "https://")):
                raise ValueError("public_base_url must be an absolute http(s) URL")
            self.public_base_url = self.public_base_url.rstrip("/")
        if self.log_format not in ("json", "text"):
            raise ValueError(f"log_format must be 'json' or 'text', got {self.log_format!r}")

    def check_release_dir(self) -> None:
        """Fail fast when the release directory is unusable.

        Raises:
            ConfigurationError: If the directory is missing or not a directory.
        """
        if not self.release_dir.exists():
            raise ConfigurationError(f"RELEASE_DIR does not exist: {self.release_dir}")
        if not self.release_dir.is_dir():
            raise ConfigurationError(f"RELEASE_DIR is not a directory: {self.release_dir}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ServerConfig:
        """Build configuration from environment variables.

        Args:
            environ: Mapping to read from (default: os.environ).

        Returns:
            Validated ServerConfig.

        Raises:
            ConfigurationError: On missing or invalid settings.
        """
        env = os.environ if environ is None else environ

        release_dir = env.get("RELEASE_DIR", "")
        if not release_dir:
            raise ConfigurationError("RELEASE_DIR is required")

        try:
            public_key = _read_public_key(env)
            window_s = _env_float(env, "RATE_LIMIT_WINDOW_S", 60.0)
            return cls(
                release_dir=Path(release_dir),
                public_key=public_key,
                host=env.get("HOST", "0.0.0.0"),
                port=_env_int(env, "PORT", 3000),
                public_base_url=env.get("PUBLIC_BASE_URL", ""),
                reload_interval_s=_env_float(env, "RELOAD_INTERVAL_S", 30.0),
                reload_timeout_s=_env_float(env, "RELOAD_TIMEOUT_S", 20.0),
                artifact_open_timeout_s=_env_float(env, "ARTIFACT_OPEN_TIMEOUT_S", 5.0),
                rate_limit=RateLimitConfig(
                    window_s=window_s,
                    metadata_limit=_env_int(env, "RATE_LIMIT_METADATA", 120),
                    download_limit=_env_int(env, "RATE_LIMIT_DOWNLOAD", 20),
                    idle_ttl_s=_env_float(env, "RATE_LIMIT_IDLE_TTL_S", max(600.0, 2 * window_s)),
                ),
                cdn=CdnConfig(
                    enabled=_env_bool(env, "ENABLE_CDN", False),
                    url_template=env.get("CDN_URL_TEMPLATE", env.get("CDN_URL", "")),
                    mirror_delay_s=_env_optional_float(env, "CDN_MIRROR_DELAY_S"),
                ),
                stats=StatsConfig(
                    enabled=_env_bool(env, "ENABLE_STATS", True),
                    flush_interval_s=_env_float(env, "STATS_FLUSH_INTERVAL_S", 60.0),
                    retention_s=_env_float(env, "STATS_RETENTION_S", 3600.0),
                ),
                cors_allowed_origins=_env_list(env, "CORS_ALLOWED_ORIGINS"),
                trust_proxy=_env_bool(env, "TRUST_PROXY", False),
                client_id_salt=env.get("CLIENT_ID_SALT", ""),
                log_level=env.get("LOG_LEVEL", "INFO").upper(),
                log_format=env.get("LOG_FORMAT", "json").lower(),  # type: ignore[arg-type]
            )
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    def redacted(self) -> dict[str, object]:
        """Settings safe to log at startup."""
        return {
            "release_dir": str(self.release_dir),
            "host": self.host,
            "port": self.port,
            "public_base_url": self.public_base_url,
            "reload_interval_s": self.reload_interval_s,
            "cdn_enabled": self.cdn.enabled,
            "cdn_template_set": bool(self.cdn.url_template),
            "stats_enabled": self.stats.enabled,
            "metadata_limit": self.rate_limit.metadata_limit,
            "download_limit": self.rate_limit.download_limit,
            "window_s": self.rate_limit.window_s,
            "cors_origins": len(self.cors_allowed_origins),
            "trust_proxy": self.trust_proxy,
        }


def _read_public_key(env: Mapping[str, str]) -> str:
    """Resolve key material from PUBLIC_KEY or PUBLIC_KEY_FILE."""
    inline = env.get("PUBLIC_KEY", "").strip()
    if inline:
        return inline

    key_file = env.get("PUBLIC_KEY_FILE", "")
    if key_file:
        try:
            content = Path(key_file).read_text(encoding="utf-8").strip()
        except OSError as e:
            raise ConfigurationError(f"Cannot read PUBLIC_KEY_FILE: {e.strerror}") from e
        if content:
            return content

    raise ConfigurationError("PUBLIC_KEY or PUBLIC_KEY_FILE is required; refusing to serve unsigned")


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = _env_optional_float(env, name)
    return default if value is None else value


def _env_optional_float(env: Mapping[str, str], name: str) -> float | None:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_list(env: Mapping[str, str], name: str) -> tuple[str, ...]:
    raw = env.get(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())
