"""
CDN redirect policy.

Decides per download whether the server streams the artifact itself or sends
the client to a CDN copy. Only artifacts believed to be mirrored are
redirected:

1. The manifest carries an explicit ``cdn_url`` override, or
2. A URL template is configured and the manifest is flagged ``mirrored``, or
   was published longer ago than the configured mirror delay.

Everything else streams directly, so a missing or lagging mirror never
breaks a download.
"""

from __future__ import annotations

import string
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import quote

if TYPE_CHECKING:
    from forgeupdate.config import CdnConfig
    from forgeupdate.contracts.release import ReleaseManifest

TEMPLATE_FIELDS = frozenset({"version", "platform", "artifact", "checksum"})


@dataclass(frozen=True)
class StreamDirect:
    """Serve the artifact bytes from the release store."""

    reason: str = "cdn-disabled"


@dataclass(frozen=True)
class RedirectTo:
    """Send the client to a CDN-hosted copy."""

    url: str


Resolution = StreamDirect | RedirectTo


def validate_template(template: str) -> None:
    """Check that a URL template only uses known fields.

    Raises:
        ValueError: On unknown or malformed placeholders.
    """
    for _, field_name, _, _ in string.Formatter().parse(template):
        if field_name is not None and field_name not in TEMPLATE_FIELDS:
            msg = f"Unknown CDN template field {{{field_name}}}; allowed: {sorted(TEMPLATE_FIELDS)}"
            raise ValueError(msg)


class CdnRedirector:
    """
    Resolves downloads to a direct stream or a CDN redirect.

    Pure function of (config, manifest, clock); no network calls. CDN health
    is signalled through the manifest flags by the release pipeline.
    """

    def __init__(
        self,
        config: CdnConfig,
        *,
        time_fn: Callable[[], float] | None = None,
    ) -> None:
        self._config = config
        self._time_fn = time_fn or time.time

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def template_url(self, manifest: ReleaseManifest) -> str:
        """Expand the URL template for a manifest (values URL-quoted)."""
        return self._config.url_template.format(
            version=quote(manifest.version, safe=""),
            platform=quote(manifest.platform.value, safe=""),
            artifact=quote(manifest.artifact_name, safe=""),
            checksum=manifest.checksum,
        )

    def is_mirrored(self, manifest: ReleaseManifest) -> bool:
        """True if the artifact is believed to be on the CDN."""
        if manifest.mirrored:
            return True
        delay = self._config.mirror_delay_s
        if delay is None:
            return False
        age_s = self._time_fn() - manifest.published_at.timestamp()
        return age_s >= delay

    def resolve(self, manifest: ReleaseManifest) -> Resolution:
        """Decide how to deliver one artifact."""
        if not self._config.enabled:
            return StreamDirect(reason="cdn-disabled")
        if manifest.cdn_url:
            return RedirectTo(url=manifest.cdn_url)
        if not self._config.url_template:
            return StreamDirect(reason="no-template")
        if not self.is_mirrored(manifest):
            return StreamDirect(reason="not-mirrored")
        return RedirectTo(url=self.template_url(manifest))
