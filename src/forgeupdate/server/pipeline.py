"""
Request decision pipeline.

Each route is an ordered composition of small decision steps:

    guard -> resolve -> respond

Every step is a plain function over immutable inputs (admission result,
catalog snapshot, redirect resolution) returning either a value for the next
step or a terminal ``Outcome``. Rendering an Outcome into an aiohttp response
happens in one place (``render``), so status codes, bodies and cache headers
for each failure mode are defined exactly once.

Not-found and failed-verification are deliberately the same outcome: a
release whose signature did not verify never entered the catalog.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from urllib.parse import quote

import orjson
from aiohttp import web

from forgeupdate.cdn.redirector import RedirectTo, Resolution
from forgeupdate.contracts.release import Platform, ReleaseManifest
from forgeupdate.server.headers import CACHE_IMMUTABLE, CACHE_NO_STORE

if TYPE_CHECKING:
    from forgeupdate.guard.limiter import Admission
    from forgeupdate.releases.store import Catalog


@dataclass(frozen=True)
class Outcome:
    """Terminal result of a pipeline.

    Attributes:
        status: HTTP status code.
        kind: Low-cardinality outcome label (metrics, logs).
        body: JSON body, if any.
        headers: Extra response headers.
    """

    status: int
    kind: str
    body: Mapping[str, object] | None = None
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamArtifact:
    """Terminal result: stream the manifest's artifact from the release store."""

    manifest: ReleaseManifest
    kind: str = "ok"


# Shared failure outcomes
NOT_FOUND = Outcome(404, "not_found", {"error": "not found"})
CATALOG_UNAVAILABLE = Outcome(
    503, "unavailable", {"error": "catalog unavailable"}, {"Retry-After": "5"}
)
INTERNAL_ERROR = Outcome(500, "error", {"error": "internal error"})


def bad_request(message: str) -> Outcome:
    return Outcome(400, "bad_request", {"error": message})


def rate_limited(retry_after_s: int) -> Outcome:
    return Outcome(
        429,
        "rate_limited",
        {"error": "too many requests", "retry_after": retry_after_s},
        {"Retry-After": str(retry_after_s)},
    )


# === Guard ===


def check_admission(admission: Admission) -> Outcome | None:
    """Stop the pipeline when the guard rejected the request."""
    if admission.allowed:
        return None
    return rate_limited(admission.retry_after_s)


# === Resolve ===


def resolve_latest(catalog: Catalog, platform: str | None) -> ReleaseManifest | Outcome:
    """Latest release for a platform query parameter."""
    if not platform:
        return bad_request("platform query parameter is required")
    manifest = catalog.get_latest(platform)
    if manifest is None:
        return NOT_FOUND
    return manifest


def resolve_release(catalog: Catalog, version: str, platform: str) -> ReleaseManifest | Outcome:
    """Specific (version, platform) release. Malformed input is just not found."""
    manifest = catalog.get(version, platform)
    if manifest is None:
        return NOT_FOUND
    return manifest


# === Respond ===


def download_path(manifest: ReleaseManifest) -> str:
    return f"/releases/{quote(manifest.version, safe='')}/{manifest.platform.value}/download"


def manifest_outcome(manifest: ReleaseManifest, base_url: str = "") -> Outcome:
    """200 with the client-facing manifest; never cached."""
    return Outcome(
        200,
        "ok",
        manifest.public_dict(download_url=f"{base_url}{download_path(manifest)}"),
        {"Cache-Control": CACHE_NO_STORE},
    )


def delivery_outcome(manifest: ReleaseManifest, resolution: Resolution) -> Outcome | StreamArtifact:
    """Redirect to the CDN or stream directly."""
    if isinstance(resolution, RedirectTo):
        return Outcome(
            302,
            "redirect",
            None,
            {
                "Location": resolution.url,
                "Cache-Control": CACHE_NO_STORE,
                "X-Checksum-SHA256": manifest.checksum,
            },
        )
    return StreamArtifact(manifest)


def artifact_headers(manifest: ReleaseManifest, size_bytes: int) -> dict[str, str]:
    """Headers for a direct artifact stream."""
    return {
        "Content-Type": "application/octet-stream",
        "Content-Length": str(size_bytes),
        "Content-Disposition": f'attachment; filename="{_safe_filename(manifest.artifact_name)}"',
        "X-Checksum-SHA256": manifest.checksum,
        "ETag": f'"{manifest.checksum}"',
        "Cache-Control": CACHE_IMMUTABLE,
    }


def etag_matches(if_none_match: str | None, manifest: ReleaseManifest) -> bool:
    """True if a conditional GET already holds this artifact."""
    if not if_none_match:
        return False
    tags = {t.strip().removeprefix("W/").strip('"') for t in if_none_match.split(",")}
    return "*" in tags or manifest.checksum in tags


def not_modified(manifest: ReleaseManifest) -> Outcome:
    return Outcome(
        304,
        "ok",
        None,
        {"ETag": f'"{manifest.checksum}"', "Cache-Control": CACHE_IMMUTABLE},
    )


def platform_label(value: str | None) -> str:
    """Platform value for stats; unknown input stays as-is (collector buckets it)."""
    if not value:
        return ""
    parsed = Platform.parse(value)
    return parsed.value if parsed is not None else value


def _safe_filename(name: str) -> str:
    return "".join(c for c in name if c.isprintable() and c not in '"\\')


# === Render ===


def render(outcome: Outcome) -> web.Response:
    """Turn an Outcome into an aiohttp response."""
    if outcome.body is None:
        return web.Response(status=outcome.status, headers=dict(outcome.headers))
    return web.Response(
        status=outcome.status,
        body=orjson.dumps(outcome.body),
        content_type="application/json",
        headers=dict(outcome.headers),
    )
