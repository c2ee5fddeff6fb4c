"""
aiohttp application for the update server.

Routes:
    GET /latest?platform=P                          latest manifest (metadata)
    GET /releases/{version}/{platform}/manifest     specific manifest (metadata)
    GET /releases/{version}/{platform}/download     artifact stream or CDN redirect (download)
    GET /stats                                      aggregate delivery counters (metadata)
    GET /metrics                                    Prometheus exposition (metadata)
    GET /healthz                                    liveness, unguarded
    GET /readyz                                     readiness, unguarded

Every guarded route runs through ``_endpoint``, which applies the guard,
converts storage unavailability into 503 and anything unexpected into a
generic 500, and counts the outcome.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from aiohttp import web
from prometheus_client import generate_latest

from forgeupdate.cdn.redirector import CdnRedirector
from forgeupdate.config import ServerConfig
from forgeupdate.contracts.events import DownloadEvent, EventType
from forgeupdate.contracts.release import ReleaseManifest
from forgeupdate.guard.limiter import ClientIdentity, RequestGuard, RouteClass
from forgeupdate.releases.store import (
    Catalog,
    CatalogUnavailableError,
    ReleaseNotFoundError,
    ReleaseStore,
)
from forgeupdate.server.headers import CACHE_NO_STORE, CorsPolicy, make_response_prepare_hook
from forgeupdate.server.metrics import ServerMetrics
from forgeupdate.server.pipeline import (
    CATALOG_UNAVAILABLE,
    INTERNAL_ERROR,
    NOT_FOUND,
    Outcome,
    artifact_headers,
    check_admission,
    delivery_outcome,
    etag_matches,
    manifest_outcome,
    not_modified,
    platform_label,
    render,
    resolve_latest,
    resolve_release,
)
from forgeupdate.signing.verifier import SignatureVerifier
from forgeupdate.stats.collector import StatsCollector
from forgeupdate.stats.sinks import StatsSink

logger = logging.getLogger(__name__)

STREAM_CHUNK_BYTES = 256 * 1024

# Prometheus exposition format content type
METRICS_CONTENT_TYPE = "text/plain; version=0.0.4"

_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
_Step = Callable[[web.Request, str], Awaitable[Outcome | web.StreamResponse]]


@dataclass
class UpdateServer:
    """Components behind the HTTP surface, plus the route handlers."""

    store: ReleaseStore
    collector: StatsCollector
    redirector: CdnRedirector
    guard: RequestGuard
    identity: ClientIdentity
    metrics: ServerMetrics
    cors: CorsPolicy
    public_base_url: str = ""
    trust_proxy: bool = False
    chunk_size: int = STREAM_CHUNK_BYTES

    # === Helpers ===

    def client_address(self, request: web.Request) -> str | None:
        """Peer address; first X-Forwarded-For hop only behind a trusted proxy."""
        if self.trust_proxy:
            forwarded = request.headers.get("X-Forwarded-For", "")
            first = forwarded.split(",", 1)[0].strip()
            if first:
                return first
        return request.remote

    def client_id(self, request: web.Request) -> str:
        return self.identity.client_id(self.client_address(request))

    def record(self, version: str, platform: str, client_id: str, event_type: EventType) -> None:
        self.collector.record(
            DownloadEvent(
                version=version,
                platform=platform,
                client_id=client_id,
                event_type=event_type,
            )
        )

    def release_labels(self, version: str, platform: str | None) -> tuple[str, str]:
        """Catalog version and platform for requested labels, or the labels as given."""
        if version and platform and self.store.is_loaded:
            manifest = self.store.snapshot.get(version, platform)
            if manifest is not None:
                return manifest.version, manifest.platform.value
        return version, platform_label(platform)

    def _endpoint(self, route_class: RouteClass, step: _Step) -> _Handler:
        """Wrap a route step with guard, error boundary and outcome counting."""

        async def handler(request: web.Request) -> web.StreamResponse:
            client_id = self.client_id(request)
            try:
                rejected = check_admission(self.guard.admit(client_id, route_class))
                if rejected is not None:
                    version, platform = self.release_labels(
                        request.match_info.get("version", ""),
                        request.match_info.get("platform") or request.query.get("platform"),
                    )
                    self.record(version, platform, client_id, EventType.RATE_LIMITED)
                    result: Outcome | web.StreamResponse = rejected
                else:
                    result = await step(request, client_id)
            except CatalogUnavailableError:
                result = CATALOG_UNAVAILABLE
            except Exception:
                logger.exception(
                    "Unhandled error in request handler",
                    extra={"route_class": route_class.value, "method": request.method},
                )
                result = INTERNAL_ERROR

            if isinstance(result, Outcome):
                self.metrics.observe_request(route_class.value, result.kind)
                return render(result)
            return result

        return handler

    # === Metadata routes ===

    async def latest(self, request: web.Request, client_id: str) -> Outcome:
        catalog = self.store.snapshot
        platform = request.query.get("platform")
        resolved = resolve_latest(catalog, platform)
        if isinstance(resolved, Outcome):
            if resolved is NOT_FOUND:
                self.record("", platform_label(platform), client_id, EventType.CHECK)
            return resolved
        self.record(resolved.version, resolved.platform.value, client_id, EventType.CHECK)
        return manifest_outcome(resolved, self.public_base_url)

    async def manifest(self, request: web.Request, client_id: str) -> Outcome:
        catalog = self.store.snapshot
        version = request.match_info["version"]
        platform = request.match_info["platform"]
        resolved = resolve_release(catalog, version, platform)
        if isinstance(resolved, Outcome):
            self.record(version, platform_label(platform), client_id, EventType.CHECK)
            return resolved
        self.record(resolved.version, resolved.platform.value, client_id, EventType.CHECK)
        return manifest_outcome(resolved, self.public_base_url)

    async def stats(self, request: web.Request, client_id: str) -> Outcome:
        body: dict[str, object] = {"enabled": self.collector.enabled}
        body.update(self.collector.snapshot().to_dict())
        return Outcome(200, "ok", body, {"Cache-Control": CACHE_NO_STORE})

    async def prometheus(self, request: web.Request, client_id: str) -> web.StreamResponse:
        self.metrics.update(store=self.store, guard=self.guard, collector=self.collector)
        self.metrics.observe_request(RouteClass.METADATA.value, "ok")
        return web.Response(
            body=generate_latest(self.metrics.registry),
            content_type=METRICS_CONTENT_TYPE,
            charset="utf-8",
        )

    # === Download route ===

    async def download(self, request: web.Request, client_id: str) -> Outcome | web.StreamResponse:
        catalog = self.store.snapshot
        version = request.match_info["version"]
        platform = request.match_info["platform"]
        resolved = resolve_release(catalog, version, platform)
        if isinstance(resolved, Outcome):
            self.record(version, platform_label(platform), client_id, EventType.DOWNLOAD_START)
            return resolved

        if etag_matches(request.headers.get("If-None-Match"), resolved):
            return not_modified(resolved)

        self.record(resolved.version, resolved.platform.value, client_id, EventType.DOWNLOAD_START)
        decision = delivery_outcome(resolved, self.redirector.resolve(resolved))
        if isinstance(decision, Outcome):
            return decision
        return await self._stream(request, catalog, decision.manifest, client_id)

    async def _stream(
        self,
        request: web.Request,
        catalog: Catalog,
        manifest: ReleaseManifest,
        client_id: str,
    ) -> Outcome | web.StreamResponse:
        try:
            handle = await self.store.open_manifest_artifact(manifest, catalog)
        except ReleaseNotFoundError:
            return NOT_FOUND

        sent = 0
        with handle:
            response = web.StreamResponse(
                status=200, headers=artifact_headers(manifest, handle.size_bytes)
            )
            try:
                await response.prepare(request)
                if request.method != "HEAD":
                    while True:
                        chunk = await asyncio.to_thread(handle.file.read, self.chunk_size)
                        if not chunk:
                            break
                        await response.write(chunk)
                        sent += len(chunk)
                await response.write_eof()
            except ConnectionResetError:
                self._interrupted(manifest, client_id, sent, handle.size_bytes)
                return response
            except asyncio.CancelledError:
                self._interrupted(manifest, client_id, sent, handle.size_bytes)
                raise
            finally:
                self.metrics.observe_bytes(sent)

        self.metrics.observe_request(RouteClass.DOWNLOAD.value, "ok")
        if request.method != "HEAD":
            self.record(
                manifest.version, manifest.platform.value, client_id, EventType.DOWNLOAD_COMPLETE
            )
        return response

    def _interrupted(
        self, manifest: ReleaseManifest, client_id: str, sent: int, total: int
    ) -> None:
        self.metrics.observe_interrupted()
        self.metrics.observe_request(RouteClass.DOWNLOAD.value, "ok")
        self.record(manifest.version, manifest.platform.value, client_id, EventType.DOWNLOAD_PARTIAL)
        logger.info(
            "Download interrupted",
            extra={"artifact": manifest.artifact_name, "sent_bytes": sent, "total_bytes": total},
        )

    # === Unguarded routes ===

    async def healthz(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"}, headers={"Cache-Control": CACHE_NO_STORE})

    async def readyz(self, request: web.Request) -> web.Response:
        if not self.store.is_loaded:
            return web.json_response(
                {"status": "loading", "last_error": self.store.last_reload_error},
                status=503,
                headers={"Cache-Control": CACHE_NO_STORE},
            )
        catalog = self.store.snapshot
        return web.json_response(
            {
                "status": "ready",
                "releases": len(catalog),
                "excluded": catalog.excluded,
                "loaded_at": catalog.loaded_at.isoformat(),
            },
            headers={"Cache-Control": CACHE_NO_STORE},
        )

    async def preflight(self, request: web.Request) -> web.Response:
        """Answer CORS preflight; disallowed origins get no CORS headers."""
        headers = self.cors.preflight_headers(request.headers.get("Origin"))
        return web.Response(status=204, headers=headers)


SERVER_KEY = web.AppKey("update_server", UpdateServer)


def build_server(
    config: ServerConfig,
    *,
    sink: StatsSink | None = None,
    metrics: ServerMetrics | None = None,
    time_fn: Callable[[], float] | None = None,
) -> UpdateServer:
    """Wire all components from configuration (no I/O; call store.reload() next)."""
    clock = time_fn or time.time
    verifier = SignatureVerifier.from_base64(config.public_key)
    collector = StatsCollector(config.stats, sink, time_fn=clock)

    def on_reload(catalog: Catalog) -> None:
        collector.set_known_releases(catalog.known_releases())

    store = ReleaseStore(
        config.release_dir,
        verifier,
        reload_timeout_s=config.reload_timeout_s,
        open_timeout_s=config.artifact_open_timeout_s,
        on_reload=on_reload,
    )
    return UpdateServer(
        store=store,
        collector=collector,
        redirector=CdnRedirector(config.cdn, time_fn=clock),
        guard=RequestGuard(config.rate_limit, time_fn=clock),
        identity=ClientIdentity(config.client_id_salt),
        metrics=metrics or ServerMetrics(),
        cors=CorsPolicy(config.cors_allowed_origins),
        public_base_url=config.public_base_url,
        trust_proxy=config.trust_proxy,
    )


def create_app(server: UpdateServer) -> web.Application:
    """
    Create the aiohttp Application for an UpdateServer.

    Returns:
        aiohttp.web.Application ready to be started.
    """
    app = web.Application()
    app[SERVER_KEY] = server

    metadata = RouteClass.METADATA
    guarded: list[tuple[str, RouteClass, _Step]] = [
        ("/latest", metadata, server.latest),
        ("/releases/{version}/{platform}/manifest", metadata, server.manifest),
        ("/releases/{version}/{platform}/download", RouteClass.DOWNLOAD, server.download),
        ("/stats", metadata, server.stats),
        ("/metrics", metadata, server.prometheus),
    ]
    for path, route_class, step in guarded:
        app.router.add_get(path, server._endpoint(route_class, step))
        app.router.add_route("OPTIONS", path, server.preflight)

    app.router.add_get("/healthz", server.healthz)
    app.router.add_get("/readyz", server.readyz)

    app.on_response_prepare.append(make_response_prepare_hook(server.cors))
    return app
