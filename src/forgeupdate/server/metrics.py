"""
Prometheus metrics for the update server.

Exports low-cardinality metrics only: labels are limited to route class and
response outcome. Versions, platforms, paths and client ids never become
label values.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry

if TYPE_CHECKING:
    from forgeupdate.guard.limiter import RequestGuard
    from forgeupdate.releases.store import ReleaseStore
    from forgeupdate.stats.collector import StatsCollector


# Labels that would cause cardinality explosion
FORBIDDEN_LABELS = frozenset(
    {
        "version",
        "platform",
        "path",
        "query",
        "ip",
        "client_id",
        "artifact",
    }
)

# Outcome label values
OUTCOMES = frozenset(
    {"ok", "redirect", "not_found", "bad_request", "rate_limited", "unavailable", "error"}
)


class ServerMetrics:
    """
    Prometheus metrics for request handling and background components.

    Request counters are incremented inline by the HTTP surface; component
    gauges/counters are synced from their internal counters on each scrape
    via ``update()``.

    Usage:
        registry = CollectorRegistry()
        metrics = ServerMetrics(registry=registry)
        metrics.observe_request("metadata", "ok")
        metrics.update(store=store, guard=guard, collector=collector)
        # generate_latest(registry) -> bytes for /metrics endpoint
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """
        Initialize metrics.

        Args:
            registry: Prometheus CollectorRegistry. A fresh one if None.
        """
        self._registry = registry or CollectorRegistry()

        # === Request metrics (forgeupdate_http_*) ===
        self._requests = Counter(
            "forgeupdate_http_requests",
            "HTTP requests by route class and outcome",
            ["route_class", "outcome"],
            registry=self._registry,
        )
        self._bytes_streamed = Counter(
            "forgeupdate_http_bytes_streamed",
            "Artifact bytes streamed directly by this server",
            registry=self._registry,
        )
        self._downloads_interrupted = Counter(
            "forgeupdate_http_downloads_interrupted",
            "Direct downloads interrupted before completion",
            registry=self._registry,
        )

        # === Catalog metrics (forgeupdate_catalog_*) ===
        self._catalog_releases = Gauge(
            "forgeupdate_catalog_releases",
            "Releases in the active catalog",
            registry=self._registry,
        )
        self._catalog_excluded = Gauge(
            "forgeupdate_catalog_excluded",
            "Manifests rejected by the last successful scan",
            registry=self._registry,
        )
        self._catalog_loaded = Gauge(
            "forgeupdate_catalog_loaded",
            "1 once a catalog has been activated",
            registry=self._registry,
        )
        self._catalog_reloads = Counter(
            "forgeupdate_catalog_reloads",
            "Successful catalog reloads",
            registry=self._registry,
        )
        self._catalog_reload_failures = Counter(
            "forgeupdate_catalog_reload_failures",
            "Catalog reloads discarded (previous catalog kept)",
            registry=self._registry,
        )
        self._catalog_reload_duration_s = Gauge(
            "forgeupdate_catalog_reload_duration_seconds",
            "Duration of the most recent reload attempt",
            registry=self._registry,
        )

        # === Guard metrics (forgeupdate_guard_*) ===
        self._guard_buckets = Gauge(
            "forgeupdate_guard_buckets",
            "Rate limit buckets currently tracked",
            registry=self._registry,
        )
        self._guard_rejected = Counter(
            "forgeupdate_guard_rejected",
            "Requests rejected by the rate limiter",
            registry=self._registry,
        )

        # === Stats collector metrics (forgeupdate_stats_*) ===
        self._stats_recorded = Counter(
            "forgeupdate_stats_recorded",
            "Delivery events recorded",
            registry=self._registry,
        )
        self._stats_flush_failures = Counter(
            "forgeupdate_stats_flush_failures",
            "Stats sink publish failures and timeouts",
            registry=self._registry,
        )

        self.reset_counter_tracking()

    @property
    def registry(self) -> CollectorRegistry:
        """Get the Prometheus CollectorRegistry."""
        return self._registry

    def observe_request(self, route_class: str, outcome: str) -> None:
        """Count one handled request."""
        if outcome not in OUTCOMES:
            outcome = "error"
        self._requests.labels(route_class=route_class, outcome=outcome).inc()

    def observe_bytes(self, n: int) -> None:
        if n > 0:
            self._bytes_streamed.inc(n)

    def observe_interrupted(self) -> None:
        self._downloads_interrupted.inc()

    def update(
        self,
        store: ReleaseStore | None = None,
        guard: RequestGuard | None = None,
        collector: StatsCollector | None = None,
    ) -> None:
        """
        Sync component state into Prometheus.

        Called on every /metrics scrape.
        """
        if store is not None:
            self._update_store_metrics(store)
        if guard is not None:
            self._update_guard_metrics(guard)
        if collector is not None:
            self._update_collector_metrics(collector)

    def _update_store_metrics(self, store: ReleaseStore) -> None:
        self._catalog_loaded.set(1 if store.is_loaded else 0)
        if store.is_loaded:
            catalog = store.snapshot
            self._catalog_releases.set(len(catalog))
            self._catalog_excluded.set(catalog.excluded)
        self._catalog_reload_duration_s.set(store.last_reload_duration_s)

        # Counters: increment by delta since last update
        delta = store.reload_count - self._last_reload_count
        if delta > 0:
            self._catalog_reloads.inc(delta)
        self._last_reload_count = store.reload_count

        delta = store.reload_failures - self._last_reload_failures
        if delta > 0:
            self._catalog_reload_failures.inc(delta)
        self._last_reload_failures = store.reload_failures

    def _update_guard_metrics(self, guard: RequestGuard) -> None:
        self._guard_buckets.set(guard.bucket_count)

        current = guard.metrics.rejected
        delta = current - self._last_guard_rejected
        if delta > 0:
            self._guard_rejected.inc(delta)
        self._last_guard_rejected = current

    def _update_collector_metrics(self, collector: StatsCollector) -> None:
        current = collector.metrics.recorded
        delta = current - self._last_stats_recorded
        if delta > 0:
            self._stats_recorded.inc(delta)
        self._last_stats_recorded = current

        current = collector.metrics.flush_failures
        delta = current - self._last_stats_flush_failures
        if delta > 0:
            self._stats_flush_failures.inc(delta)
        self._last_stats_flush_failures = current

    def reset_counter_tracking(self) -> None:
        """
        Reset internal counter tracking.

        Use when components are reset or for testing.
        Does NOT reset the Prometheus counters themselves.
        """
        self._last_reload_count = 0
        self._last_reload_failures = 0
        self._last_guard_rejected = 0
        self._last_stats_recorded = 0
        self._last_stats_flush_failures = 0


# Counters are exported with a _total suffix by prometheus_client
REQUIRED_METRIC_NAMES: frozenset[str] = frozenset(
    {
        "forgeupdate_http_requests_total",
        "forgeupdate_http_bytes_streamed_total",
        "forgeupdate_catalog_releases",
        "forgeupdate_catalog_loaded",
        "forgeupdate_catalog_reload_failures_total",
        "forgeupdate_guard_buckets",
        "forgeupdate_guard_rejected_total",
        "forgeupdate_stats_recorded_total",
    }
)
