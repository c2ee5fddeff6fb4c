"""
Delivery stats collector.

``record()`` is fire-and-forget: an O(1) counter increment plus an append to a
bounded raw-event window, with no awaits and no exceptions escaping to the
caller. Counters are keyed by (version, platform, event_type) where
version/platform must be a release the catalog knows; anything else lands in
the ``unknown`` slot so arbitrary client input cannot grow memory.

Exporting happens in ``run()``, a background task that hands snapshots to a
StatsSink with a timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from types import MappingProxyType

from forgeupdate.config import StatsConfig
from forgeupdate.contracts.events import DownloadEvent, EventType
from forgeupdate.stats.sinks import LoggingStatsSink, StatsSink

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"

# (version, platform, event_type)
StatsKey = tuple[str, str, str]


@dataclass
class CollectorMetrics:
    """Health counters for the collector itself."""

    recorded: int = 0
    bucketed_unknown: int = 0
    raw_evicted: int = 0
    flushes: int = 0
    flush_failures: int = 0
    record_errors: int = 0


@dataclass(frozen=True)
class StatsSnapshot:
    """Point-in-time copy of the aggregate counters."""

    counts: Mapping[StatsKey, int]
    taken_at: datetime
    raw_events: int = 0

    def count(self, version: str, platform: str, event_type: EventType | str) -> int:
        """Count for one (version, platform, event_type) combination."""
        event = event_type.value if isinstance(event_type, EventType) else event_type
        return self.counts.get((version, platform, event), 0)

    def totals_by_event(self) -> dict[str, int]:
        """Totals per event type across all releases."""
        totals = {e.value: 0 for e in EventType}
        for (_, _, event), n in self.counts.items():
            totals[event] = totals.get(event, 0) + n
        return totals

    def to_dict(self) -> dict[str, object]:
        """JSON-ready representation for the /stats endpoint."""
        return {
            "taken_at": self.taken_at.isoformat(),
            "raw_events": self.raw_events,
            "totals": self.totals_by_event(),
            "counts": [
                {"version": v, "platform": p, "event": e, "count": n}
                for (v, p, e), n in sorted(self.counts.items())
            ],
        }


class StatsCollector:
    """
    Aggregates DownloadEvents into bounded counters.

    Usage:
        collector = StatsCollector(config.stats)
        collector.set_known_releases(catalog.known_releases())
        collector.record(event)           # never blocks, never raises
        snapshot = collector.snapshot()
    """

    def __init__(
        self,
        config: StatsConfig | None = None,
        sink: StatsSink | None = None,
        *,
        time_fn: Callable[[], float] | None = None,
    ) -> None:
        """
        Initialize collector.

        Args:
            config: Stats configuration. Uses defaults if not provided.
            sink: Destination for periodic snapshots (default: log).
            time_fn: Epoch-seconds clock, injectable for tests.
        """
        self._config = config or StatsConfig()
        self._sink = sink or LoggingStatsSink()
        self._time_fn = time_fn or time.time

        self._counts: dict[StatsKey, int] = {}
        self._known: frozenset[tuple[str, str]] = frozenset()
        self._raw: deque[DownloadEvent] = deque(maxlen=self._config.max_raw_events)
        self._metrics = CollectorMetrics()

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def metrics(self) -> CollectorMetrics:
        """Collector health counters."""
        return self._metrics

    @property
    def sink(self) -> StatsSink:
        return self._sink

    def set_known_releases(self, releases: Iterable[tuple[str, str]]) -> None:
        """Replace the set of (version, platform) pairs that get their own counters."""
        self._known = frozenset(releases)

    def record(self, event: DownloadEvent) -> None:
        """Record one event. Never blocks or raises."""
        if not self._config.enabled:
            return
        try:
            self._record(event)
        except Exception:
            self._metrics.record_errors += 1
            logger.exception("Failed to record stats event")

    def _record(self, event: DownloadEvent) -> None:
        if (event.version, event.platform) in self._known:
            version, platform = event.version, event.platform
        else:
            version, platform = UNKNOWN, UNKNOWN
            self._metrics.bucketed_unknown += 1

        key = (version, platform, event.event_type.value)
        self._counts[key] = self._counts.get(key, 0) + 1
        self._metrics.recorded += 1

        if len(self._raw) == self._raw.maxlen:
            self._metrics.raw_evicted += 1
        self._raw.append(event)
        self._prune(self._time_fn())

    def _prune(self, now: float) -> None:
        """Drop raw events older than the retention window (counters keep them)."""
        cutoff = now - self._config.retention_s
        while self._raw and self._raw[0].timestamp.timestamp() < cutoff:
            self._raw.popleft()
            self._metrics.raw_evicted += 1

    def recent_events(self) -> list[DownloadEvent]:
        """Raw events still inside the retention window, oldest first."""
        self._prune(self._time_fn())
        return list(self._raw)

    def snapshot(self) -> StatsSnapshot:
        """Copy of the aggregate counters."""
        return StatsSnapshot(
            counts=MappingProxyType(dict(self._counts)),
            taken_at=datetime.fromtimestamp(self._time_fn(), tz=UTC),
            raw_events=len(self._raw),
        )

    def reset(self) -> None:
        """Reset all state (for testing)."""
        self._counts.clear()
        self._raw.clear()
        self._metrics = CollectorMetrics()

    async def flush(self) -> bool:
        """Publish a snapshot to the sink.

        Returns:
            True on success; failures and timeouts are logged, not raised.
        """
        self._prune(self._time_fn())
        snapshot = self.snapshot()
        try:
            await asyncio.wait_for(
                self._sink.publish(snapshot), timeout=self._config.flush_timeout_s
            )
        except TimeoutError:
            self._metrics.flush_failures += 1
            logger.warning("Stats sink timed out", extra={"sink": self._sink.name})
            return False
        except Exception:
            self._metrics.flush_failures += 1
            logger.exception("Stats sink failed", extra={"sink": self._sink.name})
            return False
        self._metrics.flushes += 1
        return True

    async def run(self, stop: asyncio.Event) -> None:
        """Flush periodically until ``stop`` is set, then flush once more."""
        if not self._config.enabled:
            return
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._config.flush_interval_s)
            except TimeoutError:
                await self.flush()
        await self.flush()
        await self._sink.close()
