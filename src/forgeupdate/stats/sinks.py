"""
Stats sinks.

A sink receives periodic aggregate snapshots from the collector. Sinks are
called off the request path with a timeout; a slow or failing sink only costs
a log line.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from forgeupdate.stats.collector import StatsSnapshot

logger = logging.getLogger(__name__)


class StatsSink(ABC):
    """Abstract base class for stats sinks."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique name for this sink."""
        ...

    @abstractmethod
    async def publish(self, snapshot: StatsSnapshot) -> None:
        """
        Publish one aggregate snapshot.

        Args:
            snapshot: Aggregate counters at flush time.
        """
        ...

    async def close(self) -> None:
        """Close any resources held by this sink."""
        return None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


class LoggingStatsSink(StatsSink):
    """Writes per-event totals to the application log."""

    @property
    def name(self) -> str:
        return "log"

    async def publish(self, snapshot: StatsSnapshot) -> None:
        logger.info(
            "Delivery stats",
            extra={
                "totals": snapshot.totals_by_event(),
                "counters": len(snapshot.counts),
                "raw_events": snapshot.raw_events,
            },
        )


class MemoryStatsSink(StatsSink):
    """Keeps published snapshots in memory (tests, local debugging)."""

    def __init__(self) -> None:
        self.snapshots: list[StatsSnapshot] = []

    @property
    def name(self) -> str:
        return "memory"

    async def publish(self, snapshot: StatsSnapshot) -> None:
        self.snapshots.append(snapshot)
