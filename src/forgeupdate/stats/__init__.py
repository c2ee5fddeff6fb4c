"""Delivery statistics."""

from forgeupdate.stats.collector import (
    UNKNOWN,
    CollectorMetrics,
    StatsCollector,
    StatsSnapshot,
)
from forgeupdate.stats.sinks import LoggingStatsSink, MemoryStatsSink, StatsSink

__all__ = [
    "UNKNOWN",
    "CollectorMetrics",
    "LoggingStatsSink",
    "MemoryStatsSink",
    "StatsCollector",
    "StatsSink",
    "StatsSnapshot",
]
