"""Request guard (per-client rate limiting)."""

from forgeupdate.guard.limiter import (
    Admission,
    ClientIdentity,
    GuardMetrics,
    RateBucket,
    RequestGuard,
    RouteClass,
)

__all__ = [
    "Admission",
    "ClientIdentity",
    "GuardMetrics",
    "RateBucket",
    "RequestGuard",
    "RouteClass",
]
