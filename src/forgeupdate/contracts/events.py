"""Delivery events observed by the HTTP surface."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

import orjson
from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Kind of client interaction."""

    CHECK = "check"
    DOWNLOAD_START = "download-start"
    DOWNLOAD_COMPLETE = "download-complete"
    DOWNLOAD_PARTIAL = "download-partial"
    RATE_LIMITED = "rate-limited"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DownloadEvent(BaseModel):
    """
    One observed client interaction.

    Attributes:
        version: Requested version (free-form client input, bucketed by the collector).
        platform: Requested platform tag (free-form client input).
        client_id: Salted hash of the client address, never the raw address.
        event_type: Kind of interaction.
        timestamp: When the event was observed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str = Field(..., description="Requested version")
    platform: str = Field(..., description="Requested platform tag")
    client_id: str = Field(..., min_length=1, description="Hashed client identity")
    event_type: EventType = Field(..., description="Kind of interaction")
    timestamp: datetime = Field(default_factory=_utcnow, description="Observation time")

    def to_json(self) -> bytes:
        """Serialize to JSON bytes using orjson."""
        return orjson.dumps(self.model_dump(mode="json"))
