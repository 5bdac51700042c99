"""Canonical Reading record shared by caches, derivation and persistence."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

ORIGIN_LIVE = "live"
ORIGIN_MOCK = "mock"


@dataclass
class Reading:
    sensor_id: str
    status: str = "unknown"
    value: float | None = None
    timestamp: datetime | None = None
    received_at: datetime | None = None
    origin: str = ORIGIN_LIVE
    meta: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None
    # Untouched upstream payload, kept only until the audit table gets it
    raw: dict[str, Any] | None = field(default=None, repr=False, compare=False)

    @property
    def key(self) -> str:
        return event_key(self)

    def copy(self) -> "Reading":
        return replace(self, meta=dict(self.meta))

    def to_dict(self) -> dict[str, Any]:
        return {
            "sensorId": self.sensor_id,
            "status": self.status,
            "value": self.value,
            "timestamp": _iso(self.timestamp),
            "receivedAt": _iso(self.received_at),
            "source": self.origin,
            "meta": dict(self.meta),
            "updatedAt": _iso(self.updated_at),
        }


def event_key(reading: Reading) -> str:
    """Identity id when upstream sent one, else ``sensorId|timestamp``."""
    meta = reading.meta or {}
    explicit = meta.get("id") or meta.get("identity")
    if explicit:
        return str(explicit)
    ts = reading.timestamp or reading.received_at
    return f"{reading.sensor_id or 'unknown'}|{_iso(ts) or ''}"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
