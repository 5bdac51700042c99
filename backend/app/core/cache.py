"""In-process state caches.

All mutations are synchronous (no await inside), so under the asyncio
event loop a reader sees either the previous state or the complete new
one. Getters return copies; callers cannot mutate cached entries.
"""
from __future__ import annotations

import logging
from collections import OrderedDict, deque
from datetime import datetime, timezone
from typing import Any, Iterable

from services.readings import Reading, event_key

logger = logging.getLogger("fatigue.cache")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SensorCache:
    """Latest Reading per source id. No TTL; cleared on restart or mode switch."""

    def __init__(self) -> None:
        self._store: dict[str, Reading] = {}
        self.last_updated_at: datetime | None = None

    def upsert(self, reading: Reading) -> bool:
        if reading is None or not reading.sensor_id:
            return False

        existing = self._store.get(reading.sensor_id)
        if (
            existing is not None
            and reading.timestamp is not None
            and existing.timestamp is not None
            and reading.timestamp < existing.timestamp
        ):
            return False

        updated_at = _now()
        prev = existing or Reading(sensor_id=reading.sensor_id, origin="cache")
        meta = dict(prev.meta)
        meta.update({k: v for k, v in (reading.meta or {}).items() if v is not None})

        self._store[reading.sensor_id] = Reading(
            sensor_id=reading.sensor_id,
            status=_pick(reading.status, prev.status, "unknown"),
            value=reading.value if reading.value is not None else prev.value,
            timestamp=reading.timestamp or prev.timestamp or updated_at,
            received_at=reading.received_at or prev.received_at or updated_at,
            origin=reading.origin or prev.origin,
            meta=meta,
            updated_at=updated_at,
            raw=reading.raw,
        )
        self.last_updated_at = updated_at
        return True

    def get(self, sensor_id: str) -> Reading | None:
        entry = self._store.get(sensor_id)
        return entry.copy() if entry else None

    def get_all(self) -> list[Reading]:
        return [r.copy() for r in self._store.values()]

    def get_snapshot(self) -> dict[str, Any]:
        return {
            "lastUpdatedAt": self.last_updated_at.isoformat() if self.last_updated_at else None,
            "count": len(self._store),
            "sensors": [r.to_dict() for r in self._store.values()],
        }

    def clear(self) -> None:
        self._store = {}
        self.last_updated_at = None

    def __len__(self) -> int:
        return len(self._store)


def _pick(new: str | None, old: str | None, default: str) -> str:
    if new and new != "unknown":
        return new
    return old or new or default


class EventCache:
    """Rolling deduplicated event set, newest first, bounded."""

    def __init__(self, capacity: int = 1000) -> None:
        self.capacity = capacity
        self._events: tuple[Reading, ...] = ()
        self.last_updated_at: datetime | None = None

    def replace(self, readings: Iterable[Reading]) -> int:
        unique: dict[str, Reading] = {}
        for reading in readings or ():
            if reading is None:
                continue
            key = event_key(reading)
            if key in unique:
                continue
            unique[key] = reading.copy()

        ordered = sorted(
            unique.values(),
            key=lambda r: r.timestamp or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )
        if len(ordered) > self.capacity:
            logger.debug("EventCache evicted %d oldest events", len(ordered) - self.capacity)
            ordered = ordered[: self.capacity]

        self._events = tuple(ordered)
        self.last_updated_at = _now()
        return len(self._events)

    def get_all(self) -> list[Reading]:
        return [r.copy() for r in self._events]

    def get_snapshot(self) -> dict[str, Any]:
        return {
            "lastUpdatedAt": self.last_updated_at.isoformat() if self.last_updated_at else None,
            "count": len(self._events),
            "events": [r.to_dict() for r in self._events],
        }

    def clear(self) -> None:
        self._events = ()
        self.last_updated_at = None

    def __len__(self) -> int:
        return len(self._events)


class DeviceHealthCache:

    def __init__(self) -> None:
        self._snapshot: dict[str, Any] | None = None

    def set(self, snapshot: dict[str, Any]) -> None:
        self._snapshot = snapshot

    def get(self) -> dict[str, Any] | None:
        return dict(self._snapshot) if self._snapshot is not None else None

    def clear(self) -> None:
        self._snapshot = None


class BoundedKeySet:
    """Insertion-ordered key set; the oldest key is evicted past capacity."""

    def __init__(self, capacity: int = 10000) -> None:
        self.capacity = max(1, capacity)
        self._keys: OrderedDict[str, None] = OrderedDict()

    def add(self, key: str) -> None:
        if key in self._keys:
            return
        self._keys[key] = None
        while len(self._keys) > self.capacity:
            self._keys.popitem(last=False)

    def add_many(self, keys: Iterable[str]) -> None:
        for key in keys:
            self.add(key)

    def clear(self) -> None:
        self._keys.clear()

    def keys(self) -> list[str]:
        return list(self._keys)

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)


class PendingRawBuffer:
    """Raw upstream payloads waiting for the audit table."""

    def __init__(self, capacity: int = 5000) -> None:
        self._items: deque[dict] = deque(maxlen=max(1, capacity))

    def extend(self, payloads: Iterable[dict]) -> None:
        for payload in payloads:
            if payload:
                self._items.append(payload)

    def drain(self) -> list[dict]:
        items = list(self._items)
        self._items.clear()
        return items

    def requeue(self, payloads: list[dict]) -> None:
        self._items.extendleft(reversed(payloads))

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)
