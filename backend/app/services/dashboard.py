"""DashboardService - read side over the caches + runtime mode control.

Reads never raise on upstream trouble: they return whatever the caches
hold, with the last poll error surfaced in ``meta``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.cache import DeviceHealthCache, EventCache, PendingRawBuffer, SensorCache
from core.state import RuntimeState
from models.sensor_reading import SensorReading
from services.alert_deriver import AlertDeriver
from services.readings import Reading

logger = logging.getLogger("fatigue.dashboard")


class DashboardService:

    def __init__(
        self,
        *,
        state: RuntimeState,
        sensor_cache: SensorCache,
        event_cache: EventCache,
        raw_buffer: PendingRawBuffer,
        device_cache: DeviceHealthCache,
        deriver: AlertDeriver,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        history_lookback_minutes: int = 60,
        history_limit: int = 200,
        clock: Callable[[], datetime] | None = None,
    ):
        self.state = state
        self.sensor_cache = sensor_cache
        self.event_cache = event_cache
        self.raw_buffer = raw_buffer
        self.device_cache = device_cache
        self.deriver = deriver
        self.session_factory = session_factory
        self.history_lookback_minutes = history_lookback_minutes
        self.history_limit = history_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # Optional collaborators, attached after construction in main.py
        self.poller = None
        self.device_poller = None
        self.writer = None
        self.coalescer = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def alert_source(self) -> list[Reading]:
        if self.state.mode == "live":
            return self.event_cache.get_all()
        return self.sensor_cache.get_all()

    async def get_overview(self) -> dict[str, Any]:
        now = self._clock()
        derived = self.deriver.derive(self.alert_source(), now=now, mock=self.state.mode == "mock")
        return {
            "meta": self._meta(now),
            "deviceHealth": self.device_cache.get(),
            "sensors": [r.to_dict() for r in self.sensor_cache.get_all()],
            **derived,
        }

    async def get_sensor_detail(self, sensor_id: str) -> dict[str, Any] | None:
        """None when the sensor is neither cached nor has persisted history."""
        now = self._clock()
        sensor = self.sensor_cache.get(sensor_id)
        history = await self.get_history(sensor_id, now)
        if sensor is None and not history:
            return None

        alerts = self.deriver.derive_alerts(self.alert_source(), mock=self.state.mode == "mock")
        alert = next((a for a in alerts if a.sensor_id == sensor_id), None)
        return {
            "meta": self._meta(now),
            "sensor": sensor.to_dict() if sensor else None,
            "alert": alert.to_dict() if alert else None,
            "history": history,
        }

    async def get_history(self, sensor_id: str, now: datetime) -> list[dict[str, Any]]:
        if self.session_factory is None:
            return []
        since = (now - timedelta(minutes=self.history_lookback_minutes)).astimezone(timezone.utc).replace(tzinfo=None)
        stmt = (
            select(SensorReading)
            .where(SensorReading.sensor_id == sensor_id, SensorReading.recorded_at >= since)
            .order_by(SensorReading.recorded_at.desc())
            .limit(self.history_limit)
        )
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            logger.warning("History query for %s failed: %s", sensor_id, exc)
            return []
        return [
            {
                "timestamp": row.recorded_at.replace(tzinfo=timezone.utc).isoformat(),
                "status": row.status,
                "value": row.value,
                "source": row.source,
            }
            for row in rows
        ]

    def _meta(self, now: datetime) -> dict[str, Any]:
        poll = self.poller.status if self.poller is not None else {}
        last = self.sensor_cache.last_updated_at
        return {
            "mode": self.state.mode,
            "generatedAt": now.isoformat(),
            "timezone": str(self.deriver.tz),
            "lastUpdatedAt": last.isoformat() if last else None,
            "sensorCount": len(self.sensor_cache),
            "eventCount": len(self.event_cache),
            "lastPollAt": poll.get("lastSuccessAt"),
            "lastErrorAt": poll.get("lastErrorAt"),
            "lastErrorMessage": poll.get("lastErrorMessage"),
        }

    # ------------------------------------------------------------------
    # Mode / status
    # ------------------------------------------------------------------

    def set_mode(self, mode: str) -> str:
        """Switch mock/live; caches are emptied so provenance never mixes.

        Raises ValueError on an unknown mode (nothing changes).
        """
        previous = self.state.mode
        normalized = self.state.switch(mode)
        self.sensor_cache.clear()
        self.event_cache.clear()
        self.raw_buffer.clear()
        self.device_cache.clear()
        if self.coalescer is not None:
            self.coalescer.invalidate()
        logger.info("Mode %s → %s, caches cleared", previous, normalized)
        return normalized

    def status(self) -> dict[str, Any]:
        return {
            "mode": self.state.mode,
            "generation": self.state.generation,
            "polling": self.poller.status if self.poller is not None else None,
            "devicePolling": self.device_poller.status if self.device_poller is not None else None,
            "persistence": self.writer.health if self.writer is not None else None,
            "broadcast": self.coalescer.status if self.coalescer is not None else None,
            "caches": {
                "sensors": len(self.sensor_cache),
                "events": len(self.event_cache),
                "pendingRaw": len(self.raw_buffer),
            },
        }
