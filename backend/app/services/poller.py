"""Ingestion pollers.

PollingScheduler    - UpstreamClient → (classifier, normalizer) → caches
DeviceHealthPoller  - device inventory → DeviceHealthCache

Both run on IntervalJob: fixed interval, single-flight, failures are
recorded in the job status and never stop the loop.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from core.cache import DeviceHealthCache, EventCache, PendingRawBuffer, SensorCache
from core.scheduler import IntervalJob
from core.state import RuntimeState
from services import fields
from services.upstream.client import UpstreamClient

logger = logging.getLogger("fatigue.poller")


class PollingScheduler:

    def __init__(
        self,
        client: UpstreamClient,
        state: RuntimeState,
        sensor_cache: SensorCache,
        event_cache: EventCache,
        raw_buffer: PendingRawBuffer,
        *,
        interval: float = 1.0,
    ):
        self.client = client
        self.state = state
        self.sensor_cache = sensor_cache
        self.event_cache = event_cache
        self.raw_buffer = raw_buffer
        self.job = IntervalJob("realtime_poll", self.poll_once, interval, logger=logger)
        self.last_count = 0
        self.discarded = 0

    async def start(self) -> None:
        await self.job.start()

    async def stop(self) -> None:
        await self.job.stop()

    async def trigger(self) -> bool:
        """Run one pass now unless one is already in flight."""
        return await self.job.run_if_idle()

    @property
    def status(self) -> dict[str, Any]:
        data = self.job.status.to_dict()
        data["lastCount"] = self.last_count
        data["discarded"] = self.discarded
        return data

    async def poll_once(self) -> None:
        mode = self.state.mode
        generation = self.state.generation

        readings = await self.client.fetch_batch()

        if self.state.generation != generation:
            self.discarded += 1
            logger.info("Mode switched during poll, %d readings discarded", len(readings))
            return

        for reading in readings:
            self.sensor_cache.upsert(reading)
        if mode == "live":
            self.event_cache.replace(readings)
            self.raw_buffer.extend(r.raw for r in readings if r.raw)

        self.last_count = len(readings)
        logger.debug("Poll pass (%s): %d readings", mode, len(readings))


class DeviceHealthPoller:

    def __init__(
        self,
        client: UpstreamClient,
        state: RuntimeState,
        cache: DeviceHealthCache,
        *,
        interval: float = 30.0,
    ):
        self.client = client
        self.state = state
        self.cache = cache
        self.job = IntervalJob("device_poll", self.poll_once, interval, logger=logger)

    async def start(self) -> None:
        await self.job.start()

    async def stop(self) -> None:
        await self.job.stop()

    @property
    def status(self) -> dict[str, Any]:
        return self.job.status.to_dict()

    async def poll_once(self) -> None:
        generation = self.state.generation
        devices = await self.client.fetch_devices()
        if self.state.generation != generation:
            return
        self.cache.set(summarize_devices(devices))


def summarize_devices(devices: list[dict]) -> dict[str, Any]:
    rows = []
    for device in devices:
        online = fields.resolve(device, fields.ONLINE)
        rows.append({
            "id": fields.resolve(device, fields.SOURCE_ID) or fields.resolve(device, fields.EVENT_ID),
            "online": bool(online),
        })
    online_count = sum(1 for r in rows if r["online"])
    return {
        "total": len(rows),
        "online": online_count,
        "offline": len(rows) - online_count,
        "devices": rows,
        "updatedAt": datetime.now(timezone.utc).isoformat(),
    }
