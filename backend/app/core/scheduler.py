"""IntervalJob - fixed-interval background loop with a single-flight guard.

``run_if_idle()`` is the only way a pass runs: a trigger that arrives
while a pass is in progress returns False immediately (not queued).
Exceptions from a pass are logged and recorded in ``status``; the loop
keeps going.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable


@dataclass
class JobStatus:
    running: bool = False
    in_flight: bool = False
    runs: int = 0
    skipped: int = 0
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error_message: str | None = None
    last_duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("last_success_at", "last_error_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return {
            "running": data["running"],
            "inFlight": data["in_flight"],
            "runs": data["runs"],
            "skipped": data["skipped"],
            "lastSuccessAt": data["last_success_at"],
            "lastErrorAt": data["last_error_at"],
            "lastErrorMessage": data["last_error_message"],
            "lastDurationMs": data["last_duration_ms"],
        }


class IntervalJob:

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval: float,
        *,
        logger: logging.Logger | None = None,
    ):
        self.name = name
        self.func = func
        self.interval = interval
        self.logger = logger or logging.getLogger(f"fatigue.job.{name}")
        self.status = JobStatus()
        self._task: asyncio.Task | None = None
        self._stopped = asyncio.Event()

    @property
    def running(self) -> bool:
        return self.status.running

    async def start(self) -> None:
        """Run until stop(); intended to be wrapped in asyncio.create_task()."""
        self.status.running = True
        self._stopped.clear()
        self.logger.info("%s started (every %.1fs)", self.name, self.interval)
        while self.status.running:
            await self.run_if_idle()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def spawn(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.start(), name=f"job_{self.name}")
        return self._task

    async def stop(self) -> None:
        self.status.running = False
        self._stopped.set()
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.logger.info("%s stopped", self.name)

    async def run_if_idle(self) -> bool:
        if self.status.in_flight:
            self.status.skipped += 1
            self.logger.debug("%s still in flight, trigger ignored", self.name)
            return False

        self.status.in_flight = True
        started = time.monotonic()
        try:
            await self.func()
            self.status.last_success_at = datetime.now(timezone.utc)
            self.status.last_error_at = None
            self.status.last_error_message = None
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.status.last_error_at = datetime.now(timezone.utc)
            self.status.last_error_message = str(exc) or exc.__class__.__name__
            self.logger.error("%s pass failed: %s", self.name, self.status.last_error_message)
        finally:
            self.status.in_flight = False
            self.status.runs += 1
            self.status.last_duration_ms = int((time.monotonic() - started) * 1000)
        return True
