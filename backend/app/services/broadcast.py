"""BroadcastCoalescer - shared recompute + fan-out for streaming subscribers.

- one interval timer for all subscribers, running only while at least one
  subscriber is registered (restarted lazily on the next subscribe)
- a trigger that arrives while a recompute is in flight awaits that same
  recompute instead of starting another one
- subscribers whose send fails are dropped during fan-out
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

logger = logging.getLogger("fatigue.broadcast")


class Subscriber(Protocol):
    async def send(self, message: dict[str, Any]) -> None: ...


class BroadcastCoalescer:

    def __init__(
        self,
        compute: Callable[[], Awaitable[dict[str, Any]]],
        *,
        interval: float = 2.0,
    ):
        self.compute = compute
        self.interval = interval
        self.last_payload: dict[str, Any] | None = None
        self.computations = 0
        self._subscribers: list[Subscriber] = []
        self._inflight: asyncio.Task | None = None
        self._timer: asyncio.Task | None = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def timer_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def status(self) -> dict[str, Any]:
        return {
            "subscribers": len(self._subscribers),
            "timerRunning": self.timer_running,
            "inFlight": self._inflight is not None and not self._inflight.done(),
            "computations": self.computations,
        }

    async def subscribe(self, subscriber: Subscriber) -> None:
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)
        logger.info("Dashboard subscriber added (%d total)", len(self._subscribers))

        if self.last_payload is not None:
            await self._deliver([subscriber], {"type": "dashboard", "data": self.last_payload})
        else:
            await self.broadcast()
        self._ensure_timer()

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)
        logger.info("Dashboard subscriber removed (%d remaining)", len(self._subscribers))
        if not self._subscribers:
            self._stop_timer()

    def invalidate(self) -> None:
        """Forget the cached payload (e.g. after a mode switch)."""
        self.last_payload = None

    async def broadcast(self) -> dict[str, Any] | None:
        """Recompute and fan out; concurrent callers share one recompute."""
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._recompute(), name="dashboard_broadcast")
        return await asyncio.shield(self._inflight)

    async def close(self) -> None:
        self._stop_timer()
        task, self._inflight = self._inflight, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._subscribers.clear()

    # ------------------------------------------------------------------

    async def _recompute(self) -> dict[str, Any] | None:
        self.computations += 1
        try:
            payload = await self.compute()
        except Exception as exc:
            logger.error("Dashboard recompute failed: %s", exc)
            await self._deliver(list(self._subscribers), {"type": "server-error", "message": str(exc)})
            return None

        self.last_payload = payload
        await self._deliver(list(self._subscribers), {"type": "dashboard", "data": payload})
        return payload

    async def _deliver(self, targets: list[Subscriber], message: dict[str, Any]) -> None:
        dead: list[Subscriber] = []
        for subscriber in targets:
            try:
                await subscriber.send(message)
            except Exception:
                dead.append(subscriber)
        for subscriber in dead:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)
        if dead:
            logger.debug("Removed %d dead dashboard subscribers", len(dead))
            if not self._subscribers:
                self._stop_timer()

    def _ensure_timer(self) -> None:
        if self._subscribers and not self.timer_running:
            self._timer = asyncio.create_task(self._tick(), name="dashboard_timer")

    def _stop_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _tick(self) -> None:
        me = asyncio.current_task()
        while self._subscribers and self._timer is me:
            await asyncio.sleep(self.interval)
            if not self._subscribers or self._timer is not me:
                break
            await self.broadcast()
        if self._timer is me:
            self._timer = None
