"""Mock event source - synthesizes fatigue events for the configured units.

Payloads use the same vendor field names the live integrator sends, so
they go through the exact same classifier/normalizer path.
"""

from __future__ import annotations

import random
from datetime import datetime, timezone, tzinfo
from typing import Callable

MOCK_OPERATORS = ["Budi S.", "Dedi S.", "Rian J.", "Doni K.", "Yanto", "Agus R."]
MOCK_LOCATIONS = {
    "Mining": ["Manado - Front A", "Manado - Front B", "Pit Utara"],
    "Hauling": ["KM 10", "KM 22", "KM 45", "KM 55"],
}
MOCK_FATIGUE_TYPES = ["Fatigue", "Yawning", "Eyes Closed", "Distraction", "Phone Usage"]

HAULING_PREFIXES = ("HD", "WT")


class MockEventSource:
    """Generates one plausible event per unit per call."""

    def __init__(
        self,
        tz: tzinfo,
        *,
        offline_ratio: float = 0.05,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.tz = tz
        self.offline_ratio = offline_ratio
        self._rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def events(self, sensor_ids: list[str]) -> list[dict]:
        return [self._event(sid) for sid in sensor_ids]

    def devices(self, sensor_ids: list[str]) -> list[dict]:
        return [
            {"deviceNo": sid, "online": self._rng.random() >= self.offline_ratio}
            for sid in sensor_ids
        ]

    # ------------------------------------------------------------------

    def _event(self, sensor_id: str) -> dict:
        rng = self._rng
        area = "Hauling" if sensor_id.upper().startswith(HAULING_PREFIXES) else "Mining"
        now_local = self._clock().astimezone(self.tz)
        return {
            "deviceNo": sensor_id,
            "status": "offline" if rng.random() < self.offline_ratio else "online",
            "value": round(rng.uniform(0, 100), 2),
            "alarmTime": now_local.strftime("%Y-%m-%d %H:%M:%S"),
            "area": area,
            "location": rng.choice(MOCK_LOCATIONS[area]),
            "driverName": rng.choice(MOCK_OPERATORS),
            "alarmType": rng.choice(MOCK_FATIGUE_TYPES),
            "speed": f"{rng.randint(10, 49)} km/h",
            "count": rng.randint(1, 3),
            "lat": round(1.47 + rng.uniform(-0.05, 0.05), 6),
            "lng": round(124.84 + rng.uniform(-0.05, 0.05), 6),
        }
