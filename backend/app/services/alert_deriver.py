"""AlertDeriver - cached Readings → Alerts + operational aggregates.

Pure: every call works on the readings passed in and returns new
objects; nothing is remembered between derivations.

Status resolution, first match wins:
  1. explicit normalized alert status on the reading (meta.alertStatus)
  2. device offline            → Open
  3. value over threshold      → Open
  4. otherwise                 → Followed Up
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Iterable

from services.normalizer import FOLLOWED_UP, OPEN
from services.readings import Reading, event_key

logger = logging.getLogger("fatigue.alert_deriver")


@dataclass(frozen=True)
class Alert:
    id: str
    sensor_id: str
    unit: str
    operator: str | None
    type: str
    area: str
    location: str
    status: str
    timestamp: datetime
    opened_at: datetime  # local clock
    value: float | None = None
    within_shift: bool = True
    count: int = 1
    origin: str = "live"
    auto_resolved: bool = False
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_open(self) -> bool:
        return self.status == OPEN

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sensorId": self.sensor_id,
            "unit": self.unit,
            "operator": self.operator,
            "type": self.type,
            "fatigue": self.type,
            "area": self.area,
            "location": self.location,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "openedAt": self.opened_at.isoformat(),
            "date": self.opened_at.strftime("%Y-%m-%d"),
            "time": self.opened_at.strftime("%H:%M:%S"),
            "value": self.value,
            "withinShift": self.within_shift,
            "count": self.count,
            "source": self.origin,
            "autoResolved": self.auto_resolved,
            **self.extra,
        }


class AlertDeriver:

    def __init__(
        self,
        *,
        tz: tzinfo,
        threshold: float = 75.0,
        overdue_minutes: int = 30,
        default_area: str = "Mining",
        default_location: str = "Unknown",
        areas: Iterable[str] = ("Mining", "Hauling"),
        cap_enabled: bool = True,
        cap_limit: int = 3,
        shift_filter: bool = True,
    ):
        self.tz = tz
        self.threshold = threshold
        self.overdue_minutes = overdue_minutes
        self.default_area = default_area
        self.default_location = default_location
        self.areas = list(areas)
        self.cap_enabled = cap_enabled
        self.cap_limit = cap_limit
        self.shift_filter = shift_filter

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def derive_alerts(self, readings: Iterable[Reading], *, mock: bool = False) -> list[Alert]:
        alerts = [self.to_alert(r) for r in readings if r is not None]
        alerts.sort(key=lambda a: a.timestamp, reverse=True)
        if mock and self.cap_enabled:
            alerts = self.apply_open_cap(alerts, self.cap_limit)
        return alerts

    def to_alert(self, reading: Reading) -> Alert:
        meta = reading.meta or {}
        ts = reading.timestamp or reading.received_at or datetime.now(timezone.utc)
        return Alert(
            id=event_key(reading),
            sensor_id=reading.sensor_id,
            unit=meta.get("unit") or reading.sensor_id,
            operator=meta.get("operator"),
            type=meta.get("type") or "Fatigue",
            area=meta.get("area") or self.default_area,
            location=meta.get("location") or self.default_location,
            status=self.resolve_status(reading),
            timestamp=ts,
            opened_at=ts.astimezone(self.tz),
            value=reading.value,
            within_shift=meta.get("withinShift", True) is not False,
            count=_as_count(meta.get("count")),
            origin=reading.origin,
            extra={
                "photoUrl": meta.get("photoUrl"),
                "latitude": meta.get("latitude"),
                "longitude": meta.get("longitude"),
                "speed": meta.get("speed"),
                "groupName": meta.get("groupName"),
                "deviceStatus": reading.status,
            },
        )

    def resolve_status(self, reading: Reading) -> str:
        explicit = (reading.meta or {}).get("alertStatus")
        if explicit in (OPEN, FOLLOWED_UP):
            return explicit
        if (reading.status or "").lower() == "offline":
            return OPEN
        if reading.value is not None and reading.value > self.threshold:
            return OPEN
        return FOLLOWED_UP

    @staticmethod
    def apply_open_cap(alerts: list[Alert], limit: int) -> list[Alert]:
        """Force-resolve the oldest Open alerts beyond ``limit``."""
        open_alerts = [a for a in alerts if a.is_open]
        excess = len(open_alerts) - max(0, limit)
        if excess <= 0:
            return list(alerts)
        oldest = sorted(open_alerts, key=lambda a: a.timestamp)[:excess]
        resolve_ids = {id(a) for a in oldest}
        return [
            replace(a, status=FOLLOWED_UP, auto_resolved=True) if id(a) in resolve_ids else a
            for a in alerts
        ]

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def _counted(self, alerts: Iterable[Alert]) -> list[Alert]:
        if not self.shift_filter:
            return list(alerts)
        return [a for a in alerts if a.within_shift]

    def area_summary(self, alerts: Iterable[Alert]) -> dict[str, dict[str, int]]:
        summary = {area: {"total": 0, "open": 0, "resolved": 0} for area in self.areas}
        for alert in self._counted(alerts):
            bucket = summary.setdefault(alert.area, {"total": 0, "open": 0, "resolved": 0})
            bucket["total"] += 1
            if alert.status == OPEN:
                bucket["open"] += 1
            elif alert.status == FOLLOWED_UP:
                bucket["resolved"] += 1
        return summary

    def location_stats(self, alerts: Iterable[Alert]) -> dict[str, dict[str, int]]:
        stats: dict[str, dict[str, int]] = {area: {} for area in self.areas}
        for alert in self._counted(alerts):
            if not alert.is_open:
                continue
            area_stats = stats.setdefault(alert.area, {})
            area_stats[alert.location] = area_stats.get(alert.location, 0) + 1
        return stats

    def high_risk_operators(self, alerts: Iterable[Alert]) -> list[dict[str, Any]]:
        groups: dict[str, dict[str, Any]] = {}
        for alert in self._counted(alerts):
            name = alert.operator or alert.unit or "Unknown Driver"
            entry = groups.setdefault(name, {
                "name": name, "unit": alert.unit, "area": alert.area,
                "events": 0, "open": 0, "lastSeenAt": alert.timestamp,
            })
            entry["events"] += alert.count
            entry["open"] += 1 if alert.is_open else 0
            if alert.timestamp >= entry["lastSeenAt"]:
                entry.update(unit=alert.unit, area=alert.area, lastSeenAt=alert.timestamp)

        ranked = [g for g in groups.values() if g["events"] > 1]
        ranked.sort(key=lambda g: (g["events"], g["lastSeenAt"]), reverse=True)
        return [{**g, "lastSeenAt": g["lastSeenAt"].isoformat()} for g in ranked]

    def high_risk_zones(self, alerts: Iterable[Alert]) -> list[dict[str, Any]]:
        zones: dict[str, dict[str, Any]] = {}
        for alert in self._counted(alerts):
            if not alert.is_open:
                continue
            zone = zones.setdefault(alert.location, {
                "location": alert.location, "area": alert.area,
                "count": 0, "lastSeenAt": alert.timestamp,
            })
            zone["count"] += alert.count
            zone["lastSeenAt"] = max(zone["lastSeenAt"], alert.timestamp)

        ranked = sorted(zones.values(), key=lambda z: (z["count"], z["lastSeenAt"]), reverse=True)
        return [{**z, "lastSeenAt": z["lastSeenAt"].isoformat()} for z in ranked]

    def open_minutes(self, alert: Alert, now: datetime) -> float:
        """Minutes since the alert's local open time, placed on now's date.

        Clock skew (open time later than now) clamps to zero.
        """
        local_now = now.astimezone(self.tz)
        opened = local_now.replace(
            hour=alert.opened_at.hour,
            minute=alert.opened_at.minute,
            second=alert.opened_at.second,
            microsecond=0,
        )
        return max(0.0, (local_now - opened) / timedelta(minutes=1))

    def overdue_alerts(self, alerts: Iterable[Alert], now: datetime) -> list[dict[str, Any]]:
        overdue = []
        for alert in self._counted(alerts):
            if not alert.is_open:
                continue
            minutes = self.open_minutes(alert, now)
            if minutes > self.overdue_minutes:
                overdue.append((minutes, alert))
        overdue.sort(key=lambda item: (-item[0], item[1].timestamp))
        return [{**a.to_dict(), "openMinutes": round(m, 1)} for m, a in overdue]

    def stats(self, alerts: list[Alert]) -> dict[str, Any]:
        counted = self._counted(alerts)
        total = len(counted)
        open_count = sum(1 for a in counted if a.is_open)
        followed = sum(1 for a in counted if a.status == FOLLOWED_UP)
        return {
            "total": total,
            "open": open_count,
            "followedUp": followed,
            "waitingPercent": round(open_count / total * 100, 1) if total else 0.0,
            "withinShift": sum(1 for a in alerts if a.within_shift),
            "outsideShift": sum(1 for a in alerts if not a.within_shift),
            "autoResolved": sum(1 for a in alerts if a.auto_resolved),
        }

    def derive(self, readings: Iterable[Reading], *, now: datetime, mock: bool = False) -> dict[str, Any]:
        alerts = self.derive_alerts(readings, mock=mock)
        return {
            "alerts": [a.to_dict() for a in alerts],
            "stats": self.stats(alerts),
            "areaSummary": self.area_summary(alerts),
            "locationStats": self.location_stats(alerts),
            "highRiskOperators": self.high_risk_operators(alerts),
            "highRiskZones": self.high_risk_zones(alerts),
            "overdueAlerts": self.overdue_alerts(alerts, now),
        }


def _as_count(value: Any) -> int:
    try:
        count = int(value)
    except (TypeError, ValueError):
        return 1
    return count if count > 0 else 1
