"""ShiftWindowClassifier - area inference + shift window membership.

Area priority chain:
  1. explicit area tag on the event
  2. source group keyword (groupName / fleetName contains a keyword)
  3. location name prefix ("KM 22" → Hauling)
  4. device id prefix ("HD-777" → Hauling)
  5. configured default area

Shift windows are local time-of-day ranges and may wrap past midnight
(start > end). Every decision lands in a bounded debug ring buffer.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable

from services import fields

logger = logging.getLogger("fatigue.shift_window")

MINUTES_PER_DAY = 24 * 60


def parse_hhmm(text: str) -> int:
    """'22:30' → 1350. Raises ValueError on bad input."""
    hours, _, minutes = str(text).strip().partition(":")
    h, m = int(hours), int(minutes or 0)
    if not (0 <= h <= 23 and 0 <= m <= 59):
        raise ValueError(f"Invalid time of day: {text!r}")
    return h * 60 + m


def format_hhmm(minute: int) -> str:
    return f"{minute // 60:02d}:{minute % 60:02d}"


@dataclass(frozen=True)
class ShiftWindow:
    start: int  # minutes since local midnight
    end: int

    @classmethod
    def parse(cls, start: str, end: str) -> "ShiftWindow":
        return cls(parse_hhmm(start), parse_hhmm(end))

    @property
    def wraps(self) -> bool:
        return self.start > self.end

    @property
    def label(self) -> str:
        return f"{format_hhmm(self.start)}-{format_hhmm(self.end)}"

    @property
    def duration_minutes(self) -> int:
        if self.wraps:
            return MINUTES_PER_DAY - self.start + self.end
        return self.end - self.start

    def contains(self, minute: int) -> bool:
        if self.start <= self.end:
            return self.start <= minute <= self.end
        return minute >= self.start or minute <= self.end

    def current_occurrence(self, local_now: datetime) -> tuple[datetime, datetime]:
        """Start/end of the occurrence that covers or precedes ``local_now``.

        For a wrapping window observed after midnight (before ``end``),
        the occurrence started on the previous date.
        """
        midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        now_minute = local_now.hour * 60 + local_now.minute
        start = midnight + timedelta(minutes=self.start)
        if self.wraps and now_minute <= self.end:
            start -= timedelta(days=1)
        return start, start + timedelta(minutes=self.duration_minutes)


@dataclass(frozen=True)
class Classification:
    area: str
    area_reason: str
    within_shift: bool
    reason: str
    local_time: datetime
    window: ShiftWindow | None

    @property
    def minute(self) -> int:
        return self.local_time.hour * 60 + self.local_time.minute

    @property
    def shift_label(self) -> str:
        if self.window is None:
            return self.area
        return f"{self.area} {self.window.label}"


class ShiftWindowClassifier:

    def __init__(
        self,
        windows: dict[str, ShiftWindow],
        *,
        tz: tzinfo,
        default_area: str = "Mining",
        group_keywords: dict[str, list[str]] | None = None,
        location_prefixes: dict[str, list[str]] | None = None,
        device_prefixes: dict[str, list[str]] | None = None,
        debug_size: int = 200,
        clock: Callable[[], datetime] | None = None,
    ):
        self.windows = dict(windows)
        self.tz = tz
        self.default_area = default_area
        self.group_keywords = {a: [k.lower() for k in kws] for a, kws in (group_keywords or {}).items()}
        self.location_prefixes = {a: [p.lower() for p in ps] for a, ps in (location_prefixes or {}).items()}
        self.device_prefixes = {a: [p.upper() for p in ps] for a, ps in (device_prefixes or {}).items()}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._debug: deque[dict] = deque(maxlen=max(1, debug_size))
        self._debug_updated_at: datetime | None = None

    # ------------------------------------------------------------------
    def classify(self, raw: Any) -> Classification:
        area, area_reason = self.resolve_area(raw)
        local_time, time_source = self.local_time(raw)
        window = self.windows.get(area)
        minute = local_time.hour * 60 + local_time.minute

        if window is None:
            within, reason = True, "no_window"
        elif window.contains(minute):
            within, reason = True, "within_shift"
        else:
            within, reason = False, "outside_shift"

        result = Classification(
            area=area,
            area_reason=area_reason,
            within_shift=within,
            reason=reason,
            local_time=local_time,
            window=window,
        )
        self._record(raw, result, time_source)
        return result

    def resolve_area(self, raw: Any) -> tuple[str, str]:
        explicit = fields.resolve(raw, fields.AREA)
        if explicit:
            return self._canonical_area(explicit), "explicit"

        group = (fields.resolve(raw, fields.GROUP) or "").lower()
        if group:
            for area, keywords in self.group_keywords.items():
                if any(kw in group for kw in keywords):
                    return area, "group_keyword"

        location = (fields.resolve(raw, fields.LOCATION) or "").lower()
        if location:
            for area, prefixes in self.location_prefixes.items():
                if any(location.startswith(p) for p in prefixes):
                    return area, "location_prefix"

        device = (fields.resolve(raw, fields.SOURCE_ID) or "").upper()
        if device:
            for area, prefixes in self.device_prefixes.items():
                if any(device.startswith(p) for p in prefixes):
                    return area, "device_prefix"

        return self.default_area, "default"

    def local_time(self, raw: Any) -> tuple[datetime, str]:
        """Best-available event time in the configured zone.

        An explicit local-clock field wins over server/UTC fields; naive
        local values are read in the configured zone, naive server values
        as UTC.
        """
        candidates = (
            (fields.resolve_time(raw, fields.LOCAL_TIME, self.tz), "local"),
            (fields.resolve_time(raw, fields.SERVER_TIME, timezone.utc), "server"),
        )
        for value, source in candidates:
            if value is None:
                continue
            try:
                return value.astimezone(self.tz), source
            except (OverflowError, ValueError):
                logger.debug("Unconvertible %s time %r ignored", source, value)
        return self._clock().astimezone(self.tz), "received"

    def query_range(self, now: datetime | None = None) -> tuple[datetime, datetime]:
        """Union of every window's current occurrence, in local time."""
        local_now = (now or self._clock()).astimezone(self.tz)
        if not self.windows:
            midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
            return midnight, midnight + timedelta(days=1)
        spans = [w.current_occurrence(local_now) for w in self.windows.values()]
        return min(s for s, _ in spans), max(e for _, e in spans)

    def debug_snapshot(self) -> dict:
        entries = list(self._debug)
        return {
            "updatedAt": self._debug_updated_at.isoformat() if self._debug_updated_at else None,
            "size": len(entries),
            "kept": sum(1 for e in entries if e["kept"]),
            "dropped": sum(1 for e in entries if not e["kept"]),
            "entries": entries,
        }

    # ------------------------------------------------------------------
    def _canonical_area(self, value: str) -> str:
        lowered = value.strip().lower()
        for area in self.windows:
            if area.lower() == lowered:
                return area
        return value.strip()

    def _record(self, raw: Any, result: Classification, time_source: str) -> None:
        now = self._clock()
        self._debug.append({
            "at": now.isoformat(),
            "sourceId": fields.resolve(raw, fields.SOURCE_ID),
            "area": result.area,
            "areaReason": result.area_reason,
            "localTime": result.local_time.strftime("%H:%M:%S"),
            "timeSource": time_source,
            "window": result.window.label if result.window else None,
            "kept": result.within_shift,
            "reason": result.reason,
        })
        self._debug_updated_at = now
        if not result.within_shift:
            logger.debug(
                "Dropped from shift stats: area=%s time=%s window=%s",
                result.area, result.local_time.strftime("%H:%M"),
                result.window.label if result.window else "-",
            )


def parse_window_map(spec: str) -> dict[str, ShiftWindow]:
    """'Mining=06:00-18:00;Hauling=18:00-06:00' → {area: ShiftWindow}."""
    windows: dict[str, ShiftWindow] = {}
    for area, value in parse_area_map(spec).items():
        if len(value) != 1 or "-" not in value[0]:
            raise ValueError(f"Invalid shift window for {area!r}: {value!r}")
        start, _, end = value[0].partition("-")
        windows[area] = ShiftWindow.parse(start, end)
    return windows


def parse_area_map(spec: str) -> dict[str, list[str]]:
    """'Hauling=HD,WT;Mining=DT' → {'Hauling': ['HD', 'WT'], 'Mining': ['DT']}."""
    result: dict[str, list[str]] = {}
    for chunk in (spec or "").split(";"):
        if not chunk.strip():
            continue
        area, sep, values = chunk.partition("=")
        if not sep or not area.strip():
            raise ValueError(f"Invalid area mapping: {chunk!r}")
        result[area.strip()] = [v.strip() for v in values.split(",") if v.strip()]
    return result
