"""Field resolution rules for upstream fatigue payloads.

The integrator (and older firmware on the same fleet) reports the same
concept under different keys and casings: ``deviceId``, ``device_id``,
``DEVICE_NO``, ``imei``... Every concept the pipeline needs is declared
once here as an ordered ``FieldRule``; ``resolve()`` walks the candidate
paths and returns the first non-empty value.

Key matching ignores case, underscores and dashes, so ``alarmTime``,
``alarm_time`` and ``ALARM-TIME`` are the same key.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable

logger = logging.getLogger("fatigue.fields")


def _fold(key: str) -> str:
    return re.sub(r"[_\-\s]", "", str(key)).lower()


@dataclass(frozen=True)
class FieldRule:
    """Ordered candidate paths for one concept.

    A path is dotted for nested objects (``"device.no"``).
    """
    name: str
    paths: tuple[str, ...]
    coerce: Callable[[Any], Any] | None = None

    def resolve(self, payload: Any) -> Any:
        if not isinstance(payload, dict):
            return None
        for path in self.paths:
            value = _lookup(payload, path)
            if _is_empty(value):
                continue
            if self.coerce is None:
                return value
            coerced = self.coerce(value)
            if coerced is not None:
                return coerced
        return None


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _lookup(payload: dict, path: str) -> Any:
    node: Any = payload
    for part in path.split("."):
        if isinstance(node, list) and part.isdigit():
            index = int(part)
            node = node[index] if index < len(node) else None
            continue
        if not isinstance(node, dict):
            return None
        if part in node:
            node = node[part]
            continue
        folded = _fold(part)
        for key, value in node.items():
            if _fold(key) == folded:
                node = value
                break
        else:
            return None
    return node


# ---------------------------------------------------------------------------
# Coercions (total: bad input → None)
# ---------------------------------------------------------------------------

def as_text(value: Any) -> str | None:
    if isinstance(value, (dict, list, tuple, set)):
        return None
    text = str(value).strip()
    return text or None


def as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if result != result or result in (float("inf"), float("-inf")):
        return None
    return result


def as_int(value: Any) -> int | None:
    f = as_float(value)
    return int(f) if f is not None else None


_TS_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%d-%m-%Y %H:%M:%S",
)

# Outside this range zone conversion can overflow datetime bounds.
_MIN_YEAR, _MAX_YEAR = 1900, 2200


def parse_timestamp(value: Any, assume_tz: tzinfo = timezone.utc) -> datetime | None:
    """Parse ISO strings, common vendor formats and epoch seconds/millis.

    Naive values are interpreted in ``assume_tz``. The result is always
    timezone-aware; ``None`` when the value cannot be understood.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = _from_epoch(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        if re.fullmatch(r"\d{9,13}(\.\d+)?", text):
            dt = _from_epoch(float(text))
        else:
            dt = _parse_text(text)
    if dt is None or not _MIN_YEAR <= dt.year <= _MAX_YEAR:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=assume_tz)
    try:
        dt.astimezone(timezone.utc)
    except (OverflowError, ValueError):
        return None
    return dt


def _from_epoch(value: float) -> datetime | None:
    try:
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_text(text: str) -> datetime | None:
    iso = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        return datetime.fromisoformat(iso)
    except ValueError:
        pass
    for fmt in _TS_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "y", "online", "on"):
        return True
    if text in ("0", "false", "no", "n", "offline", "off"):
        return False
    return None


# ---------------------------------------------------------------------------
# Rules, highest priority first
# ---------------------------------------------------------------------------

EVENT_ID = FieldRule("event_id", ("id", "alarmId", "alarm_id", "eventId", "event_id", "uuid"), as_text)
IDENTITY = FieldRule("identity", ("identity", "guid"), as_text)
SOURCE_ID = FieldRule(
    "source_id",
    ("sensorId", "deviceId", "deviceNo", "unit", "unitNo", "vehicleNo", "plateNo",
     "imei", "terminalNo", "device.no", "device.id", "device.name"),
    as_text,
)
LOCAL_TIME = FieldRule(
    "local_time",
    ("localTime", "alarmTimeLocal", "alarmTime", "eventTime", "deviceTime"),
)
SERVER_TIME = FieldRule(
    "server_time",
    ("timestamp", "gpsTime", "serverTime", "createTime", "createdAt", "utcTime"),
)
AREA = FieldRule("area", ("area", "areaName", "zone"), as_text)
GROUP = FieldRule("group", ("groupName", "fleetName", "companyName", "departmentName", "group"), as_text)
LOCATION = FieldRule(
    "location",
    ("location", "geofenceName", "geofence", "fenceName", "address", "position"),
    as_text,
)
OPERATOR = FieldRule("operator", ("operator", "driverName", "driver", "driver.name", "operatorName"), as_text)
FATIGUE_TYPE = FieldRule("fatigue_type", ("fatigueType", "alarmTypeName", "alarmType", "type", "eventType"), as_text)
ALARM_LEVEL = FieldRule("alarm_level", ("alarmLevel", "level", "severity"), as_text)
STATUS = FieldRule("status", ("status", "state", "onlineStatus"), as_text)
ALERT_STATUS = FieldRule(
    "alert_status",
    ("alertStatus", "handleStatus", "processStatus", "followUpStatus", "dealStatus"),
)
VALUE = FieldRule("value", ("value", "score", "fatigueScore", "riskScore"), as_float)
LATITUDE = FieldRule("latitude", ("latitude", "lat", "gps.lat", "gps.latitude"), as_float)
LONGITUDE = FieldRule("longitude", ("longitude", "lng", "lon", "gps.lng", "gps.longitude"), as_float)
MEDIA_URL = FieldRule(
    "media_url",
    ("photoUrl", "mediaUrl", "fileUrl", "imageUrl", "videoUrl", "attachments.0.url"),
    as_text,
)
SPEED = FieldRule("speed", ("speed", "gpsSpeed"), as_text)
COUNT = FieldRule("count", ("count", "alarmCount", "times"), as_int)
ONLINE = FieldRule("online", ("online", "isOnline", "onlineStatus", "status"), as_bool)


def resolve(payload: Any, rule: FieldRule) -> Any:
    return rule.resolve(payload)


def resolve_time(payload: Any, rule: FieldRule, assume_tz: tzinfo) -> datetime | None:
    """First parseable timestamp among the rule's paths."""
    if not isinstance(payload, dict):
        return None
    for path in rule.paths:
        dt = parse_timestamp(_lookup(payload, path), assume_tz)
        if dt is not None:
            return dt
    return None
