"""EventNormalizer - upstream / mock payloads → canonical Reading.

Total by construction: every field goes through a FieldRule with a
coercion that maps bad input to None, then to a documented default:
  status   → "unknown"
  value    → None
  area     → classifier result, else default area
  location → default location
  timestamp→ receivedAt
"""
from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from typing import Any

from services import fields
from services.readings import ORIGIN_LIVE, Reading
from services.shift_window import Classification

OPEN = "Open"
FOLLOWED_UP = "Followed Up"

_OPEN_WORDS = {"open", "new", "pending", "unhandled", "unprocessed", "0", "false"}
_FOLLOWED_WORDS = {
    "followed up", "followed_up", "followedup", "handled", "processed",
    "closed", "resolved", "done", "1", "true",
}


def normalize_alert_status(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip().lower()
    if text in _OPEN_WORDS:
        return OPEN
    if text in _FOLLOWED_WORDS:
        return FOLLOWED_UP
    return None


class EventNormalizer:

    def __init__(
        self,
        *,
        tz: tzinfo,
        default_area: str = "Mining",
        default_location: str = "Unknown",
    ):
        self.tz = tz
        self.default_area = default_area
        self.default_location = default_location

    def normalize(
        self,
        raw: Any,
        *,
        classification: Classification | None = None,
        origin: str = ORIGIN_LIVE,
        received_at: datetime | None = None,
    ) -> Reading:
        payload = raw if isinstance(raw, dict) else {}
        received = received_at or datetime.now(timezone.utc)

        if classification is not None:
            event_time = classification.local_time
        else:
            event_time = (
                fields.resolve_time(payload, fields.LOCAL_TIME, self.tz)
                or fields.resolve_time(payload, fields.SERVER_TIME, timezone.utc)
            )
        try:
            timestamp = (event_time or received).astimezone(timezone.utc)
            local = timestamp.astimezone(self.tz)
        except (OverflowError, ValueError):
            timestamp = received.astimezone(timezone.utc)
            local = timestamp.astimezone(self.tz)

        sensor_id = fields.resolve(payload, fields.SOURCE_ID) or "unknown"
        status = (fields.resolve(payload, fields.STATUS) or "unknown").lower()

        area = classification.area if classification else (
            fields.resolve(payload, fields.AREA) or self.default_area
        )
        meta: dict[str, Any] = {
            "id": fields.resolve(payload, fields.EVENT_ID),
            "identity": fields.resolve(payload, fields.IDENTITY),
            "unit": sensor_id,
            "area": area,
            "location": fields.resolve(payload, fields.LOCATION) or self.default_location,
            "groupName": fields.resolve(payload, fields.GROUP),
            "operator": fields.resolve(payload, fields.OPERATOR),
            "type": fields.resolve(payload, fields.FATIGUE_TYPE) or "Fatigue",
            "alarmLevel": fields.resolve(payload, fields.ALARM_LEVEL),
            "alertStatus": normalize_alert_status(fields.resolve(payload, fields.ALERT_STATUS)),
            "latitude": fields.resolve(payload, fields.LATITUDE),
            "longitude": fields.resolve(payload, fields.LONGITUDE),
            "photoUrl": fields.resolve(payload, fields.MEDIA_URL),
            "speed": fields.resolve(payload, fields.SPEED),
            "count": fields.resolve(payload, fields.COUNT) or 1,
            "date": local.strftime("%Y-%m-%d"),
            "time": local.strftime("%H:%M:%S"),
            "withinShift": classification.within_shift if classification else True,
            "shiftWindow": classification.window.label if classification and classification.window else None,
        }

        return Reading(
            sensor_id=sensor_id,
            status=status,
            value=fields.resolve(payload, fields.VALUE),
            timestamp=timestamp,
            received_at=received,
            origin=origin,
            meta=meta,
            raw=payload if origin == ORIGIN_LIVE and payload else None,
        )
