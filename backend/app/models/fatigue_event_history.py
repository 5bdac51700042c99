"""Enriched history: one row per reading per snapshot, with shift context."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from config import settings
from models.base import Base, IngestMixin


class FatigueEventHistory(IngestMixin, Base):
    __tablename__ = settings.HISTORY_TABLE

    __table_args__ = (
        Index(f"ix_{settings.HISTORY_TABLE}_sensor_time", "sensor_id", "event_time_utc"),
        Index(f"ix_{settings.HISTORY_TABLE}_area_shift", "area", "shift_label"),
    )

    event_key: Mapped[str] = mapped_column(String(255))
    sensor_id: Mapped[str] = mapped_column(String(100))
    status: Mapped[str | None] = mapped_column(String(40), default=None)
    alert_status: Mapped[str | None] = mapped_column(String(20), default=None)
    area: Mapped[str | None] = mapped_column(String(40), default=None)
    location: Mapped[str | None] = mapped_column(String(120), default=None)
    operator: Mapped[str | None] = mapped_column(String(120), default=None)
    fatigue_type: Mapped[str | None] = mapped_column(String(80), default=None)
    shift_label: Mapped[str | None] = mapped_column(String(20), default=None)
    shift_start: Mapped[str | None] = mapped_column(String(5), default=None)
    shift_end: Mapped[str | None] = mapped_column(String(5), default=None)
    within_shift: Mapped[bool] = mapped_column(default=True)
    event_time_utc: Mapped[datetime] = mapped_column()
    event_time_local: Mapped[datetime] = mapped_column()
    origin: Mapped[str] = mapped_column(String(20), default="live")
    meta_json: Mapped[str | None] = mapped_column(Text, default=None)
