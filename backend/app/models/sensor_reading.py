"""Primary time-series table: one row per persisted Reading (fixed schema)."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Float, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from config import settings
from models.base import Base, IngestMixin


class SensorReading(IngestMixin, Base):
    __tablename__ = settings.READINGS_TABLE

    __table_args__ = (
        Index(f"ix_{settings.READINGS_TABLE}_sensor_recorded", "sensor_id", "recorded_at"),
        Index(f"ix_{settings.READINGS_TABLE}_recorded", "recorded_at"),
    )

    event_key: Mapped[str] = mapped_column(String(255))
    sensor_id: Mapped[str] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(40), default="unknown")
    value: Mapped[float | None] = mapped_column(Float, default=None)
    recorded_at: Mapped[datetime] = mapped_column()
    source: Mapped[str] = mapped_column(String(20), default="live")
    meta: Mapped[str | None] = mapped_column(Text, default=None)
