"""Raw upstream payload audit table, keyed by a content hash."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from config import settings
from models.base import Base, IngestMixin


class FatigueEventRaw(IngestMixin, Base):
    __tablename__ = settings.RAW_EVENTS_TABLE

    __table_args__ = (
        Index(f"ix_{settings.RAW_EVENTS_TABLE}_event_time", "event_time"),
    )

    event_hash: Mapped[str] = mapped_column(String(64), unique=True)
    sensor_id: Mapped[str | None] = mapped_column(String(100), default=None)
    event_time: Mapped[datetime | None] = mapped_column(default=None)
    payload: Mapped[str] = mapped_column(Text)
