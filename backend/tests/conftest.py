import os
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

# Test settings must be in place before any app module reads config
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SENSOR_API_MODE", "mock")
os.environ.setdefault("ENABLE_REALTIME_POLLING", "false")
os.environ.setdefault("ENABLE_DEVICE_POLLING", "false")
os.environ.setdefault("ENABLE_PERSISTENCE_JOB", "false")
os.environ.setdefault("BROADCAST_INTERVAL", "60")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from models import Base
from services.normalizer import EventNormalizer
from services.readings import Reading
from services.shift_window import ShiftWindow, ShiftWindowClassifier

TZ = ZoneInfo("Asia/Makassar")

WINDOWS = {
    "Mining": ShiftWindow.parse("06:00", "18:00"),
    "Hauling": ShiftWindow.parse("18:00", "06:00"),
}


def local(year, month, day, hour, minute=0, second=0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=TZ)


class FakeClock:
    """Mutable clock: ``clock.now`` is returned in UTC."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now.astimezone(timezone.utc)


def make_reading(sensor_id, ts, value=None, status="online", origin="mock", **meta) -> Reading:
    base_meta = {"unit": sensor_id, "area": "Mining", "location": "Pit Utara", "withinShift": True}
    base_meta.update(meta)
    return Reading(
        sensor_id=sensor_id,
        status=status,
        value=value,
        timestamp=ts.astimezone(timezone.utc),
        received_at=ts.astimezone(timezone.utc),
        origin=origin,
        meta=base_meta,
    )


@pytest.fixture
def clock():
    return FakeClock(local(2026, 10, 19, 10, 5))


@pytest.fixture
def classifier(clock):
    return ShiftWindowClassifier(
        WINDOWS,
        tz=TZ,
        default_area="Mining",
        group_keywords={"Mining": ["mining", "pit"], "Hauling": ["hauling"]},
        location_prefixes={"Hauling": ["KM"], "Mining": ["Pit", "Manado"]},
        device_prefixes={"Hauling": ["HD", "WT"], "Mining": ["DT", "EX"]},
        debug_size=50,
        clock=clock,
    )


@pytest.fixture
def normalizer():
    return EventNormalizer(tz=TZ, default_area="Mining", default_location="Unknown")


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
