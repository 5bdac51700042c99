from models.base import Base, async_session, engine, get_session
from models.sensor_reading import SensorReading
from models.fatigue_event_raw import FatigueEventRaw
from models.fatigue_event_history import FatigueEventHistory

__all__ = [
    "Base",
    "async_session",
    "engine",
    "get_session",
    "SensorReading",
    "FatigueEventRaw",
    "FatigueEventHistory",
]
