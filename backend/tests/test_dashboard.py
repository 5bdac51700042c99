import pytest
from fastapi.testclient import TestClient

from core.cache import DeviceHealthCache, EventCache, PendingRawBuffer, SensorCache
from core.state import RuntimeState
from services.alert_deriver import AlertDeriver
from services.dashboard import DashboardService

from conftest import TZ, local, make_reading


def make_dashboard(mode="mock", session_factory=None, clock=None):
    return DashboardService(
        state=RuntimeState(mode),
        sensor_cache=SensorCache(),
        event_cache=EventCache(),
        raw_buffer=PendingRawBuffer(),
        device_cache=DeviceHealthCache(),
        deriver=AlertDeriver(tz=TZ, cap_limit=3),
        session_factory=session_factory,
        clock=clock,
    )


# =============================================================================
# DashboardService
# =============================================================================

@pytest.mark.asyncio
async def test_overview_shape(clock):
    dashboard = make_dashboard(clock=clock)
    dashboard.sensor_cache.upsert(make_reading("DT-1", local(2026, 10, 19, 9), value=90))
    dashboard.device_cache.set({"total": 1, "online": 1, "offline": 0, "devices": []})

    overview = await dashboard.get_overview()

    assert set(overview) == {
        "meta", "deviceHealth", "sensors", "alerts", "stats", "areaSummary",
        "locationStats", "highRiskOperators", "highRiskZones", "overdueAlerts",
    }
    assert overview["meta"]["mode"] == "mock"
    assert overview["meta"]["sensorCount"] == 1
    assert overview["deviceHealth"]["online"] == 1
    assert overview["alerts"][0]["status"] == "Open"
    assert [a["sensorId"] for a in overview["overdueAlerts"]] == ["DT-1"]


@pytest.mark.asyncio
async def test_live_mode_derives_from_event_cache(clock):
    dashboard = make_dashboard(mode="live", clock=clock)
    dashboard.sensor_cache.upsert(make_reading("DT-1", local(2026, 10, 19, 10), value=90))
    dashboard.event_cache.replace([
        make_reading("DT-1", local(2026, 10, 19, 9), value=90),
        make_reading("DT-1", local(2026, 10, 19, 10), value=90),
    ])

    overview = await dashboard.get_overview()
    assert len(overview["alerts"]) == 2
    assert len(overview["sensors"]) == 1


def test_set_mode_clears_everything():
    dashboard = make_dashboard()
    dashboard.sensor_cache.upsert(make_reading("DT-1", local(2026, 10, 19, 10)))
    dashboard.event_cache.replace([make_reading("DT-1", local(2026, 10, 19, 10))])
    dashboard.raw_buffer.extend([{"deviceNo": "DT-1"}])
    dashboard.device_cache.set({"total": 1})

    assert dashboard.set_mode("real") == "live"

    assert dashboard.state.mode == "live"
    assert len(dashboard.sensor_cache) == 0
    assert len(dashboard.event_cache) == 0
    assert len(dashboard.raw_buffer) == 0
    assert dashboard.device_cache.get() is None


def test_set_mode_rejects_unknown_without_side_effects():
    dashboard = make_dashboard()
    dashboard.sensor_cache.upsert(make_reading("DT-1", local(2026, 10, 19, 10)))

    with pytest.raises(ValueError):
        dashboard.set_mode("staging")
    assert dashboard.state.mode == "mock"
    assert len(dashboard.sensor_cache) == 1


@pytest.mark.asyncio
async def test_sensor_detail_with_history(session_factory, clock):
    from services.persistence_writer import PersistenceWriter
    from conftest import WINDOWS

    dashboard = make_dashboard(session_factory=session_factory, clock=clock)
    writer = PersistenceWriter(
        session_factory, dashboard.state, dashboard.sensor_cache, dashboard.event_cache, dashboard.raw_buffer,
        tz=TZ, windows=WINDOWS, clock=clock,
    )
    dashboard.sensor_cache.upsert(make_reading("DT-1", local(2026, 10, 19, 10), value=90))
    await writer.persist_snapshot()

    detail = await dashboard.get_sensor_detail("DT-1")
    assert detail["sensor"]["sensorId"] == "DT-1"
    assert detail["alert"]["status"] == "Open"
    assert len(detail["history"]) == 1
    assert detail["history"][0]["value"] == 90

    assert await dashboard.get_sensor_detail("NOPE") is None


@pytest.mark.asyncio
async def test_sensor_detail_survives_history_failure(clock):
    class BrokenSession:
        async def __aenter__(self):
            from sqlalchemy.exc import OperationalError
            raise OperationalError("select", {}, Exception("db down"))

        async def __aexit__(self, *exc):
            return False

    dashboard = make_dashboard(session_factory=BrokenSession, clock=clock)
    dashboard.sensor_cache.upsert(make_reading("DT-1", local(2026, 10, 19, 10), value=10))

    detail = await dashboard.get_sensor_detail("DT-1")
    assert detail["history"] == []
    assert detail["alert"]["status"] == "Followed Up"


# =============================================================================
# HTTP / WebSocket surface
# =============================================================================

@pytest.fixture
def client():
    from main import app

    with TestClient(app) as c:
        yield c


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"


def test_mode_roundtrip_and_poll(client):
    assert client.get("/api/config/mode").json()["mode"] == "mock"

    resp = client.post("/api/config/mode", json={"mode": "mock"})
    assert resp.status_code == 200

    overview = client.get("/api/dashboard/overview").json()
    assert overview["meta"]["mode"] == "mock"
    assert len(overview["sensors"]) == 10
    assert overview["stats"]["open"] <= 3
    assert sum(1 for a in overview["alerts"] if a["status"] == "Open") <= 3


def test_invalid_mode_is_400(client):
    resp = client.post("/api/config/mode", json={"mode": "staging"})
    assert resp.status_code == 400
    assert client.get("/api/config/mode").json()["mode"] == "mock"


def test_sensor_detail_routes(client):
    client.post("/api/config/mode", json={"mode": "mock"})
    assert client.get("/api/dashboard/sensors/DT-402").json()["sensor"]["sensorId"] == "DT-402"
    assert client.get("/api/dashboard/sensors/NOPE").status_code == 404


def test_status_and_shift_debug(client):
    client.post("/api/config/mode", json={"mode": "mock"})
    status = client.get("/api/dashboard/status").json()
    assert status["mode"] == "mock"
    assert status["polling"]["runs"] >= 1
    debug = client.get("/api/dashboard/shift-debug").json()
    assert debug["size"] == 10


def test_websocket_stream(client):
    with client.websocket_connect("/ws/dashboard") as ws:
        first = ws.receive_json()
        assert first["type"] == "dashboard"
        assert "stats" in first["data"]
        ws.send_text("ping")
        assert ws.receive_text() == "pong"
