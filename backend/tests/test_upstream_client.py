import json
import logging
import random

import httpx
import pytest

from core.cache import EventCache, PendingRawBuffer, SensorCache
from core.state import RuntimeState
from services.poller import PollingScheduler
from services.upstream import AuthError, MockEventSource, TokenStore, UpstreamClient, UpstreamError, UpstreamTimeout

from conftest import TZ


def make_client(classifier, normalizer, clock, handler=None, *, mode="live", **kwargs):
    options = dict(
        sensor_ids=["DT-1", "HD-2"],
        classifier=classifier,
        normalizer=normalizer,
        mode=lambda: mode,
        base_url="http://upstream.test",
        username="ops",
        password="s3cret",
        token_store=TokenStore(),
        mock_source=MockEventSource(TZ, rng=random.Random(7), clock=clock),
        transport=httpx.MockTransport(handler) if handler else None,
        clock=clock,
    )
    options.update(kwargs)
    return UpstreamClient(**options)


def page(items, total_pages=1):
    return {"success": True, "data": {"list": items, "pagination": {"total_pages": total_pages}}}


class Upstream:
    """Scripted integrator: login hands out tok1, tok2, ...; events pages by request."""

    def __init__(self, events_responses=None):
        self.logins = 0
        self.event_requests = []
        self.events_responses = events_responses or []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/login":
            self.logins += 1
            return httpx.Response(200, json={"access_token": f"tok{self.logins}"})
        if request.url.path == "/api/alarm/list":
            self.event_requests.append(request)
            index = min(len(self.event_requests), len(self.events_responses)) - 1
            response = self.events_responses[index]
            if callable(response):
                return response(request)
            return httpx.Response(response.status_code, headers=response.headers, content=response.content)
        if request.url.path == "/api/device/list":
            return httpx.Response(200, json={"data": {"list": [{"deviceNo": "DT-1", "online": 1}]}})
        return httpx.Response(404)


def body(request: httpx.Request) -> dict:
    return json.loads(request.content)


# =============================================================================
# Mock mode
# =============================================================================

@pytest.mark.asyncio
async def test_mock_mode_synthesizes_one_reading_per_unit(classifier, normalizer, clock):
    client = make_client(classifier, normalizer, clock, mode="mock")
    readings = await client.fetch_batch()

    assert [r.sensor_id for r in readings] == ["DT-1", "HD-2"]
    assert all(r.origin == "mock" and r.raw is None for r in readings)
    assert readings[1].meta["area"] == "Hauling"
    devices = await client.fetch_devices()
    assert [d["deviceNo"] for d in devices] == ["DT-1", "HD-2"]
    await client.close()


# =============================================================================
# Live mode
# =============================================================================

@pytest.mark.asyncio
async def test_login_then_shift_range_query(classifier, normalizer, clock):
    event = {"alarmId": "E1", "deviceNo": "DT-1", "alarmTime": "2026-10-19 10:00:00", "value": 91}
    upstream = Upstream([httpx.Response(200, json=page([event]))])
    client = make_client(classifier, normalizer, clock, upstream, filter_columns="group_name", filter_value="Fleet A")

    readings = await client.fetch_batch()

    assert upstream.logins == 1
    request = upstream.event_requests[0]
    assert request.headers["Authorization"] == "Bearer tok1"
    sent = body(request)
    assert sent["range_date_start"] == "2026-10-19 06:00:00"
    assert sent["range_date_end"] == "2026-10-20 06:00:00"
    assert sent["range_date_columns"] == "alarm_time"
    assert sent["page"] == 1
    assert sent["filter_columns"] == "group_name"
    assert sent["filter_value"] == "Fleet A"

    assert len(readings) == 1
    assert readings[0].meta["id"] == "E1"
    assert readings[0].raw == event
    await client.close()


@pytest.mark.asyncio
async def test_out_of_range_timestamp_does_not_sink_the_poll(classifier, normalizer, clock):
    good = {"alarmId": "E1", "deviceNo": "DT-1", "alarmTime": "2026-10-19 10:00:00", "value": 91}
    bad = {"alarmId": "E2", "deviceNo": "HD-2", "timestamp": "9999-12-31T23:59:59Z", "value": 40}
    upstream = Upstream([httpx.Response(200, json=page([good, bad]))])
    client = make_client(classifier, normalizer, clock, upstream)
    poller = PollingScheduler(
        client, RuntimeState("live"), SensorCache(), EventCache(), PendingRawBuffer(), interval=60,
    )

    await poller.trigger()

    assert poller.status["lastErrorMessage"] is None
    assert {r.meta["id"] for r in poller.event_cache.get_all()} == {"E1", "E2"}
    fallback = next(r for r in poller.event_cache.get_all() if r.meta["id"] == "E2")
    assert fallback.timestamp == clock()
    await client.close()


@pytest.mark.asyncio
async def test_pagination_stops_at_page_cap(classifier, normalizer, clock, caplog):
    upstream = Upstream([
        lambda req: httpx.Response(200, json=page([{"deviceNo": f"DT-{body(req)['page']}"}], total_pages=5)),
    ])
    client = make_client(classifier, normalizer, clock, upstream, max_pages=3)

    with caplog.at_level(logging.WARNING, logger="fatigue.upstream"):
        events = await client.fetch_raw_events()

    assert [e["deviceNo"] for e in events] == ["DT-1", "DT-2", "DT-3"]
    assert len(upstream.event_requests) == 3
    assert client.last_page_count == 3
    assert "pagination cap" in caplog.text
    await client.close()


@pytest.mark.asyncio
async def test_unauthorized_triggers_single_relogin(classifier, normalizer, clock):
    upstream = Upstream([httpx.Response(401), httpx.Response(200, json=page([]))])
    client = make_client(classifier, normalizer, clock, upstream)

    assert await client.fetch_raw_events() == []
    assert upstream.logins == 2
    assert upstream.event_requests[-1].headers["Authorization"] == "Bearer tok2"
    await client.close()


@pytest.mark.asyncio
async def test_second_unauthorized_raises_auth_error(classifier, normalizer, clock):
    upstream = Upstream([httpx.Response(401)])
    client = make_client(classifier, normalizer, clock, upstream)

    with pytest.raises(AuthError):
        await client.fetch_raw_events()
    assert upstream.logins == 2
    await client.close()


@pytest.mark.asyncio
async def test_login_without_token_is_auth_error(classifier, normalizer, clock):
    def handler(request):
        return httpx.Response(200, json={"message": "ok"})

    client = make_client(classifier, normalizer, clock, handler)
    with pytest.raises(AuthError):
        await client.login()
    await client.close()


@pytest.mark.asyncio
async def test_http_error_carries_status_and_body(classifier, normalizer, clock):
    upstream = Upstream([httpx.Response(503, text="maintenance")])
    client = make_client(classifier, normalizer, clock, upstream)

    with pytest.raises(UpstreamError) as info:
        await client.fetch_batch()
    assert info.value.status == 503
    assert info.value.body == "maintenance"
    await client.close()


@pytest.mark.asyncio
async def test_success_false_is_upstream_error(classifier, normalizer, clock):
    upstream = Upstream([httpx.Response(200, json={"success": False, "message": "bad range"})])
    client = make_client(classifier, normalizer, clock, upstream)

    with pytest.raises(UpstreamError, match="bad range"):
        await client.fetch_raw_events()
    await client.close()


@pytest.mark.asyncio
async def test_timeout_maps_to_upstream_timeout(classifier, normalizer, clock):
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    client = make_client(classifier, normalizer, clock, handler, auth_mode="none")
    with pytest.raises(UpstreamTimeout) as info:
        await client.fetch_raw_events()
    assert isinstance(info.value, TimeoutError)
    await client.close()


@pytest.mark.asyncio
async def test_transport_timeout_follows_configured_deadline(classifier, normalizer, clock):
    seen = []

    def handler(request):
        seen.append(request.extensions["timeout"])
        return httpx.Response(200, json=page([]))

    client = make_client(classifier, normalizer, clock, handler, auth_mode="none", timeout=12.5)
    await client.fetch_raw_events()

    assert seen[0] == {"connect": 12.5, "read": 12.5, "write": 12.5, "pool": 12.5}
    await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "auth_mode, check",
    [
        ("token", lambda req: req.headers["X-Token"] == "static"),
        ("bearer", lambda req: req.headers["Authorization"] == "Bearer static"),
        ("basic", lambda req: req.headers["Authorization"].startswith("Basic ")),
        ("body", lambda req: body(req)["username"] == "ops"),
        ("none", lambda req: "Authorization" not in req.headers),
    ],
)
async def test_static_auth_modes(classifier, normalizer, clock, auth_mode, check):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=page([]))

    client = make_client(classifier, normalizer, clock, handler, auth_mode=auth_mode, static_token="static")
    await client.fetch_raw_events()

    assert check(seen[0])
    assert all(r.url.path != "/api/login" for r in seen)
    await client.close()


@pytest.mark.asyncio
async def test_live_devices(classifier, normalizer, clock):
    client = make_client(classifier, normalizer, clock, Upstream())
    devices = await client.fetch_devices()
    assert devices == [{"deviceNo": "DT-1", "online": 1}]
    await client.close()


@pytest.mark.asyncio
async def test_credentials_never_logged(classifier, normalizer, clock, caplog):
    upstream = Upstream([httpx.Response(200, json=page([]))])
    client = make_client(classifier, normalizer, clock, upstream, auth_mode="body")

    with caplog.at_level(logging.DEBUG, logger="fatigue.upstream"):
        await client.fetch_raw_events()

    assert "s3cret" not in caplog.text
    await client.close()
