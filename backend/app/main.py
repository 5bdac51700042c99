import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_settings
from models import async_session, engine
from api.dashboard import router as dashboard_router
from api.config_mode import router as config_router
from core.cache import DeviceHealthCache, EventCache, PendingRawBuffer, SensorCache
from core.state import RuntimeState
from core.websocket import router as ws_router
from services.alert_deriver import AlertDeriver
from services.broadcast import BroadcastCoalescer
from services.dashboard import DashboardService
from services.normalizer import EventNormalizer
from services.persistence_writer import PersistenceWriter
from services.poller import DeviceHealthPoller, PollingScheduler
from services.shift_window import ShiftWindowClassifier, parse_area_map, parse_hhmm, parse_window_map
from services.upstream import TokenStore, UpstreamClient

VERSION = "0.1.0"

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("fatigue.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_settings(settings)
    tz = settings.tz
    logger.info("Fatigue backend starting... mode=%s DEBUG=%s", settings.initial_mode, settings.DEBUG)

    runtime = RuntimeState(settings.initial_mode)
    sensor_cache = SensorCache()
    event_cache = EventCache(settings.EVENT_CACHE_SIZE)
    raw_buffer = PendingRawBuffer(settings.RAW_BUFFER_SIZE)
    device_cache = DeviceHealthCache()

    windows = parse_window_map(settings.SHIFT_WINDOWS)
    classifier = ShiftWindowClassifier(
        windows,
        tz=tz,
        default_area=settings.DEFAULT_AREA,
        group_keywords=parse_area_map(settings.AREA_KEYWORDS),
        location_prefixes=parse_area_map(settings.AREA_LOCATION_PREFIXES),
        device_prefixes=parse_area_map(settings.AREA_DEVICE_PREFIXES),
        debug_size=settings.SHIFT_DEBUG_SIZE,
    )
    normalizer = EventNormalizer(
        tz=tz,
        default_area=settings.DEFAULT_AREA,
        default_location=settings.DEFAULT_LOCATION,
    )
    client = UpstreamClient(
        sensor_ids=settings.sensor_id_list,
        classifier=classifier,
        normalizer=normalizer,
        mode=lambda: runtime.mode,
        base_url=settings.SENSOR_API_BASE_URL,
        auth_mode=settings.SENSOR_API_AUTH_MODE,
        token_store=TokenStore(),
        username=settings.SENSOR_API_USERNAME,
        password=settings.SENSOR_API_PASSWORD,
        static_token=settings.SENSOR_API_TOKEN,
        token_header=settings.SENSOR_API_TOKEN_HEADER,
        login_path=settings.SENSOR_API_LOGIN_PATH,
        events_path=settings.SENSOR_API_EVENTS_PATH,
        devices_path=settings.SENSOR_API_DEVICES_PATH,
        timeout=settings.SENSOR_API_TIMEOUT,
        page_size=settings.SENSOR_API_PAGE_SIZE,
        max_pages=settings.SENSOR_API_MAX_PAGES,
        range_column=settings.SENSOR_API_RANGE_COLUMN,
        filter_columns=settings.SENSOR_API_FILTER_COLUMNS,
        filter_value=settings.SENSOR_API_FILTER_VALUE,
    )
    deriver = AlertDeriver(
        tz=tz,
        threshold=settings.ALERT_THRESHOLD,
        overdue_minutes=settings.OVERDUE_MINUTES,
        default_area=settings.DEFAULT_AREA,
        default_location=settings.DEFAULT_LOCATION,
        areas=list(windows) or [settings.DEFAULT_AREA],
        cap_enabled=settings.MOCK_OPEN_CAP_ENABLED,
        cap_limit=settings.MOCK_OPEN_CAP,
        shift_filter=settings.SHIFT_FILTER_ENABLED,
    )

    poller = PollingScheduler(
        client, runtime, sensor_cache, event_cache, raw_buffer,
        interval=settings.POLL_INTERVAL,
    )
    device_poller = DeviceHealthPoller(
        client, runtime, device_cache,
        interval=settings.DEVICE_POLL_INTERVAL,
    )
    writer = PersistenceWriter(
        async_session, runtime, sensor_cache, event_cache, raw_buffer,
        tz=tz,
        windows=windows,
        cutoff_minute=parse_hhmm(settings.SHIFT_CUTOFF),
        raw_table=settings.RAW_EVENTS_TABLE,
        history_table=settings.HISTORY_TABLE,
        persisted_capacity=settings.PERSISTED_ID_CAPACITY,
        interval=settings.PERSIST_INTERVAL,
    )
    dashboard = DashboardService(
        state=runtime,
        sensor_cache=sensor_cache,
        event_cache=event_cache,
        raw_buffer=raw_buffer,
        device_cache=device_cache,
        deriver=deriver,
        session_factory=async_session,
        history_lookback_minutes=settings.HISTORY_LOOKBACK_MINUTES,
        history_limit=settings.HISTORY_LIMIT,
    )
    coalescer = BroadcastCoalescer(dashboard.get_overview, interval=settings.BROADCAST_INTERVAL)
    dashboard.poller = poller
    dashboard.device_poller = device_poller
    dashboard.writer = writer
    dashboard.coalescer = coalescer

    app.state.runtime = runtime
    app.state.classifier = classifier
    app.state.client = client
    app.state.poller = poller
    app.state.device_poller = device_poller
    app.state.writer = writer
    app.state.dashboard = dashboard
    app.state.coalescer = coalescer

    jobs = []
    if settings.ENABLE_REALTIME_POLLING:
        jobs.append(poller.job)
    else:
        logger.info("Realtime polling DISABLED (ENABLE_REALTIME_POLLING=false)")
    if settings.ENABLE_DEVICE_POLLING:
        jobs.append(device_poller.job)
    if settings.ENABLE_PERSISTENCE_JOB:
        jobs.append(writer.job)
    else:
        logger.info("Persistence job DISABLED (ENABLE_PERSISTENCE_JOB=false)")
    for job in jobs:
        job.spawn()

    yield

    # Shutdown
    logger.info("Fatigue backend shutting down...")
    await coalescer.close()
    await asyncio.gather(*(job.stop() for job in jobs))
    await client.close()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Fatigue Telemetry API",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(dashboard_router)
app.include_router(config_router)
app.include_router(ws_router)


@app.get("/health")
async def health():
    return {"status": "ok", "version": VERSION}
