"""PersistenceWriter - periodic snapshot of the caches into the database.

One pass (``persist_snapshot``):
  1. shift cutoff key changed → forget which readings were persisted
  2. readings not yet persisted → bulk insert into the readings table (ORM)
  3. live mode → drain the pending raw payloads into the audit table,
     keyed by sha256 of the canonical JSON
  4. one enriched history row per reading (shift window, UTC + local time)
  5. after commit → mark every included reading key as persisted

The raw and history tables are reflected from the live database (columns
cached per table name). A table that cannot be reflected is skipped with
a single warning and listed in ``health["skippedTables"]``; the pass
itself carries on.
"""
from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable

from sqlalchemy import MetaData, Table, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.cache import BoundedKeySet, EventCache, PendingRawBuffer, SensorCache
from core.scheduler import IntervalJob
from core.state import RuntimeState
from models.sensor_reading import SensorReading
from services import fields
from services.readings import Reading, event_key
from services.shift_window import ShiftWindow, format_hhmm

logger = logging.getLogger("fatigue.persistence")


def canonical_hash(payload: dict) -> str:
    text = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _naive_utc(ts: datetime | None) -> datetime | None:
    # DB columns are TIMESTAMP WITHOUT TIME ZONE
    if ts is None:
        return None
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


class PersistenceWriter:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state: RuntimeState,
        sensor_cache: SensorCache,
        event_cache: EventCache,
        raw_buffer: PendingRawBuffer,
        *,
        tz: tzinfo,
        windows: dict[str, ShiftWindow],
        cutoff_minute: int = 6 * 60,
        raw_table: str = "fatigue_events_raw",
        history_table: str = "fatigue_event_history",
        persisted_capacity: int = 10000,
        interval: float = 60.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session_factory = session_factory
        self.state = state
        self.sensor_cache = sensor_cache
        self.event_cache = event_cache
        self.raw_buffer = raw_buffer
        self.tz = tz
        self.windows = dict(windows)
        self.cutoff_minute = cutoff_minute
        self.raw_table = raw_table
        self.history_table = history_table
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.persisted = BoundedKeySet(persisted_capacity)
        self.raw_hashes = BoundedKeySet(persisted_capacity)
        self.cutoff_key: str | None = None

        self._tables: dict[str, Table] = {}
        self._warned: set[str] = set()
        self.skipped_tables: set[str] = set()
        self.last_result: dict[str, int] = {"inserted": 0, "rawInserted": 0, "historyInserted": 0}

        self.job = IntervalJob("persist_snapshot", self.persist_snapshot, interval, logger=logger)

    async def start(self) -> None:
        await self.job.start()

    async def stop(self) -> None:
        await self.job.stop()

    @property
    def health(self) -> dict[str, Any]:
        data = self.job.status.to_dict()
        data.update(
            cutoffKey=self.cutoff_key,
            persistedKeys=len(self.persisted),
            pendingRaw=len(self.raw_buffer),
            skippedTables=sorted(self.skipped_tables),
            lastResult=dict(self.last_result),
        )
        return data

    # ------------------------------------------------------------------
    # Snapshot pass
    # ------------------------------------------------------------------

    def current_cutoff_key(self, now: datetime | None = None) -> str:
        """Local date of the shift day: the day rolls over at the cutoff time."""
        local_now = (now or self._clock()).astimezone(self.tz)
        return (local_now - timedelta(minutes=self.cutoff_minute)).date().isoformat()

    def _source_readings(self) -> list[Reading]:
        if self.state.mode == "live":
            return self.event_cache.get_all()
        return self.sensor_cache.get_all()

    async def persist_snapshot(self) -> dict[str, int]:
        now = self._clock()
        key = self.current_cutoff_key(now)
        if key != self.cutoff_key:
            if self.cutoff_key is not None:
                logger.info("Shift cutoff passed (%s → %s), persisted-key tracking reset", self.cutoff_key, key)
            self.persisted.clear()
            self.raw_hashes.clear()
            self.cutoff_key = key

        pending: dict[str, Reading] = {}
        for reading in self._source_readings():
            reading_key = event_key(reading)
            if reading_key not in self.persisted and reading_key not in pending:
                pending[reading_key] = reading

        raw_table = None
        if self.state.mode == "live" and len(self.raw_buffer):
            raw_table = await self._table(self.raw_table)
        # Payloads stay buffered until the audit table is usable.
        raw_payloads = self.raw_buffer.drain() if raw_table is not None else []
        result = {"inserted": 0, "rawInserted": 0, "historyInserted": 0}

        if not pending and not raw_payloads:
            self.last_result = result
            return result

        history_table = await self._table(self.history_table) if pending else None

        try:
            async with self.session_factory() as session:
                if pending:
                    rows = [self._reading_row(k, r, now) for k, r in pending.items()]
                    await session.execute(insert(SensorReading), rows)
                    result["inserted"] = len(rows)

                raw_hashes: list[str] = []
                if raw_table is not None:
                    raw_rows, raw_hashes = await self._raw_rows(session, raw_table, raw_payloads, now)
                    if raw_rows:
                        await session.execute(insert(raw_table), raw_rows)
                    result["rawInserted"] = len(raw_rows)

                if history_table is not None:
                    history_rows = [
                        _filter_columns(history_table, self._history_row(k, r, now))
                        for k, r in pending.items()
                    ]
                    await session.execute(insert(history_table), history_rows)
                    result["historyInserted"] = len(history_rows)

                await session.commit()
        except SQLAlchemyError:
            if raw_table is not None:
                self.raw_buffer.requeue(raw_payloads)
            raise

        self.persisted.add_many(pending.keys())
        self.raw_hashes.add_many(raw_hashes)
        self.last_result = result
        logger.debug(
            "Snapshot persisted: %d readings, %d raw, %d history",
            result["inserted"], result["rawInserted"], result["historyInserted"],
        )
        return result

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    @staticmethod
    def _reading_row(key: str, reading: Reading, now: datetime) -> dict[str, Any]:
        return {
            "event_key": key[:255],
            "sensor_id": reading.sensor_id,
            "status": reading.status,
            "value": reading.value,
            "recorded_at": _naive_utc(reading.timestamp or reading.received_at or now),
            "received_at": _naive_utc(reading.received_at or now),
            "source": reading.origin,
            "meta": json.dumps(reading.meta, ensure_ascii=False, default=str),
        }

    def _history_row(self, key: str, reading: Reading, now: datetime) -> dict[str, Any]:
        meta = reading.meta or {}
        area = meta.get("area")
        window = self.windows.get(area) if area else None
        ts = reading.timestamp or reading.received_at or now
        return {
            "event_key": key[:255],
            "sensor_id": reading.sensor_id,
            "status": reading.status,
            "alert_status": meta.get("alertStatus"),
            "area": area,
            "location": meta.get("location"),
            "operator": meta.get("operator"),
            "fatigue_type": meta.get("type"),
            "shift_label": area,
            "shift_start": format_hhmm(window.start) if window else None,
            "shift_end": format_hhmm(window.end) if window else None,
            "within_shift": meta.get("withinShift", True) is not False,
            "event_time_utc": _naive_utc(ts),
            "event_time_local": ts.astimezone(self.tz).replace(tzinfo=None),
            "received_at": _naive_utc(reading.received_at or now),
            "origin": reading.origin,
            "meta_json": json.dumps(meta, ensure_ascii=False, default=str),
        }

    async def _raw_rows(
        self,
        session: AsyncSession,
        table: Table,
        payloads: list[dict],
        now: datetime,
    ) -> tuple[list[dict], list[str]]:
        by_hash: dict[str, dict] = {}
        for payload in payloads:
            digest = canonical_hash(payload)
            if digest not in self.raw_hashes and digest not in by_hash:
                by_hash[digest] = payload

        if by_hash and "event_hash" in table.c:
            existing = await session.execute(
                select(table.c.event_hash).where(table.c.event_hash.in_(list(by_hash)))
            )
            for (digest,) in existing:
                by_hash.pop(digest, None)

        rows = []
        for digest, payload in by_hash.items():
            event_time = fields.resolve_time(payload, fields.SERVER_TIME, self.tz) or \
                fields.resolve_time(payload, fields.LOCAL_TIME, self.tz)
            rows.append(_filter_columns(table, {
                "event_hash": digest,
                "sensor_id": fields.resolve(payload, fields.SOURCE_ID),
                "event_time": _naive_utc(event_time),
                "received_at": _naive_utc(now),
                "payload": json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str),
            }))
        return rows, list(by_hash)

    # ------------------------------------------------------------------
    # Table reflection
    # ------------------------------------------------------------------

    async def _table(self, name: str) -> Table | None:
        cached = self._tables.get(name)
        if cached is not None:
            return cached

        try:
            table = await self._reflect(name)
        except SQLAlchemyError as exc:
            self._skip(name, f"metadata unavailable ({exc.__class__.__name__}: {exc})")
            return None

        if not len(table.columns):
            self._skip(name, "no columns")
            return None

        self._tables[name] = table
        self._warned.discard(name)
        self.skipped_tables.discard(name)
        logger.info("Table %s reflected (%d columns)", name, len(table.columns))
        return table

    async def _reflect(self, name: str) -> Table:
        async with self.session_factory() as session:
            conn = await session.connection()
            return await conn.run_sync(lambda sync_conn: Table(name, MetaData(), autoload_with=sync_conn))

    def _skip(self, name: str, reason: str) -> None:
        self.skipped_tables.add(name)
        if name not in self._warned:
            self._warned.add(name)
            logger.warning("Table %s skipped: %s", name, reason)


def _filter_columns(table: Table, row: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in row.items() if k in table.c}
