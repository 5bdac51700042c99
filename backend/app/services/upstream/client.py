"""Fatigue telemetry upstream client.

Responsibilities:
- mock mode: synthesize events per configured unit (origin=mock)
- live mode: authenticate, query the shift-scoped time range, follow
  pagination up to a hard page cap
- per-call deadline (abort on timeout)
- one re-login + retry on 401 in auto-auth mode
- classify + normalize every raw event into a Reading

Credentials and tokens never reach a log call.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from services.normalizer import EventNormalizer
from services.readings import ORIGIN_LIVE, ORIGIN_MOCK, Reading
from services.shift_window import ShiftWindowClassifier
from services.upstream.auth import TokenStore, extract_token, redact
from services.upstream.errors import AuthError, UpstreamError, UpstreamTimeout
from services.upstream.mock import MockEventSource
from services import fields

logger = logging.getLogger("fatigue.upstream")

RANGE_FORMAT = "%Y-%m-%d %H:%M:%S"


class UpstreamClient:

    def __init__(
        self,
        *,
        sensor_ids: list[str],
        classifier: ShiftWindowClassifier,
        normalizer: EventNormalizer,
        mode: Callable[[], str],
        base_url: str = "",
        auth_mode: str = "auto",
        token_store: TokenStore | None = None,
        username: str = "",
        password: str = "",
        static_token: str = "",
        token_header: str = "X-Token",
        login_path: str = "/api/login",
        events_path: str = "/api/alarm/list",
        devices_path: str = "/api/device/list",
        timeout: float = 10.0,
        page_size: int = 100,
        max_pages: int = 20,
        range_column: str = "alarm_time",
        filter_columns: str = "",
        filter_value: str = "",
        mock_source: MockEventSource | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.sensor_ids = list(sensor_ids)
        self.classifier = classifier
        self.normalizer = normalizer
        self._mode = mode
        self.base_url = base_url.rstrip("/")
        self.auth_mode = auth_mode
        self.token_store = token_store or TokenStore()
        self._username = username
        self._password = password
        self._static_token = static_token
        self.token_header = token_header
        self.login_path = login_path
        self.events_path = events_path
        self.devices_path = devices_path
        self.timeout = timeout
        self.page_size = page_size
        self.max_pages = max(1, max_pages)
        self.range_column = range_column
        self.filter_columns = filter_columns
        self.filter_value = filter_value
        self.mock_source = mock_source or MockEventSource(normalizer.tz)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client = httpx.AsyncClient(
            base_url=self.base_url or "http://upstream.invalid",
            timeout=httpx.Timeout(self.timeout),
            transport=transport,
        )
        self.last_page_count = 0

    @property
    def mode(self) -> str:
        return self._mode()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch_batch(self, sensor_ids: list[str] | None = None) -> list[Reading]:
        """Fetch + classify + normalize. Raises UpstreamError subclasses."""
        ids = list(sensor_ids) if sensor_ids else self.sensor_ids
        received_at = self._clock()

        if self.mode == "mock":
            raw_events = self.mock_source.events(ids)
            origin = ORIGIN_MOCK
        else:
            raw_events = await self.fetch_raw_events()
            if sensor_ids:
                wanted = set(sensor_ids)
                raw_events = [e for e in raw_events if fields.resolve(e, fields.SOURCE_ID) in wanted]
            origin = ORIGIN_LIVE

        readings = []
        for raw in raw_events:
            classification = self.classifier.classify(raw)
            readings.append(self.normalizer.normalize(
                raw,
                classification=classification,
                origin=origin,
                received_at=received_at,
            ))
        return readings

    async def fetch_raw_events(self) -> list[dict]:
        """All events in the current shift range, following pagination."""
        range_start, range_end = self.classifier.query_range(self._clock())
        body: dict[str, Any] = {
            "range_date_start": range_start.strftime(RANGE_FORMAT),
            "range_date_end": range_end.strftime(RANGE_FORMAT),
            "range_date_columns": self.range_column,
            "page_size": self.page_size,
        }
        if self.filter_columns:
            body["filter_columns"] = self.filter_columns
            body["filter_value"] = self.filter_value

        events: list[dict] = []
        page = 1
        while True:
            data = await self._request("POST", self.events_path, json={**body, "page": page})
            if isinstance(data, dict) and data.get("success") is False:
                raise UpstreamError(200, str(data.get("message") or data)[:500])

            payload = data.get("data") if isinstance(data, dict) else None
            payload = payload if isinstance(payload, dict) else {}
            items = payload.get("list") or []
            events.extend(item for item in items if isinstance(item, dict))

            pagination = payload.get("pagination") or {}
            total_pages = fields.as_int(pagination.get("total_pages")) or 1
            if page >= total_pages or not items:
                break
            if page >= self.max_pages:
                logger.warning(
                    "Upstream pagination cap hit (%d of %d pages), remaining pages ignored",
                    page, total_pages,
                )
                break
            page += 1

        self.last_page_count = page
        logger.debug("Fetched %d upstream events over %d page(s)", len(events), page)
        return events

    async def fetch_devices(self) -> list[dict]:
        """Device inventory with an online/offline indicator per device."""
        if self.mode == "mock":
            return self.mock_source.devices(self.sensor_ids)
        data = await self._request("GET", self.devices_path)
        payload = data.get("data") if isinstance(data, dict) else data
        if isinstance(payload, dict):
            payload = payload.get("list") or []
        return [d for d in (payload or []) if isinstance(d, dict)]

    async def login(self) -> str:
        """POST credentials to the login endpoint; caches the bearer token."""
        url = self.login_path
        try:
            resp = await asyncio.wait_for(
                self._client.post(url, json={"username": self._username, "password": self._password}),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise UpstreamTimeout(url, self.timeout) from exc
        if resp.status_code >= 300:
            raise AuthError(resp.status_code, resp.text[:500], f"Upstream login failed: HTTP {resp.status_code}")
        try:
            token = extract_token(resp.json())
        except ValueError:
            token = None
        if not token:
            raise AuthError(resp.status_code, "", "Upstream login response carried no token")
        self.token_store.set(token)
        logger.info("Upstream login OK")
        return token

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, *, json: dict | None = None) -> Any:
        resp = await self._send(method, path, json)
        if resp.status_code == 401 and self.auth_mode == "auto":
            logger.warning("Upstream %s %s → 401, re-authenticating once", method, path)
            self.token_store.clear()
            resp = await self._send(method, path, json)
        if resp.status_code == 401:
            raise AuthError(401, resp.text[:500], f"Upstream rejected credentials for {path}")
        if not 200 <= resp.status_code < 300:
            raise UpstreamError(resp.status_code, resp.text[:500])
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError(resp.status_code, resp.text[:500], "Upstream returned non-JSON body") from exc

    async def _send(self, method: str, path: str, body: dict | None) -> httpx.Response:
        headers: dict[str, str] = {}
        auth: httpx.Auth | None = None
        if body is not None:
            body = dict(body)

        if self.auth_mode == "auto":
            async with self.token_store.lock:
                token = self.token_store.token or await self.login()
            headers["Authorization"] = f"Bearer {token}"
        elif self.auth_mode == "bearer":
            headers["Authorization"] = f"Bearer {self._static_token}"
        elif self.auth_mode == "token":
            headers[self.token_header] = self._static_token
        elif self.auth_mode == "basic":
            auth = httpx.BasicAuth(self._username, self._password)
        elif self.auth_mode == "body":
            body = {**(body or {}), "username": self._username, "password": self._password}

        logger.debug("Upstream %s %s body=%s", method, path, redact(body))
        try:
            return await asyncio.wait_for(
                self._client.request(method, path, json=body, headers=headers, auth=auth),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise UpstreamTimeout(path, self.timeout) from exc
