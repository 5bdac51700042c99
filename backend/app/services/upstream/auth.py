"""Upstream auth state and helpers.

TokenStore holds the bearer token obtained from the login endpoint. One
instance is built at startup and injected into the client; tests build
their own.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

_SECRET_KEYS = {"password", "passwd", "secret", "token", "access_token", "authorization", "username"}


class TokenStore:

    def __init__(self) -> None:
        self._token: str | None = None
        self.obtained_at: datetime | None = None
        self.lock = asyncio.Lock()

    @property
    def token(self) -> str | None:
        return self._token

    def set(self, token: str) -> None:
        self._token = token
        self.obtained_at = datetime.now(timezone.utc)

    def clear(self) -> None:
        self._token = None
        self.obtained_at = None

    def __repr__(self) -> str:
        return f"TokenStore(has_token={self._token is not None})"


def redact(payload: Any) -> Any:
    """Copy of a request body safe for logging."""
    if isinstance(payload, dict):
        return {
            k: ("***" if str(k).lower() in _SECRET_KEYS else redact(v))
            for k, v in payload.items()
        }
    if isinstance(payload, list):
        return [redact(v) for v in payload]
    return payload


def extract_token(data: Any) -> str | None:
    """Login response → token (``access_token``, ``token``, or nested under ``data``)."""
    if not isinstance(data, dict):
        return None
    for key in ("access_token", "token"):
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    nested = data.get("data")
    if isinstance(nested, dict):
        return extract_token(nested)
    return None
