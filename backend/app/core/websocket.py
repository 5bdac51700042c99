"""
WebSocket endpoint for the live dashboard.

WS /ws/dashboard - each connection is a BroadcastCoalescer subscriber:
  first message: last snapshot (or a freshly computed one)
  then:          {"type": "dashboard", "data": ...} every interval
  on failure:    {"type": "server-error", "message": ...}
  "ping" → "pong"
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger("fatigue.websocket")

router = APIRouter()


class WebSocketSubscriber:
    """Adapts a WebSocket to the coalescer's subscriber interface."""

    def __init__(self, ws: WebSocket) -> None:
        self.ws = ws

    async def send(self, message: dict[str, Any]) -> None:
        await self.ws.send_json(message)


@router.websocket("/ws/dashboard")
async def ws_dashboard(websocket: WebSocket) -> None:
    coalescer = websocket.app.state.coalescer
    await websocket.accept()
    subscriber = WebSocketSubscriber(websocket)
    try:
        await coalescer.subscribe(subscriber)
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    except Exception as exc:
        logger.debug("WS error: %s", exc)
    finally:
        coalescer.unsubscribe(subscriber)
