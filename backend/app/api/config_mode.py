"""Runtime mode API: read or switch mock/live without a restart."""
import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from core.state import MODES

router = APIRouter(prefix="/api/config", tags=["config"])
logger = logging.getLogger("fatigue.api.config")


class ModeIn(BaseModel):
    mode: str


class ModeOut(BaseModel):
    mode: str
    available: list[str]


@router.get("/mode", response_model=ModeOut)
async def get_mode(request: Request):
    return ModeOut(mode=request.app.state.runtime.mode, available=list(MODES))


@router.post("/mode", response_model=ModeOut)
async def set_mode(body: ModeIn, request: Request):
    dashboard = request.app.state.dashboard
    try:
        mode = dashboard.set_mode(body.mode)
    except ValueError as exc:
        raise HTTPException(400, str(exc))

    poller = getattr(request.app.state, "poller", None)
    if poller is not None:
        await poller.trigger()
    return ModeOut(mode=mode, available=list(MODES))
