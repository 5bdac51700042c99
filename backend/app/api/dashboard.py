"""Dashboard API: overview snapshot, per-sensor detail, pipeline status."""
import logging

from fastapi import APIRouter, HTTPException, Request

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])
logger = logging.getLogger("fatigue.api.dashboard")


def _get_dashboard(request: Request):
    dashboard = getattr(request.app.state, "dashboard", None)
    if dashboard is None:
        raise HTTPException(503, "Dashboard service is not ready")
    return dashboard


@router.get("/overview")
async def get_overview(request: Request):
    return await _get_dashboard(request).get_overview()


@router.get("/sensors/{sensor_id}")
async def get_sensor_detail(sensor_id: str, request: Request):
    detail = await _get_dashboard(request).get_sensor_detail(sensor_id)
    if detail is None:
        raise HTTPException(404, f"Sensor {sensor_id} not found")
    return detail


@router.get("/status")
async def get_status(request: Request):
    """Polling, device health, persistence and broadcast job status."""
    return _get_dashboard(request).status()


@router.get("/shift-debug")
async def get_shift_debug(request: Request):
    """Most recent shift-window classification decisions."""
    classifier = getattr(request.app.state, "classifier", None)
    if classifier is None:
        raise HTTPException(503, "Classifier is not ready")
    return classifier.debug_snapshot()
