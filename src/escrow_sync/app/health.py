"""Liveness and readiness probes."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from ..observability.health import liveness_report, readiness_report
from .lifecycle import get_components

router = APIRouter()


@router.get("/health/live")
async def live():
    return liveness_report()


@router.get("/health/ready")
async def ready():
    components = get_components()
    ready_ok, report = await readiness_report(components.rpc if components else None)
    status_code = 200 if ready_ok else 503
    return JSONResponse(content=report, status_code=status_code)
