"""Socket listener control endpoints."""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from tracking.api.responses import outcome_response

router = APIRouter(prefix="/api/v1")


@router.post("/listeners/start")
async def start_listeners() -> JSONResponse:
    from tracking.main import get_service

    return outcome_response(await get_service().start_listeners())


@router.post("/listeners/stop")
async def stop_listeners() -> JSONResponse:
    from tracking.main import get_service

    return outcome_response(await get_service().stop_listeners())


@router.get("/listeners")
async def listener_status() -> JSONResponse:
    from tracking.main import get_service

    return outcome_response(get_service().listener_status())
