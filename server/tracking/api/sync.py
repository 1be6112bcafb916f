"""Cloud sync endpoints: connectivity test, triggers, auto-sync toggle, audit log."""

from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from tracking.api.responses import BadRequest, bad_request, json_body, outcome_response

router = APIRouter(prefix="/api/v1")


@router.post("/sync/test")
async def test_connection() -> JSONResponse:
    from tracking.main import get_service

    return outcome_response(await get_service().test_cloud_connection())


@router.post("/sync/manual")
async def manual_sync(service: str | None = Query(None)) -> JSONResponse:
    """Run a sync now, regardless of the auto-sync flag. 409 if one is already running."""
    from tracking.main import get_service

    return outcome_response(await get_service().manual_sync(service))


@router.post("/sync/auto")
async def automatic_sync(service: str | None = Query(None)) -> JSONResponse:
    """Cron entry point: does nothing while auto sync is disabled."""
    from tracking.main import get_service

    return outcome_response(await get_service().automatic_sync(service))


@router.put("/sync/auto-enabled")
async def toggle_auto_sync(request: Request) -> JSONResponse:
    from tracking.main import get_service

    try:
        body = await json_body(request)
    except BadRequest as e:
        return bad_request(str(e))
    if not isinstance(body.get("enabled"), bool):
        return bad_request("enabled must be true or false")

    return outcome_response(await get_service().toggle_auto_sync(body["enabled"]))


@router.get("/sync/status")
async def sync_status() -> JSONResponse:
    from tracking.main import get_service

    return outcome_response(get_service().sync_status())


@router.get("/sync/logs")
async def sync_logs(
    service: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
) -> JSONResponse:
    from tracking.main import get_service

    return outcome_response(await get_service().sync_logs(service, limit))
