"""Outcome to HTTP response mapping shared by the routers."""

from __future__ import annotations

import json

from fastapi import Request
from fastapi.responses import JSONResponse

from tracking.core.models import Outcome
from tracking.core.service import (
    ERR_ALREADY_RUNNING,
    ERR_DUPLICATE,
    ERR_INTERNAL,
    ERR_NOT_FOUND,
    ERR_TRANSPORT,
    ERR_VALIDATION,
)

_STATUS_BY_ERROR = {
    ERR_NOT_FOUND: 404,
    ERR_DUPLICATE: 409,
    ERR_ALREADY_RUNNING: 409,
    ERR_VALIDATION: 400,
    ERR_TRANSPORT: 502,
    ERR_INTERNAL: 500,
}


class BadRequest(Exception):
    """Request body could not be used."""


def outcome_response(outcome: Outcome, success_status: int = 200) -> JSONResponse:
    if outcome.success:
        status = success_status
    else:
        # Failures without a code are operational results (timeouts etc.), not HTTP errors.
        status = _STATUS_BY_ERROR.get(outcome.error, 200)
    return JSONResponse(content=outcome.to_dict(), status_code=status)


def bad_request(message: str) -> JSONResponse:
    return JSONResponse(content={"success": False, "message": message}, status_code=400)


async def json_body(request: Request) -> dict:
    """Parse a JSON object body. Raises BadRequest."""
    body_bytes = await request.body()
    if not body_bytes:
        return {}
    try:
        body = json.loads(body_bytes)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise BadRequest("invalid JSON") from None
    if not isinstance(body, dict):
        raise BadRequest("JSON body must be an object")
    return body
