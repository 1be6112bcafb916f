"""Inbound SMS webhook.

The SMS gateway posts every message it receives here. Accepts JSON
``{"from", "body"}`` or a Twilio-style form post (``From``, ``Body``).
"""

from __future__ import annotations

from urllib.parse import parse_qs

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from tracking.api.responses import BadRequest, bad_request, json_body

router = APIRouter(prefix="/api/v1")


async def _inbound_fields(request: Request) -> tuple[str, str]:
    content_type = request.headers.get("content-type", "application/json")
    if "form" in content_type:
        form = parse_qs((await request.body()).decode("utf-8", "replace"))
        sender = (form.get("From") or form.get("from") or [""])[0]
        body = (form.get("Body") or form.get("body") or [""])[0]
        return sender, body
    data = await json_body(request)
    return str(data.get("from") or data.get("From") or ""), str(data.get("body") or data.get("Body") or "")


@router.post("/sms/inbound")
async def inbound_sms(request: Request) -> JSONResponse:
    from tracking.main import get_sms_channel

    try:
        sender, body = await _inbound_fields(request)
    except BadRequest as e:
        return bad_request(str(e))
    if not sender or not body:
        return bad_request("from and body are required")

    result = await get_sms_channel().handle_inbound(sender, body)
    return JSONResponse(content={"success": True, "result": result})
