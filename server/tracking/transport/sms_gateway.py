"""Outbound SMS gateways.

Gateways only send; replies come back through the inbound webhook and the
SmsInbox. Delivery failures are raised as TransportError subclasses so the
command channel can turn them into structured outcomes.
"""

from __future__ import annotations

from typing import Protocol

import httpx
import structlog

from tracking.core.errors import TransportError, TransportTimeout, TransportUnreachable

log = structlog.get_logger()


class SmsGateway(Protocol):
    """Port: delivers one SMS to a phone number."""

    name: str

    async def send(self, to: str, message: str) -> None: ...


async def _post(client: httpx.AsyncClient, url: str, *, timeout: float, **kwargs) -> httpx.Response:
    try:
        resp = await client.post(url, timeout=timeout, **kwargs)
    except httpx.TimeoutException as e:
        raise TransportTimeout(f"timed out after {timeout}s", endpoint=url) from e
    except httpx.HTTPError as e:
        raise TransportUnreachable(f"{type(e).__name__}: {e}", endpoint=url) from e
    if resp.status_code >= 400:
        raise TransportUnreachable(
            f"HTTP {resp.status_code}", endpoint=url, status_code=resp.status_code,
        )
    return resp


class HttpSmsGateway:
    """Local SMS gateway (USB modem bridge etc.) exposing ``POST /send``."""

    name = "http_gateway"

    def __init__(self, base_url: str, client: httpx.AsyncClient, *, timeout: float = 10.0) -> None:
        self._url = base_url.rstrip("/") + "/send"
        self._client = client
        self._timeout = timeout

    async def send(self, to: str, message: str) -> None:
        await _post(self._client, self._url, timeout=self._timeout,
                    json={"to": to, "message": message})
        log.info("sms_sent", gateway=self.name, to=to[-4:], command=message)


class TwilioSmsGateway:
    name = "twilio"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: httpx.AsyncClient,
        *,
        timeout: float = 10.0,
        base_url: str = "https://api.twilio.com",
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/2010-04-01/Accounts/{account_sid}/Messages.json"
        self._auth = (account_sid, auth_token)
        self._from = from_number
        self._client = client
        self._timeout = timeout

    async def send(self, to: str, message: str) -> None:
        await _post(self._client, self._url, timeout=self._timeout, auth=self._auth,
                    data={"To": to, "From": self._from, "Body": message})
        log.info("sms_sent", gateway=self.name, to=to[-4:], command=message)


class FallbackSmsGateway:
    """Tries each configured gateway in order until one accepts the message."""

    name = "fallback"

    def __init__(self, gateways: list[SmsGateway]) -> None:
        self._gateways = gateways

    @property
    def configured(self) -> bool:
        return bool(self._gateways)

    async def send(self, to: str, message: str) -> None:
        if not self._gateways:
            raise TransportUnreachable("no SMS gateway configured")
        failures = []
        for gateway in self._gateways:
            try:
                await gateway.send(to, message)
                return
            except TransportError as e:
                failures.append(f"{gateway.name}: {e}")
                log.warning("sms_gateway_failed", gateway=gateway.name, error=str(e))
        raise TransportUnreachable("; ".join(failures))
