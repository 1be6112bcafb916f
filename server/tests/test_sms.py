"""Tests for the SMS command channel, reply parsing and SMS gateways."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from tracking.core.errors import ParseError, TransportTimeout, TransportUnreachable
from tracking.transport.sms import (
    INBOUND_INGESTED,
    INBOUND_PARSE_ERROR,
    INBOUND_REPLY,
    INBOUND_UNKNOWN_SENDER,
    MSG_DEVICE_NOT_FOUND,
    MSG_NO_SIM,
    SmsCommandChannel,
    SmsInbox,
    normalize_number,
    parse_location_reply,
)
from tracking.transport.sms_gateway import FallbackSmsGateway, HttpSmsGateway, TwilioSmsGateway

SIM = "+919876543210"
LAT_LON_REPLY = "Lat:13.0827,Lon:80.2707,Speed:12km/h,T:2025-01-22 12:00:00"


class FakeGateway:
    """Records sent commands and answers some of them through the inbox."""

    name = "fake"

    def __init__(self, inbox: SmsInbox, replies: dict[str, str] | None = None, fail: Exception | None = None):
        self.inbox = inbox
        self.replies = replies or {}
        self.fail = fail
        self.sent: list[tuple[str, str]] = []

    async def send(self, to: str, message: str) -> None:
        self.sent.append((to, message))
        if self.fail is not None:
            raise self.fail
        reply = self.replies.get(message)
        if reply is not None:
            asyncio.get_running_loop().call_soon(self.inbox.deliver, to, reply)


@pytest.fixture
def inbox() -> SmsInbox:
    return SmsInbox()


@pytest.fixture
def gateway(inbox) -> FakeGateway:
    return FakeGateway(inbox)


@pytest.fixture
async def channel(registry, reconciler, gateway, inbox, stats, clock) -> SmsCommandChannel:
    await registry.register("GPS-001", "Bus 12", sim=SIM)
    await registry.register("GPS-002", "Bus 13")
    return SmsCommandChannel(
        registry, reconciler, gateway, inbox, stats,
        location_commands=["where", "loc"],
        reply_timeout_seconds=0.05,
        command_gap_seconds=0,
        quality=50,
        clock=clock,
    )


# -- reply parsing --------------------------------------------------------


def test_parse_lat_lon_reply():
    fix = parse_location_reply(LAT_LON_REPLY, "GPS-001")
    assert (fix.latitude, fix.longitude, fix.speed) == (13.0827, 80.2707, 12.0)
    assert fix.observed_at == datetime(2025, 1, 22, 12, 0, tzinfo=timezone.utc)
    assert fix.accuracy is None


def test_parse_hemisphere_reply():
    fix = parse_location_reply("Location: 33.8688S,151.2093E Speed:15km/h")
    assert fix.latitude == -33.8688
    assert fix.longitude == 151.2093
    assert fix.observed_at is None


def test_parse_maps_link_and_bare_pair():
    fix = parse_location_reply("http://maps.google.com/maps?q=13.0827,80.2707")
    assert (fix.latitude, fix.longitude) == (13.0827, 80.2707)

    fix = parse_location_reply("13.0827, 80.2707")
    assert (fix.latitude, fix.longitude) == (13.0827, 80.2707)


@pytest.mark.parametrize("text", [
    "Hello", "Lat:0,Lon:0", "Lat:91.5,Lon:80.0", "",
    "Lat:13.08,Lon:80.27,T:2025-13-45 12:00:00",
])
def test_parse_rejects(text):
    with pytest.raises(ParseError):
        parse_location_reply(text)


def test_normalize_number():
    assert normalize_number("+91 98765-43210") == normalize_number("09876543210") == "9876543210"


# -- request/response -----------------------------------------------------


@pytest.mark.asyncio
async def test_request_location_success(channel, gateway, reconciler):
    gateway.replies["where"] = LAT_LON_REPLY
    result = await channel.request_location("GPS-001")

    assert result.success
    assert result.location.source == "sms"
    assert result.location.quality == 50
    assert result.raw_response == LAT_LON_REPLY
    assert gateway.sent == [(SIM, "where")]
    assert len(await reconciler.history("GPS-001")) == 1
    assert (await reconciler.current_location("GPS-001")).latitude == 13.0827


@pytest.mark.asyncio
async def test_request_location_tries_next_command_on_timeout(channel, gateway):
    gateway.replies["loc"] = "http://maps.google.com/maps?q=13.0827,80.2707"
    result = await channel.request_location("GPS-001")

    assert result.success
    assert [cmd for _, cmd in gateway.sent] == ["where", "loc"]


@pytest.mark.asyncio
async def test_request_location_all_timed_out(channel, gateway, inbox):
    result = await channel.request_location("GPS-001")

    assert not result.success
    assert "No location response" in result.message
    assert len(gateway.sent) == 2
    assert inbox.pending() == 0


@pytest.mark.asyncio
async def test_request_location_unparseable_reply(channel, gateway, reconciler, stats):
    gateway.replies["where"] = "GPS NOT FIXED, TRY LATER"
    result = await channel.request_location("GPS-001")

    assert not result.success
    assert "GPS NOT FIXED, TRY LATER" in result.message
    assert result.raw_response == "GPS NOT FIXED, TRY LATER"
    assert await reconciler.history("GPS-001") == []
    assert stats.parse_errors["sms"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("failure", [TransportUnreachable("modem offline"), TransportTimeout("slow gateway")])
async def test_request_location_gateway_failure_fails_fast(channel, gateway, failure):
    gateway.fail = failure
    result = await channel.request_location("GPS-001")

    assert not result.success
    assert "unreachable" in result.message
    assert len(gateway.sent) == 1


@pytest.mark.asyncio
async def test_request_location_lookup_failures(channel, gateway):
    assert (await channel.request_location("ghost")).message == MSG_DEVICE_NOT_FOUND
    assert (await channel.request_location("GPS-002")).message == MSG_NO_SIM
    assert gateway.sent == []


@pytest.mark.asyncio
async def test_requests_to_same_device_serialize(channel, gateway):
    gateway.replies["where"] = LAT_LON_REPLY
    first, second = await asyncio.gather(
        channel.request_location("GPS-001"),
        channel.request_location("GPS-001"),
    )
    assert first.success and second.success
    assert gateway.sent == [(SIM, "where"), (SIM, "where")]


# -- fire-and-forget commands ---------------------------------------------


@pytest.mark.asyncio
async def test_enable_realtime(channel, gateway):
    result = await channel.enable_realtime("GPS-001", 30)
    assert result.success
    assert gateway.sent == [(SIM, "T030S***")]

    assert not (await channel.enable_realtime("GPS-001", 0)).success
    assert not (await channel.enable_realtime("GPS-002")).success
    assert len(gateway.sent) == 1


@pytest.mark.asyncio
async def test_configure_direct_connection(channel, gateway):
    assert await channel.configure_direct_connection(SIM, "203.0.113.10", 9000)
    assert [cmd for _, cmd in gateway.sent] == [
        "APN internet",
        "SERVER 203.0.113.10 9000",
        "TIMER 30",
        "GPRS ON",
        "GMT +05:30",
    ]


@pytest.mark.asyncio
async def test_configure_direct_connection_failures(channel, gateway):
    assert not await channel.configure_direct_connection(SIM, "")
    assert gateway.sent == []

    gateway.fail = TransportUnreachable("modem offline")
    assert not await channel.configure_direct_connection(SIM, "203.0.113.10")
    assert len(gateway.sent) == 1


# -- inbound --------------------------------------------------------------


@pytest.mark.asyncio
async def test_inbound_unsolicited_report(channel, reconciler):
    outcome = await channel.handle_inbound("0098765 43210", LAT_LON_REPLY)
    assert outcome == INBOUND_INGESTED
    assert len(await reconciler.history("GPS-001")) == 1


@pytest.mark.asyncio
async def test_inbound_unknown_sender_and_garbage(channel, stats):
    assert await channel.handle_inbound("+15550001111", LAT_LON_REPLY) == INBOUND_UNKNOWN_SENDER
    assert await channel.handle_inbound(SIM, "Balance: Rs 12.50") == INBOUND_PARSE_ERROR
    assert stats.unknown_devices["sms"] == 1
    assert stats.parse_errors["sms"] == 1


@pytest.mark.asyncio
async def test_inbound_impossible_report_time(channel, reconciler, stats):
    outcome = await channel.handle_inbound(SIM, "Lat:13.08,Lon:80.27,T:2025-13-45 12:00:00")
    assert outcome == INBOUND_PARSE_ERROR
    assert stats.parse_errors["sms"] == 1
    assert await reconciler.history("GPS-001") == []


@pytest.mark.asyncio
async def test_inbound_reply_resolves_pending_request(channel, inbox):
    future = inbox.expect(SIM)
    assert await channel.handle_inbound(SIM, LAT_LON_REPLY) == INBOUND_REPLY
    assert future.result() == LAT_LON_REPLY
    assert inbox.pending() == 0


# -- gateways -------------------------------------------------------------


@pytest.mark.asyncio
async def test_http_gateway_posts_json():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((str(request.url), json.loads(request.content)))
        return httpx.Response(200, json={"queued": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        await HttpSmsGateway("http://modem.local:9000/", client).send(SIM, "where")

    assert seen == [("http://modem.local:9000/send", {"to": SIM, "message": "where"})]


@pytest.mark.asyncio
async def test_http_gateway_errors():
    def refuse(request):
        return httpx.Response(500)

    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
        with pytest.raises(TransportUnreachable) as exc:
            await HttpSmsGateway("http://modem.local", client).send(SIM, "where")
        assert exc.value.status_code == 500

    async with httpx.AsyncClient(transport=httpx.MockTransport(slow)) as client:
        with pytest.raises(TransportTimeout):
            await HttpSmsGateway("http://modem.local", client).send(SIM, "where")


@pytest.mark.asyncio
async def test_twilio_gateway_form_post():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"sid": "SM1"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        await TwilioSmsGateway("AC123", "secret", "+15550009999", client).send(SIM, "where")

    request = seen[0]
    assert request.url.path == "/2010-04-01/Accounts/AC123/Messages.json"
    assert request.headers["authorization"].startswith("Basic ")
    assert b"Body=where" in request.content


@pytest.mark.asyncio
async def test_fallback_gateway(inbox):
    broken = FakeGateway(inbox, fail=TransportUnreachable("down"))
    working = FakeGateway(inbox)

    await FallbackSmsGateway([broken, working]).send(SIM, "where")
    assert broken.sent == working.sent == [(SIM, "where")]

    with pytest.raises(TransportUnreachable, match="no SMS gateway"):
        await FallbackSmsGateway([]).send(SIM, "where")

    with pytest.raises(TransportUnreachable, match="fake: down"):
        await FallbackSmsGateway([broken]).send(SIM, "where")
