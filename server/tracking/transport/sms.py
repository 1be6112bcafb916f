"""SMS command channel.

Request/response location fixes, real-time reporting enablement, and
direct-connection reconfiguration, all over SMS. Requests to the same SIM
are serialized so a reply can always be matched to the command that
caused it; different devices proceed in parallel.
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timezone
from typing import Callable, TYPE_CHECKING

import structlog

from tracking.core.errors import ParseError, TransportError, TransportTimeout, TransportUnreachable
from tracking.core.models import SOURCE_SMS, DecodedFix, LocationSample, SmsResult, utcnow
from tracking.transport.decoders import validate_coordinates

if TYPE_CHECKING:
    from tracking.core.models import GPSDevice
    from tracking.core.reconciler import LocationReconciler
    from tracking.core.registry import DeviceRegistry
    from tracking.core.stats import IngestStats
    from tracking.transport.sms_gateway import SmsGateway

log = structlog.get_logger()

# Inbound message outcomes.
INBOUND_REPLY = "reply"
INBOUND_INGESTED = "ingested"
INBOUND_UNKNOWN_SENDER = "unknown_sender"
INBOUND_PARSE_ERROR = "parse_error"

MSG_DEVICE_NOT_FOUND = "GPS device not found"
MSG_NO_SIM = "No SIM number configured for this device"
MSG_BAD_INTERVAL = "Interval must be between 1 and 999 seconds"

_NUM = r"[+-]?\d+(?:\.\d+)?"
_LAT_LON = re.compile(rf"Lat:\s*({_NUM}).*?Lon:\s*({_NUM})", re.IGNORECASE | re.DOTALL)
_HEMISPHERE = re.compile(r"(\d+(?:\.\d+)?)\s*([NS])\s*,\s*(\d+(?:\.\d+)?)\s*([EW])", re.IGNORECASE)
_MAPS_LINK = re.compile(rf"[?&]q=({_NUM}),\s*({_NUM})")
_BARE_PAIR = re.compile(rf"^\s*({_NUM})\s*,\s*({_NUM})")
_SPEED = re.compile(r"Speed:\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_TIME = re.compile(r"T(?:ime)?:\s*(\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}:\d{2})")
_ACCURACY = re.compile(r"Acc(?:uracy)?:\s*(\d+(?:\.\d+)?)", re.IGNORECASE)


def normalize_number(number: str) -> str:
    """Digits only, last ten kept, so +91 98... and 098... compare equal."""
    digits = re.sub(r"\D", "", number or "")
    return digits[-10:]


def parse_location_reply(text: str, device_id: str = "") -> DecodedFix:
    """Parse a device's SMS location reply.

    Accepted shapes:
    - ``Lat:13.0827,Lon:80.2707,Speed:0km/h,T:2025-01-22 12:00:00``
    - ``Location: 13.0827N,80.2707E Speed:15km/h Time:12:00:00``
    - ``http://maps.google.com/maps?q=13.0827,80.2707``
    - ``13.0827,80.2707``
    """
    lat = lon = None
    if match := _LAT_LON.search(text):
        lat, lon = float(match[1]), float(match[2])
    elif match := _HEMISPHERE.search(text):
        lat = float(match[1]) * (-1 if match[2].upper() == "S" else 1)
        lon = float(match[3]) * (-1 if match[4].upper() == "W" else 1)
    elif match := _MAPS_LINK.search(text):
        lat, lon = float(match[1]), float(match[2])
    elif match := _BARE_PAIR.match(text):
        lat, lon = float(match[1]), float(match[2])

    if lat is None or lon is None or (lat == 0 and lon == 0):
        raise ParseError("Could not parse location from GPS response", raw=text)
    if not validate_coordinates(lat, lon):
        raise ParseError(f"coordinates out of range: {lat},{lon}", raw=text)

    observed_at = None
    if match := _TIME.search(text):
        try:
            observed_at = datetime.fromisoformat(match[1].replace(" ", "T")).replace(tzinfo=timezone.utc)
        except ValueError:
            raise ParseError(f"bad time {match[1]!r} in GPS response", raw=text) from None
    speed = _SPEED.search(text)
    accuracy = _ACCURACY.search(text)
    return DecodedFix(
        device_id=device_id,
        latitude=lat,
        longitude=lon,
        speed=float(speed[1]) if speed else 0.0,
        accuracy=float(accuracy[1]) if accuracy else None,
        observed_at=observed_at,
    )


class SmsInbox:
    """Matches inbound SMS to the request waiting on that number."""

    def __init__(self) -> None:
        self._waiters: dict[str, asyncio.Future[str]] = {}

    def expect(self, number: str) -> asyncio.Future[str]:
        future = asyncio.get_running_loop().create_future()
        self._waiters[normalize_number(number)] = future
        return future

    def discard(self, number: str, future: asyncio.Future[str]) -> None:
        key = normalize_number(number)
        if self._waiters.get(key) is future:
            del self._waiters[key]

    def deliver(self, number: str, body: str) -> bool:
        """Resolve a pending request. Returns False if nobody was waiting."""
        future = self._waiters.pop(normalize_number(number), None)
        if future is None or future.done():
            return False
        future.set_result(body)
        return True

    def pending(self) -> int:
        return len(self._waiters)


class SmsCommandChannel:
    def __init__(
        self,
        registry: DeviceRegistry,
        reconciler: LocationReconciler,
        gateway: SmsGateway,
        inbox: SmsInbox,
        stats: IngestStats,
        *,
        location_commands: list[str],
        reply_timeout_seconds: float = 45.0,
        command_gap_seconds: float = 2.0,
        apn: str = "internet",
        report_interval_seconds: int = 30,
        gmt_offset: str = "+05:30",
        direct_port: int = 8888,
        quality: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._reconciler = reconciler
        self._gateway = gateway
        self._inbox = inbox
        self._stats = stats
        self._location_commands = list(location_commands)
        self._reply_timeout = reply_timeout_seconds
        self._command_gap = command_gap_seconds
        self._apn = apn
        self._report_interval = report_interval_seconds
        self._gmt_offset = gmt_offset
        self._direct_port = direct_port
        self._quality = quality
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, sim_number: str) -> asyncio.Lock:
        key = normalize_number(sim_number)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _device_with_sim(self, device_id: str) -> tuple[GPSDevice | None, SmsResult | None]:
        device = await self._registry.find(device_id)
        if device is None:
            return None, SmsResult(success=False, message=MSG_DEVICE_NOT_FOUND)
        if not device.has_sim:
            return None, SmsResult(success=False, message=MSG_NO_SIM)
        return device, None

    async def _send(self, sim_number: str, command: str) -> None:
        """Send one command. Any send-side failure, slow or not, means the gateway is unusable."""
        try:
            await self._gateway.send(sim_number, command)
        except TransportTimeout as e:
            raise TransportUnreachable(str(e), endpoint=e.endpoint) from e

    async def _exchange(self, sim_number: str, command: str) -> str:
        future = self._inbox.expect(sim_number)
        try:
            await self._send(sim_number, command)
            try:
                return await asyncio.wait_for(future, self._reply_timeout)
            except asyncio.TimeoutError:
                raise TransportTimeout(
                    f"no reply to {command!r} within {self._reply_timeout}s",
                ) from None
        finally:
            self._inbox.discard(sim_number, future)

    async def request_location(self, device_id: str) -> SmsResult:
        device, failure = await self._device_with_sim(device_id)
        if failure is not None:
            return failure

        log.info("sms_location_requested", device_id=device.device_id)
        async with self._lock_for(device.sim_number):
            for command in self._location_commands:
                try:
                    reply = await self._exchange(device.sim_number, command)
                except TransportTimeout:
                    log.info("sms_reply_timeout", device_id=device.device_id, command=command,
                             timeout=self._reply_timeout)
                    continue
                except TransportUnreachable as e:
                    log.warning("sms_gateway_unreachable", device_id=device.device_id, error=str(e))
                    return SmsResult(success=False, message=f"SMS gateway unreachable: {e}")

                self._stats.record_frame(SOURCE_SMS)
                try:
                    fix = parse_location_reply(reply, device.device_id)
                except ParseError as e:
                    self._stats.record_parse_error(SOURCE_SMS)
                    log.warning("sms_reply_unparseable", device_id=device.device_id, reply=reply)
                    return SmsResult(success=False, message=f"{e}: {reply}", raw_response=reply)

                sample = await self._ingest(device, fix, raw=reply)
                return SmsResult(success=True, message="Location parsed successfully",
                                 location=sample, raw_response=reply)

        return SmsResult(
            success=False,
            message=f"No location response received from GPS device within {self._reply_timeout}s",
        )

    async def enable_realtime(self, device_id: str, interval_seconds: int = 30) -> SmsResult:
        if not 1 <= interval_seconds <= 999:
            return SmsResult(success=False, message=MSG_BAD_INTERVAL)
        device, failure = await self._device_with_sim(device_id)
        if failure is not None:
            return failure

        command = f"T{interval_seconds:03d}S***"
        async with self._lock_for(device.sim_number):
            try:
                await self._send(device.sim_number, command)
            except TransportError as e:
                return SmsResult(success=False, message=f"SMS gateway unreachable: {e}")
        log.info("sms_realtime_enabled", device_id=device.device_id, interval=interval_seconds)
        return SmsResult(success=True, message=f"Real-time tracking enabled every {interval_seconds}s")

    async def configure_direct_connection(self, sim_number: str, server_ip: str, port: int | None = None) -> bool:
        """Point a device's reporting endpoint at our socket listener."""
        if not sim_number or not server_ip:
            return False
        commands = [
            f"APN {self._apn}",
            f"SERVER {server_ip} {port or self._direct_port}",
            f"TIMER {self._report_interval}",
            "GPRS ON",
            f"GMT {self._gmt_offset}",
        ]
        log.info("device_direct_config_started", sim=sim_number[-4:], server_ip=server_ip)
        async with self._lock_for(sim_number):
            for i, command in enumerate(commands):
                if i:
                    await asyncio.sleep(self._command_gap)
                try:
                    await self._send(sim_number, command)
                except TransportError as e:
                    log.warning("device_direct_config_failed", sim=sim_number[-4:],
                                command=command, error=str(e))
                    return False
        return True

    async def handle_inbound(self, from_number: str, body: str) -> str:
        """Route an inbound SMS: a pending reply, or an unsolicited periodic report."""
        if self._inbox.deliver(from_number, body):
            return INBOUND_REPLY

        wanted = normalize_number(from_number)
        device = None
        for candidate in await self._registry.list_with_sim():
            if normalize_number(candidate.sim_number) == wanted:
                device = candidate
                break
        self._stats.record_frame(SOURCE_SMS)
        if device is None:
            self._stats.record_unknown_device(SOURCE_SMS)
            log.warning("sms_unknown_sender", sender=from_number[-4:])
            return INBOUND_UNKNOWN_SENDER

        try:
            fix = parse_location_reply(body, device.device_id)
        except ParseError:
            self._stats.record_parse_error(SOURCE_SMS)
            log.warning("sms_report_unparseable", device_id=device.device_id, body=body)
            return INBOUND_PARSE_ERROR

        await self._ingest(device, fix, raw=body)
        return INBOUND_INGESTED

    async def _ingest(self, device: GPSDevice, fix: DecodedFix, *, raw: str) -> LocationSample:
        now = self._clock()
        sample = LocationSample(
            device_id=device.device_id,
            latitude=fix.latitude,
            longitude=fix.longitude,
            source=SOURCE_SMS,
            observed_at=fix.observed_at or now,
            received_at=now,
            accuracy=fix.accuracy,
            speed=fix.speed,
            heading=fix.heading,
            quality=self._quality,
            raw=raw,
        )
        await self._reconciler.ingest(sample)
        return sample
