"""Wire frame decoders for the socket listeners.

Each decoder claims frames by a cheap prefix/shape check and then parses
them strictly. The first decoder that claims a frame decides its fate:
a claimed frame that fails to parse is a ParseError, it does not fall
through to looser decoders.

Supported formats:
- TK103 comma form:   (<id>,BR00,<ddmmyy>,A,<ddmm.mmmm><N|S>,<dddmm.mmmm><E|W>,<kmh>,<hhmmss>,<heading>)
- TK103 compact form: (<id>BR00<yymmdd>A<ddmm.mmmm><N|S><dddmm.mmmm><E|W><kmh 000.0><hhmmss><heading 000.00>...)
- H02 / HQ:           *HQ,<id>,V1,<hhmmss>,A,<ddmm.mmmm>,<N|S>,<dddmm.mmmm>,<E|W>,<knots>,<heading>,<ddmmyy>,...#
- NMEA RMC:           <id>,$GPRMC,<hhmmss.ss>,A,<ddmm.mmmm>,<N|S>,<dddmm.mmmm>,<E|W>,<knots>,<course>,<ddmmyy>,...*<cs>
- JSON:               {"device_id"|"imei": ..., "lat": ..., "lon": ..., "accuracy"?, "speed"?, "heading"?, "timestamp"?}
- Generic CSV:        <id>,<lat>,<lon>[,<speed>[,<heading>[,<accuracy>]]]

All device times are taken as UTC.
"""

from __future__ import annotations

import json
import math
import re
from datetime import datetime, timezone
from typing import Protocol

from tracking.core.errors import ParseError
from tracking.core.models import DecodedFix

KNOTS_TO_KMH = 1.852


def validate_coordinates(lat: float, lon: float) -> bool:
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def ddmm_to_decimal(value: str, hemisphere: str) -> float:
    """Convert NMEA-style (d)ddmm.mmmm plus hemisphere letter to signed degrees."""
    try:
        raw = float(value)
    except ValueError:
        raise ParseError(f"bad coordinate {value!r}") from None
    if not math.isfinite(raw):
        raise ParseError(f"bad coordinate {value!r}")
    degrees = int(raw // 100)
    minutes = raw - degrees * 100
    if minutes >= 60:
        raise ParseError(f"bad coordinate minutes {value!r}")
    decimal = degrees + minutes / 60
    hemisphere = hemisphere.upper()
    if hemisphere in ("S", "W"):
        return -decimal
    if hemisphere not in ("N", "E"):
        raise ParseError(f"bad hemisphere {hemisphere!r}")
    return decimal


def _parse_datetime(date_str: str, time_str: str, date_fmt: str) -> datetime:
    time_str = time_str.split(".")[0]
    try:
        dt = datetime.strptime(f"{date_str}{time_str}", f"{date_fmt}%H%M%S")
    except ValueError:
        raise ParseError(f"bad timestamp {date_str} {time_str}") from None
    return dt.replace(tzinfo=timezone.utc)


def _float(value: str | float | int | None, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise ParseError(f"bad number {value!r}") from None
    if not math.isfinite(result):
        raise ParseError(f"bad number {value!r}")
    return result


def _checked(fix: DecodedFix) -> DecodedFix:
    if not fix.device_id:
        raise ParseError("missing device id")
    if not validate_coordinates(fix.latitude, fix.longitude):
        raise ParseError(f"coordinates out of range: {fix.latitude},{fix.longitude}")
    if fix.accuracy is not None and fix.accuracy < 0:
        raise ParseError(f"negative accuracy {fix.accuracy}")
    return fix


class FrameDecoder(Protocol):
    """Port: turns one wire frame into a decoded fix."""

    name: str

    def matches(self, frame: str) -> bool: ...

    def decode(self, frame: str) -> DecodedFix: ...


class TK103Decoder:
    name = "tk103"

    _COMPACT = re.compile(
        r"^\((?P<id>\d{6,20})(?P<cmd>BR00|BP00|BO01)(?P<date>\d{6})(?P<valid>[AV])"
        r"(?P<lat>\d{4}\.\d{3,5})(?P<ns>[NS])(?P<lon>\d{5}\.\d{3,5})(?P<ew>[EW])"
        r"(?P<speed>\d{3}\.\d)(?P<time>\d{6})(?P<heading>\d{3}\.\d{2})"
    )
    _LOCATION_COMMANDS = ("BR00", "BP00", "BO01")

    def matches(self, frame: str) -> bool:
        return frame.startswith("(") and frame.endswith(")")

    def decode(self, frame: str) -> DecodedFix:
        if "," in frame:
            return self._decode_comma(frame)
        match = self._COMPACT.match(frame)
        if not match:
            raise ParseError("unrecognized TK103 frame", raw=frame)
        if match["valid"] != "A":
            raise ParseError("TK103 frame without valid fix", raw=frame)
        return _checked(DecodedFix(
            device_id=match["id"],
            latitude=ddmm_to_decimal(match["lat"], match["ns"]),
            longitude=ddmm_to_decimal(match["lon"], match["ew"]),
            speed=float(match["speed"]),
            heading=float(match["heading"]) % 360,
            observed_at=_parse_datetime(match["date"], match["time"], "%y%m%d"),
        ))

    def _decode_comma(self, frame: str) -> DecodedFix:
        parts = frame[1:-1].split(",")
        if len(parts) < 9:
            raise ParseError(f"TK103 frame has {len(parts)} fields", raw=frame)
        device_id, command, date_str, valid, lat, lon, speed, time_str, heading = parts[:9]
        if command not in self._LOCATION_COMMANDS:
            raise ParseError(f"TK103 command {command} carries no location", raw=frame)
        if valid != "A":
            raise ParseError("TK103 frame without valid fix", raw=frame)
        if len(lat) < 2 or len(lon) < 2:
            raise ParseError("TK103 frame missing coordinates", raw=frame)
        return _checked(DecodedFix(
            device_id=device_id.strip(),
            latitude=ddmm_to_decimal(lat[:-1], lat[-1]),
            longitude=ddmm_to_decimal(lon[:-1], lon[-1]),
            speed=max(0.0, _float(speed)),
            heading=_float(heading) % 360,
            observed_at=_parse_datetime(date_str, time_str, "%d%m%y"),
        ))


class H02Decoder:
    name = "h02"

    def matches(self, frame: str) -> bool:
        return frame.startswith("*HQ,")

    def decode(self, frame: str) -> DecodedFix:
        parts = frame.rstrip("#").split(",")
        if len(parts) < 12:
            raise ParseError(f"HQ frame has {len(parts)} fields", raw=frame)
        if parts[4] != "A":
            raise ParseError("HQ frame without valid fix", raw=frame)
        return _checked(DecodedFix(
            device_id=parts[1].strip(),
            latitude=ddmm_to_decimal(parts[5], parts[6]),
            longitude=ddmm_to_decimal(parts[7], parts[8]),
            speed=_float(parts[9]) * KNOTS_TO_KMH,
            heading=_float(parts[10]) % 360,
            observed_at=_parse_datetime(parts[11], parts[3], "%d%m%y"),
        ))


class NmeaRmcDecoder:
    name = "nmea_rmc"

    _RMC = re.compile(r"^\$G[PNL]RMC,")

    def matches(self, frame: str) -> bool:
        head, _, rest = frame.partition(",")
        return bool(head) and bool(self._RMC.match(rest))

    def decode(self, frame: str) -> DecodedFix:
        device_id, _, sentence = frame.partition(",")
        body, star, checksum = sentence.partition("*")
        if star:
            expected = 0
            for ch in body[1:]:
                expected ^= ord(ch)
            try:
                actual = int(checksum[:2], 16)
            except ValueError:
                raise ParseError("bad NMEA checksum field", raw=frame) from None
            if actual != expected:
                raise ParseError("NMEA checksum mismatch", raw=frame)
        parts = body.split(",")
        if len(parts) < 10:
            raise ParseError(f"RMC sentence has {len(parts)} fields", raw=frame)
        if parts[2] != "A":
            raise ParseError("RMC sentence without valid fix", raw=frame)
        return _checked(DecodedFix(
            device_id=device_id.strip(),
            latitude=ddmm_to_decimal(parts[3], parts[4]),
            longitude=ddmm_to_decimal(parts[5], parts[6]),
            speed=_float(parts[7]) * KNOTS_TO_KMH,
            heading=_float(parts[8]) % 360,
            observed_at=_parse_datetime(parts[9], parts[1], "%d%m%y"),
        ))


def parse_timestamp(value: object) -> datetime | None:
    """ISO-8601 string or epoch seconds/milliseconds to an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise ParseError(f"bad timestamp {value!r}") from None
    if isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ParseError(f"bad timestamp {value!r}") from None
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    raise ParseError(f"bad timestamp {value!r}")


class JsonDecoder:
    name = "json"

    def matches(self, frame: str) -> bool:
        return frame.startswith("{") and frame.endswith("}")

    def decode(self, frame: str) -> DecodedFix:
        try:
            data = json.loads(frame)
        except json.JSONDecodeError:
            raise ParseError("invalid JSON frame", raw=frame) from None
        if not isinstance(data, dict):
            raise ParseError("JSON frame is not an object", raw=frame)
        device_id = str(data.get("device_id") or data.get("imei") or "")
        lat = data.get("lat", data.get("latitude"))
        lon = data.get("lon", data.get("lng", data.get("longitude")))
        if lat is None or lon is None:
            raise ParseError("JSON frame missing coordinates", raw=frame)
        accuracy = data.get("accuracy")
        return _checked(DecodedFix(
            device_id=device_id,
            latitude=_float(lat),
            longitude=_float(lon),
            speed=_float(data.get("speed")),
            heading=_float(data.get("heading")) % 360,
            accuracy=_float(accuracy) if accuracy is not None else None,
            observed_at=parse_timestamp(data.get("timestamp")),
        ))


class CsvDecoder:
    name = "csv"

    def matches(self, frame: str) -> bool:
        return frame.count(",") >= 2

    def decode(self, frame: str) -> DecodedFix:
        parts = [p.strip() for p in frame.split(",")]
        extra = parts[3:6] + [""] * (3 - len(parts[3:6]))
        speed, heading, accuracy = extra
        return _checked(DecodedFix(
            device_id=parts[0],
            latitude=_float(parts[1]),
            longitude=_float(parts[2]),
            speed=_float(speed),
            heading=_float(heading) % 360,
            accuracy=_float(accuracy) if accuracy else None,
        ))


class DecoderChain:
    """Tries decoders in order; the first that claims a frame decodes it."""

    def __init__(self, decoders: list[FrameDecoder] | None = None) -> None:
        self._decoders = decoders if decoders is not None else default_decoders()

    def decode(self, frame: str) -> tuple[str, DecodedFix]:
        for decoder in self._decoders:
            if decoder.matches(frame):
                return decoder.name, decoder.decode(frame)
        raise ParseError("no decoder recognizes frame", raw=frame)


def default_decoders() -> list[FrameDecoder]:
    return [TK103Decoder(), H02Decoder(), NmeaRmcDecoder(), JsonDecoder(), CsvDecoder()]
