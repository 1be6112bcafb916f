"""Tracking engine — core internal data models.

These are plain dataclasses with no framework dependencies.
Wire frames, SMS replies and cloud payloads are converted to/from these
at the adapter boundary.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

# Device status values.
DEVICE_INACTIVE = "inactive"
DEVICE_ACTIVE = "active"
DEVICE_FAULTED = "faulted"

# Sample sources.
SOURCE_TCP = "tcp"
SOURCE_UDP = "udp"
SOURCE_SMS = "sms"
SOURCE_HTTP_POLL = "http_poll"
SOURCES = (SOURCE_TCP, SOURCE_UDP, SOURCE_SMS, SOURCE_HTTP_POLL)

# Canonical tracking status values.
TRACKING_INACTIVE = "inactive"
TRACKING_ACTIVE = "active"
TRACKING_STALE = "stale"

# Sync log status values.
SYNC_SUCCESS = "success"
SYNC_PARTIAL = "partial"
SYNC_ERROR = "error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


@dataclass
class GPSDevice:
    device_id: str
    device_name: str
    model: str | None = None
    sim_number: str | None = None
    imei: str | None = None
    notes: str | None = None
    status: str = DEVICE_INACTIVE
    last_heartbeat: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_sim(self) -> bool:
        return bool(self.sim_number and self.sim_number.strip())

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("last_heartbeat", "created_at", "updated_at"):
            data[key] = _iso(data[key])
        return data

    @classmethod
    def from_dict(cls, data: dict) -> GPSDevice:
        heartbeat = data.get("last_heartbeat")
        return cls(
            device_id=data["device_id"],
            device_name=data["device_name"],
            model=data.get("model"),
            sim_number=data.get("sim_number"),
            imei=data.get("imei"),
            notes=data.get("notes"),
            status=data.get("status", DEVICE_INACTIVE),
            last_heartbeat=datetime.fromisoformat(heartbeat) if heartbeat else None,
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass
class DeviceAssignment:
    """Which vehicle/driver/route a device currently feeds."""
    device_id: str
    vehicle_id: str | None = None
    registration_number: str | None = None
    driver_id: str | None = None
    route_id: str | None = None
    sharing_enabled: bool = True

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> DeviceAssignment:
        return cls(
            device_id=data["device_id"],
            vehicle_id=data.get("vehicle_id"),
            registration_number=data.get("registration_number"),
            driver_id=data.get("driver_id"),
            route_id=data.get("route_id"),
            sharing_enabled=bool(data.get("sharing_enabled", True)),
        )


@dataclass(frozen=True)
class LocationSample:
    """A single positional observation. Never mutated after creation."""
    device_id: str
    latitude: float
    longitude: float
    source: str
    observed_at: datetime
    received_at: datetime
    accuracy: float | None = None
    speed: float = 0.0
    heading: float = 0.0
    quality: int = 0
    route_id: str | None = None
    vehicle_id: str | None = None
    driver_id: str | None = None
    raw: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["observed_at"] = _iso(self.observed_at)
        data["received_at"] = _iso(self.received_at)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> LocationSample:
        return cls(
            device_id=data["device_id"],
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            source=data["source"],
            observed_at=datetime.fromisoformat(data["observed_at"]),
            received_at=datetime.fromisoformat(data["received_at"]),
            accuracy=data.get("accuracy"),
            speed=data.get("speed", 0.0),
            heading=data.get("heading", 0.0),
            quality=data.get("quality", 0),
            route_id=data.get("route_id"),
            vehicle_id=data.get("vehicle_id"),
            driver_id=data.get("driver_id"),
            raw=data.get("raw", ""),
        )


@dataclass
class CanonicalLocation:
    """Current best-known fix for a device. Overwritten by the reconciler only."""
    latitude: float
    longitude: float
    observed_at: datetime
    last_update: datetime
    source: str
    accuracy: float | None = None
    speed: float = 0.0
    heading: float = 0.0
    quality: int = 0
    tracking_status: str = TRACKING_ACTIVE
    sharing_enabled: bool = True

    @classmethod
    def from_sample(cls, sample: LocationSample, *, sharing_enabled: bool = True) -> CanonicalLocation:
        return cls(
            latitude=sample.latitude,
            longitude=sample.longitude,
            observed_at=sample.observed_at,
            last_update=sample.received_at,
            source=sample.source,
            accuracy=sample.accuracy,
            speed=sample.speed,
            heading=sample.heading,
            quality=sample.quality,
            tracking_status=TRACKING_ACTIVE,
            sharing_enabled=sharing_enabled,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["observed_at"] = _iso(self.observed_at)
        data["last_update"] = _iso(self.last_update)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> CanonicalLocation:
        return cls(
            latitude=data["latitude"],
            longitude=data["longitude"],
            observed_at=datetime.fromisoformat(data["observed_at"]),
            last_update=datetime.fromisoformat(data["last_update"]),
            source=data["source"],
            accuracy=data.get("accuracy"),
            speed=data.get("speed", 0.0),
            heading=data.get("heading", 0.0),
            quality=data.get("quality", 0),
            tracking_status=data.get("tracking_status", TRACKING_ACTIVE),
            sharing_enabled=data.get("sharing_enabled", True),
        )


@dataclass(frozen=True)
class DecodedFix:
    """A position decoded from a wire frame or SMS reply, before device lookup."""
    device_id: str
    latitude: float
    longitude: float
    speed: float = 0.0
    heading: float = 0.0
    accuracy: float | None = None
    observed_at: datetime | None = None


@dataclass(frozen=True)
class RawVehicleFix:
    """One vehicle entry from the fleet cloud provider."""
    id: str
    name: str
    latitude: float
    longitude: float
    speed: float = 0.0
    heading: float = 0.0
    timestamp: datetime | None = None
    status: str = "unknown"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = _iso(self.timestamp)
        return data


@dataclass
class SyncLogEntry:
    service: str
    status: str
    devices_updated: int
    error_count: int
    errors: list[str]
    sync_time: datetime = field(default_factory=utcnow)
    trigger: str = "auto"
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["sync_time"] = _iso(self.sync_time)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> SyncLogEntry:
        return cls(
            service=data["service"],
            status=data["status"],
            devices_updated=data["devices_updated"],
            error_count=data["error_count"],
            errors=list(data.get("errors", [])),
            sync_time=datetime.fromisoformat(data["sync_time"]),
            trigger=data.get("trigger", "auto"),
            duration_seconds=data.get("duration_seconds", 0.0),
        )


@dataclass
class SyncResult:
    success: bool
    updated: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SmsResult:
    success: bool
    message: str
    location: LocationSample | None = None
    raw_response: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "location": self.location.to_dict() if self.location else None,
            "raw_response": self.raw_response,
        }


@dataclass
class Outcome:
    """Structured result of an administrative operation."""
    success: bool
    message: str = ""
    data: dict | list | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        result = {"success": self.success, "message": self.message}
        if self.data is not None:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = self.error
        return result
