"""Exception hierarchy for the tracking engine."""

from __future__ import annotations


class TrackingError(Exception):
    """Base exception for all tracking engine errors."""


class NotFound(TrackingError):
    """Unknown device or entity."""

    def __init__(self, message: str, *, key: str = "") -> None:
        self.key = key
        super().__init__(message)


class DuplicateDevice(TrackingError):
    """A device with this device_id is already registered."""

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        super().__init__(f"Device ID {device_id} already exists")


class ValidationError(TrackingError):
    """Administrative input rejected before touching the records store."""


class TransportError(TrackingError):
    """Failure talking to an SMS gateway or the fleet cloud provider."""

    def __init__(self, message: str, *, endpoint: str = "", status_code: int | None = None) -> None:
        self.endpoint = endpoint
        self.status_code = status_code
        super().__init__(message)


class TransportTimeout(TransportError):
    """SMS reply or HTTP call exceeded its deadline."""


class TransportUnreachable(TransportError):
    """Gateway or provider could not be reached, or rejected the request."""


class ParseError(TrackingError):
    """Malformed inbound frame, SMS reply or provider payload."""

    def __init__(self, message: str, *, raw: str = "") -> None:
        self.raw = raw
        super().__init__(message)


class AlreadyRunning(TrackingError):
    """A sync for this service is already in flight."""

    def __init__(self, service: str) -> None:
        self.service = service
        super().__init__(f"Sync already in progress for {service}")
