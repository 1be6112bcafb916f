"""Ingestion statistics and active-device tracking.

Tracks in-memory counters and a sliding window of recently reporting
devices, keyed by the transport they last reported through.
No framework dependencies.
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from dataclasses import dataclass


@dataclass
class DeviceActivity:
    """Tracks a single device's recent activity."""
    last_seen: float          # time.monotonic() timestamp
    source: str               # tcp, udp, sms or http_poll
    samples: int = 0


class IngestStats:
    """Thread-safe ingestion statistics with active-device tracking.

    A device is "active" if a sample for it was ingested within
    ``active_window_seconds`` (default 300s).
    """

    def __init__(self, active_window_seconds: float = 300.0) -> None:
        self._lock = threading.Lock()
        self._started_at = time.time()
        self._active_window = active_window_seconds

        # Counters keyed by transport
        self.frames_received: Counter[str] = Counter()
        self.parse_errors: Counter[str] = Counter()
        self.unknown_devices: Counter[str] = Counter()
        self.samples_ingested: Counter[str] = Counter()

        # Reconciler counters
        self.canonical_updates: int = 0
        self.canonical_kept: int = 0
        self.sharing_suppressed: int = 0
        self.ingest_errors: int = 0

        # Listener connection gauge
        self.open_connections: int = 0
        self.connections_total: int = 0

        # Device tracking: device_id → DeviceActivity
        self._devices: dict[str, DeviceActivity] = {}

    def record_frame(self, transport: str) -> None:
        with self._lock:
            self.frames_received[transport] += 1

    def record_parse_error(self, transport: str) -> None:
        with self._lock:
            self.parse_errors[transport] += 1

    def record_unknown_device(self, transport: str) -> None:
        with self._lock:
            self.unknown_devices[transport] += 1

    def record_sample(self, device_id: str, source: str) -> None:
        """Record that a sample for a device reached the reconciler."""
        now = time.monotonic()
        with self._lock:
            self.samples_ingested[source] += 1
            if device_id in self._devices:
                dev = self._devices[device_id]
                dev.last_seen = now
                dev.source = source
                dev.samples += 1
            else:
                self._devices[device_id] = DeviceActivity(last_seen=now, source=source, samples=1)

    def record_canonical(self, replaced: bool) -> None:
        with self._lock:
            if replaced:
                self.canonical_updates += 1
            else:
                self.canonical_kept += 1

    def record_sharing_suppressed(self) -> None:
        with self._lock:
            self.sharing_suppressed += 1

    def record_ingest_error(self) -> None:
        with self._lock:
            self.ingest_errors += 1

    def connection_opened(self) -> None:
        with self._lock:
            self.open_connections += 1
            self.connections_total += 1

    def connection_closed(self) -> None:
        with self._lock:
            self.open_connections = max(0, self.open_connections - 1)

    def _prune_stale_devices(self, now: float) -> None:
        """Remove devices not seen within the active window. Caller holds lock."""
        cutoff = now - self._active_window
        stale = [did for did, dev in self._devices.items() if dev.last_seen < cutoff]
        for did in stale:
            del self._devices[did]

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot of all stats."""
        now_mono = time.monotonic()
        with self._lock:
            self._prune_stale_devices(now_mono)

            by_source = Counter(dev.source for dev in self._devices.values())

            return {
                "uptime_seconds": round(time.time() - self._started_at, 1),
                "frames_received": dict(self.frames_received),
                "parse_errors": dict(self.parse_errors),
                "unknown_devices": dict(self.unknown_devices),
                "samples_ingested": dict(self.samples_ingested),
                "canonical_updates": self.canonical_updates,
                "canonical_kept": self.canonical_kept,
                "sharing_suppressed": self.sharing_suppressed,
                "ingest_errors": self.ingest_errors,
                "open_connections": self.open_connections,
                "connections_total": self.connections_total,
                "active_devices": {
                    "total": len(self._devices),
                    "by_source": dict(by_source),
                    "window_seconds": self._active_window,
                },
            }
