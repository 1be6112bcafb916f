"""Location reconciler — the only writer of canonical location state.

Every adapter hands its samples to ``ingest``. The reconciler appends each
sample to tracking history, applies the replacement policy against the
device's current canonical fix, and projects accepted fixes onto the
assigned vehicle/driver records.

``ingest`` never raises: telemetry producers must not be back-pressured by
reconciliation failures, so errors end up in stats and the log.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, TYPE_CHECKING

import structlog

from tracking.core.models import CanonicalLocation, utcnow
from tracking.core.policy import effective_observed_at, should_replace, tracking_status_at

if TYPE_CHECKING:
    from tracking.core.models import DeviceAssignment, LocationSample
    from tracking.core.registry import DeviceRegistry
    from tracking.core.stats import IngestStats
    from tracking.storage.base import RecordsStore

log = structlog.get_logger()


class LocationReconciler:
    def __init__(
        self,
        store: RecordsStore,
        registry: DeviceRegistry,
        stats: IngestStats,
        *,
        tie_window_seconds: float = 5.0,
        stale_after_seconds: float = 300.0,
        max_future_skew_seconds: float = 120.0,
        history_limit: int = 1000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._registry = registry
        self._stats = stats
        self._tie_window = timedelta(seconds=tie_window_seconds)
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._max_future_skew = timedelta(seconds=max_future_skew_seconds)
        self._history_limit = history_limit
        self._clock = clock
        # One lock per device; canonical read-modify-write is serialized per
        # device only, so different devices reconcile concurrently.
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    async def ingest(self, sample: LocationSample) -> None:
        try:
            await self._ingest(sample)
        except Exception:
            self._stats.record_ingest_error()
            log.error("ingest_failed", device_id=sample.device_id,
                      source=sample.source, exc_info=True)

    async def _ingest(self, sample: LocationSample) -> None:
        device = await self._registry.find(sample.device_id)
        if device is None:
            self._stats.record_unknown_device(sample.source)
            log.warning("ingest_unknown_device", device_id=sample.device_id, source=sample.source)
            return

        assignment = await self._registry.assignment_for(sample.device_id)
        sample = _attribute(sample, assignment)

        async with self._lock_for(sample.device_id):
            # History first: it is never lossy, whatever the tie-break decides.
            await self._store.append_history(sample)
            self._stats.record_sample(sample.device_id, sample.source)
            await self._registry.record_heartbeat(sample.device_id, sample.received_at)

            if assignment is not None and not assignment.sharing_enabled:
                self._stats.record_sharing_suppressed()
                log.debug("canonical_suppressed", device_id=sample.device_id, reason="sharing_disabled")
                return

            current = await self._store.get_canonical(sample.device_id)
            if not should_replace(current, sample, tie_window=self._tie_window,
                                  max_future_skew=self._max_future_skew):
                self._stats.record_canonical(False)
                log.debug("canonical_kept", device_id=sample.device_id, source=sample.source,
                          incoming=sample.observed_at.isoformat(),
                          current=current.observed_at.isoformat() if current else None)
                return

            canonical = CanonicalLocation.from_sample(sample, sharing_enabled=True)
            canonical.observed_at = effective_observed_at(sample, self._max_future_skew)
            await self._store.save_canonical(sample.device_id, canonical, assignment)
            self._stats.record_canonical(True)
            log.debug("canonical_updated", device_id=sample.device_id, source=sample.source,
                      observed_at=canonical.observed_at.isoformat())

    async def current_location(self, device_id: str) -> CanonicalLocation | None:
        """Canonical fix with freshness applied, or None when absent or not shared."""
        assignment = await self._registry.assignment_for(device_id)
        if assignment is not None and not assignment.sharing_enabled:
            return None
        location = await self._store.get_canonical(device_id)
        if location is None:
            return None
        location.tracking_status = tracking_status_at(location, self._clock(), self._stale_after)
        return location

    async def history(
        self,
        device_id: str,
        *,
        route_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[LocationSample]:
        if limit is None or limit <= 0 or limit > self._history_limit:
            limit = self._history_limit
        return await self._store.query_history(
            device_id, route_id=route_id, start=start, end=end, limit=limit,
        )


def _attribute(sample: LocationSample, assignment: DeviceAssignment | None) -> LocationSample:
    """Fill route/vehicle/driver ids the adapter could not know from the assignment."""
    if assignment is None:
        return sample
    return replace(
        sample,
        route_id=sample.route_id or assignment.route_id,
        vehicle_id=sample.vehicle_id or assignment.vehicle_id,
        driver_id=sample.driver_id or assignment.driver_id,
    )
