"""Sync scheduler and audit log.

Each sync service moves ``idle -> running -> idle``. At most one run per
service is in flight; an overlapping trigger is rejected with
AlreadyRunning and leaves no audit entry. Every run that starts writes
exactly one SyncLogEntry, whatever its outcome.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Protocol, TYPE_CHECKING

import structlog

from tracking.core.errors import AlreadyRunning, NotFound
from tracking.core.models import (
    SYNC_ERROR,
    SYNC_PARTIAL,
    SYNC_SUCCESS,
    SyncLogEntry,
    SyncResult,
    utcnow,
)

if TYPE_CHECKING:
    from tracking.storage.base import RecordsStore

log = structlog.get_logger()

STATE_IDLE = "idle"
STATE_RUNNING = "running"

TRIGGER_AUTO = "auto"
TRIGGER_MANUAL = "manual"


class SyncTarget(Protocol):
    """Port: anything the scheduler can run a sync cycle against."""

    service_name: str

    async def sync_with_local_devices(self) -> SyncResult: ...


def status_for(result: SyncResult) -> str:
    if not result.success:
        return SYNC_ERROR
    return SYNC_PARTIAL if result.errors else SYNC_SUCCESS


class AutoSyncSettings:
    """Owner of the global auto-sync flag.

    Starts from configuration; a value persisted in the records store by an
    earlier toggle takes precedence once ``load`` has run.
    """

    SETTING_KEY = "auto_sync_enabled"

    def __init__(self, store: RecordsStore, *, enabled: bool = False) -> None:
        self._store = store
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def load(self) -> bool:
        value = await self._store.get_setting(self.SETTING_KEY)
        if value is not None:
            self._enabled = value == "true"
        return self._enabled

    async def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        await self._store.set_setting(self.SETTING_KEY, "true" if enabled else "false")
        log.info("auto_sync_toggled", enabled=enabled)


@dataclass
class ServiceState:
    state: str = STATE_IDLE
    last_run: SyncLogEntry | None = None
    runs: int = 0
    rejected: int = 0


class SyncScheduler:
    def __init__(
        self,
        store: RecordsStore,
        settings: AutoSyncSettings,
        targets: list[SyncTarget] | None = None,
        *,
        interval_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._interval = interval_seconds
        self._clock = clock
        self._targets: dict[str, SyncTarget] = {}
        self._states: dict[str, ServiceState] = {}
        for target in targets or []:
            self.register(target)

    @property
    def settings(self) -> AutoSyncSettings:
        return self._settings

    @property
    def services(self) -> list[str]:
        return list(self._targets)

    def register(self, target: SyncTarget) -> None:
        self._targets[target.service_name] = target
        self._states.setdefault(target.service_name, ServiceState())

    def state_of(self, service: str) -> str:
        return self._state(service).state

    def _state(self, service: str) -> ServiceState:
        if service not in self._targets:
            raise NotFound(f"Unknown sync service {service}", key=service)
        return self._states[service]

    async def trigger(self, service: str, *, manual: bool = False) -> SyncLogEntry | None:
        """Run one sync cycle for ``service``.

        Returns the audit entry, or None when an automatic trigger is
        skipped because auto sync is disabled. Raises AlreadyRunning if a
        run for this service is in flight.
        """
        state = self._state(service)
        if not manual and not self._settings.enabled:
            log.debug("sync_skipped", service=service, reason="auto_sync_disabled")
            return None
        # Check-and-set happens before any await, so it cannot interleave.
        if state.state == STATE_RUNNING:
            state.rejected += 1
            log.info("sync_rejected", service=service, reason="already_running")
            raise AlreadyRunning(service)
        state.state = STATE_RUNNING

        trigger = TRIGGER_MANUAL if manual else TRIGGER_AUTO
        try:
            entry = await self._run(service, trigger)
            state.last_run = entry
            state.runs += 1
            return entry
        finally:
            state.state = STATE_IDLE

    async def _run(self, service: str, trigger: str) -> SyncLogEntry:
        target = self._targets[service]
        sync_time = self._clock()
        started = time.monotonic()
        log.info("sync_started", service=service, trigger=trigger)
        try:
            result = await target.sync_with_local_devices()
        except Exception as e:
            log.error("sync_failed", service=service, trigger=trigger, exc_info=True)
            result = SyncResult(success=False, errors=[str(e) or type(e).__name__])

        entry = SyncLogEntry(
            service=service,
            status=status_for(result),
            devices_updated=result.updated,
            error_count=len(result.errors),
            errors=list(result.errors),
            sync_time=sync_time,
            trigger=trigger,
            duration_seconds=round(time.monotonic() - started, 3),
        )
        try:
            await self._store.append_sync_log(entry)
        except Exception:
            log.error("sync_log_write_failed", service=service, trigger=trigger, exc_info=True)
        log.info("sync_finished", service=service, trigger=trigger, status=entry.status,
                 updated=entry.devices_updated, errors=entry.error_count,
                 duration=entry.duration_seconds)
        return entry

    async def run_periodic(self) -> None:
        """Fire the automatic trigger for every service. Runs as a background task."""
        log.info("sync_loop_started", interval=self._interval, services=self.services)
        while True:
            await asyncio.sleep(self._interval)
            for service in self.services:
                try:
                    await self.trigger(service)
                except AlreadyRunning:
                    continue
                except Exception:
                    log.error("sync_loop_error", service=service, exc_info=True)

    def status(self) -> dict:
        services = {}
        for name, state in self._states.items():
            services[name] = {
                "state": state.state,
                "runs": state.runs,
                "rejected": state.rejected,
                "last_run": state.last_run.to_dict() if state.last_run else None,
            }
        return {
            "auto_sync_enabled": self._settings.enabled,
            "interval_seconds": self._interval,
            "services": services,
        }

    async def logs(self, service: str | None = None, limit: int = 50) -> list[SyncLogEntry]:
        return await self._store.list_sync_logs(service=service, limit=limit)
