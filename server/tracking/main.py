"""Tracking engine — main entry point.

This is the only file that knows about concrete implementations.
It wires together the core, storage, transport and API layers.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import IO

import httpx
import structlog
from fastapi import FastAPI

from tracking.api.devices import router as devices_router
from tracking.api.listeners import router as listeners_router
from tracking.api.monitoring import router as monitoring_router
from tracking.api.sms import router as sms_router
from tracking.api.sync import router as sync_router
from tracking.config import AppConfig, load_config
from tracking.core.models import SOURCE_HTTP_POLL, SOURCE_SMS
from tracking.core.processor import FrameProcessor
from tracking.core.reconciler import LocationReconciler
from tracking.core.registry import DeviceRegistry
from tracking.core.scheduler import AutoSyncSettings, SyncScheduler
from tracking.core.service import TrackingService
from tracking.core.stats import IngestStats
from tracking.storage.base import RecordsStore
from tracking.storage.file_storage import FileRecordsStore
from tracking.storage.memory_storage import MemoryRecordsStore
from tracking.transport.cloud import CloudPollAdapter
from tracking.transport.listener import SocketListener, TcpListener, UdpListener
from tracking.transport.sms import SmsCommandChannel, SmsInbox
from tracking.transport.sms_gateway import FallbackSmsGateway, HttpSmsGateway, SmsGateway, TwilioSmsGateway

log = structlog.get_logger()

# Module-level singletons (set during startup)
_config: AppConfig | None = None
_stats: IngestStats | None = None
_listeners: SocketListener | None = None
_sms_channel: SmsCommandChannel | None = None
_service: TrackingService | None = None


def get_config() -> AppConfig:
    assert _config is not None, "Server not initialized"
    return _config


def get_stats() -> IngestStats:
    assert _stats is not None, "Server not initialized"
    return _stats


def get_listeners() -> SocketListener:
    assert _listeners is not None, "Server not initialized"
    return _listeners


def get_sms_channel() -> SmsCommandChannel:
    assert _sms_channel is not None, "Server not initialized"
    return _sms_channel


def get_service() -> TrackingService:
    assert _service is not None, "Server not initialized"
    return _service


def _setup_logging(config: AppConfig) -> IO[str] | None:
    """Configure structlog based on the logging config.

    Returns the log file when one is configured; the caller closes it.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if config.logging.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    log_file = open(config.logging.file, "a") if config.logging.file else None
    logger_factory = structlog.WriteLoggerFactory(file=log_file) if log_file else None

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.logging.level.upper()),
        ),
        logger_factory=logger_factory or structlog.PrintLoggerFactory(),
    )
    return log_file


def build_store(config: AppConfig) -> RecordsStore:
    if config.storage.backend == "file":
        return FileRecordsStore(
            base_dir=config.storage.base_dir,
            heartbeat_flush_seconds=config.storage.heartbeat_flush_seconds,
        )
    return MemoryRecordsStore()


def build_sms_gateway(config: AppConfig, client: httpx.AsyncClient) -> FallbackSmsGateway:
    gateways: list[SmsGateway] = []
    if config.sms.gateway_url:
        gateways.append(HttpSmsGateway(config.sms.gateway_url, client, timeout=config.sms.send_timeout_seconds))
    if config.sms.twilio_account_sid and config.sms.twilio_auth_token:
        gateways.append(TwilioSmsGateway(
            config.sms.twilio_account_sid,
            config.sms.twilio_auth_token,
            config.sms.twilio_from_number,
            client,
            timeout=config.sms.send_timeout_seconds,
        ))
    return FallbackSmsGateway(gateways)


def build_components(
    config: AppConfig,
    store: RecordsStore,
    client: httpx.AsyncClient,
) -> tuple[IngestStats, SocketListener, SmsCommandChannel, SyncScheduler, TrackingService]:
    """Create and wire every engine component. Nothing is started."""
    rc = config.reconciler
    stats = IngestStats(active_window_seconds=rc.stale_after_seconds)
    registry = DeviceRegistry(store)
    reconciler = LocationReconciler(
        store, registry, stats,
        tie_window_seconds=rc.tie_window_seconds,
        stale_after_seconds=rc.stale_after_seconds,
        max_future_skew_seconds=rc.max_future_skew_seconds,
        history_limit=rc.history_limit,
    )
    processor = FrameProcessor(
        registry, reconciler, stats,
        source_quality=rc.source_quality,
        max_frame_bytes=config.listener.max_frame_bytes,
    )
    listeners = SocketListener(
        TcpListener(
            processor, stats,
            host=config.listener.host,
            port=config.listener.tcp_port,
            ack_frames=config.listener.ack_frames,
            max_frame_bytes=config.listener.max_frame_bytes,
        ),
        UdpListener(processor, stats, host=config.listener.host, port=config.listener.udp_port),
    )
    sms_channel = SmsCommandChannel(
        registry, reconciler, build_sms_gateway(config, client), SmsInbox(), stats,
        location_commands=config.sms.location_commands,
        reply_timeout_seconds=config.sms.reply_timeout_seconds,
        command_gap_seconds=config.sms.command_gap_seconds,
        apn=config.sms.apn,
        report_interval_seconds=config.sms.report_interval_seconds,
        gmt_offset=config.sms.gmt_offset,
        direct_port=config.listener.tcp_port,
        quality=rc.source_quality.get(SOURCE_SMS, 0),
    )
    cloud = CloudPollAdapter(
        registry, reconciler, client,
        base_url=config.cloud.base_url,
        username=config.cloud.username,
        password=config.cloud.password,
        timeout_seconds=config.cloud.timeout_seconds,
        service_name=config.cloud.service_name,
        quality=rc.source_quality.get(SOURCE_HTTP_POLL, 0),
    )
    scheduler = SyncScheduler(
        store,
        AutoSyncSettings(store, enabled=config.sync.auto_sync_enabled),
        [cloud],
        interval_seconds=config.sync.interval_seconds,
    )
    service = TrackingService(
        registry, reconciler, listeners, sms_channel, cloud, scheduler,
        public_server_ip=config.sms.public_server_ip,
    )
    return stats, listeners, sms_channel, scheduler, service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global _config, _stats, _listeners, _sms_channel, _service

    _config = load_config()
    log_file = _setup_logging(_config)

    log.info("server_starting",
             env=_config.server.env,
             storage_backend=_config.storage.backend,
             storage_dir=_config.storage.base_dir)

    store = build_store(_config)
    client = httpx.AsyncClient()
    _stats, _listeners, _sms_channel, scheduler, _service = build_components(_config, store, client)
    await scheduler.settings.load()

    if _config.listener.autostart:
        await _listeners.start()

    # Start background sync loop
    sync_task = asyncio.create_task(scheduler.run_periodic())

    log.info("server_started",
             host=_config.server.host,
             port=_config.server.port,
             auto_sync=scheduler.settings.enabled)

    yield

    # Shutdown
    sync_task.cancel()
    try:
        await sync_task
    except asyncio.CancelledError:
        pass
    await _listeners.stop()
    await client.aclose()
    await store.close()
    log.info("server_stopped")
    if log_file is not None:
        # Later log calls go to stdout instead of a closed file.
        structlog.configure(logger_factory=structlog.PrintLoggerFactory())
        log_file.close()


app = FastAPI(
    title="Tracking Engine",
    description="Multi-transport vehicle location ingestion and reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(devices_router)
app.include_router(listeners_router)
app.include_router(sms_router)
app.include_router(sync_router)
app.include_router(monitoring_router)
