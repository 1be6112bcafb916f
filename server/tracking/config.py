"""Tracking engine configuration.

Loads from config.yaml if present, with environment variable overrides.
Environment variables use the pattern: TRACK_<SECTION>_<KEY> (uppercase).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    env: str = "dev"  # "dev" or "prod"


@dataclass
class ListenerConfig:
    host: str = "0.0.0.0"
    tcp_port: int = 8888
    udp_port: int = 8889
    autostart: bool = False
    ack_frames: bool = True
    max_frame_bytes: int = 4096


@dataclass
class SmsConfig:
    gateway_url: str = ""  # local HTTP gateway, e.g. http://modem.local:9000
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    reply_timeout_seconds: float = 45.0
    send_timeout_seconds: float = 10.0
    command_gap_seconds: float = 2.0
    location_commands: list[str] = field(
        default_factory=lambda: ["where", "location", "loc", "position", "G123456#", "pos"],
    )
    apn: str = "internet"
    report_interval_seconds: int = 30
    gmt_offset: str = "+05:30"
    public_server_ip: str = ""


@dataclass
class CloudConfig:
    service_name: str = "fleet_cloud"
    base_url: str = "https://console.mercydatrack.com/api"
    username: str = ""
    password: str = ""
    timeout_seconds: float = 15.0


@dataclass
class SyncConfig:
    auto_sync_enabled: bool = False
    interval_seconds: float = 300.0


@dataclass
class ReconcilerConfig:
    tie_window_seconds: float = 5.0
    stale_after_seconds: float = 300.0
    max_future_skew_seconds: float = 120.0
    source_quality: dict[str, int] = field(
        default_factory=lambda: {"tcp": 80, "udp": 70, "sms": 50, "http_poll": 40},
    )
    history_limit: int = 1000


@dataclass
class StorageConfig:
    backend: str = "memory"  # "memory" or "file"
    base_dir: str = "data/tracking"
    heartbeat_flush_seconds: float = 60.0


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "console"  # "console" or "json"
    file: str = ""


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    listener: ListenerConfig = field(default_factory=ListenerConfig)
    sms: SmsConfig = field(default_factory=SmsConfig)
    cloud: CloudConfig = field(default_factory=CloudConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTIONS = ("server", "listener", "sms", "cloud", "sync", "reconciler", "storage", "logging")


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _as_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _apply_env_overrides(config: AppConfig) -> None:
    """Override config values from environment variables."""
    mapping = {
        "TRACK_SERVER_HOST": lambda v: setattr(config.server, "host", v),
        "TRACK_SERVER_PORT": lambda v: setattr(config.server, "port", int(v)),
        "TRACK_SERVER_ENV": lambda v: setattr(config.server, "env", v),
        "TRACK_LISTENER_HOST": lambda v: setattr(config.listener, "host", v),
        "TRACK_LISTENER_TCP_PORT": lambda v: setattr(config.listener, "tcp_port", int(v)),
        "TRACK_LISTENER_UDP_PORT": lambda v: setattr(config.listener, "udp_port", int(v)),
        "TRACK_LISTENER_AUTOSTART": lambda v: setattr(config.listener, "autostart", _as_bool(v)),
        "TRACK_LISTENER_ACK_FRAMES": lambda v: setattr(config.listener, "ack_frames", _as_bool(v)),
        "TRACK_SMS_GATEWAY_URL": lambda v: setattr(config.sms, "gateway_url", v),
        "TRACK_SMS_TWILIO_ACCOUNT_SID": lambda v: setattr(config.sms, "twilio_account_sid", v),
        "TRACK_SMS_TWILIO_AUTH_TOKEN": lambda v: setattr(config.sms, "twilio_auth_token", v),
        "TRACK_SMS_TWILIO_FROM_NUMBER": lambda v: setattr(config.sms, "twilio_from_number", v),
        "TRACK_SMS_REPLY_TIMEOUT": lambda v: setattr(config.sms, "reply_timeout_seconds", float(v)),
        "TRACK_SMS_LOCATION_COMMANDS": lambda v: setattr(config.sms, "location_commands", _as_list(v)),
        "TRACK_SMS_APN": lambda v: setattr(config.sms, "apn", v),
        "TRACK_SMS_PUBLIC_SERVER_IP": lambda v: setattr(config.sms, "public_server_ip", v),
        "TRACK_CLOUD_BASE_URL": lambda v: setattr(config.cloud, "base_url", v),
        "TRACK_CLOUD_USERNAME": lambda v: setattr(config.cloud, "username", v),
        "TRACK_CLOUD_PASSWORD": lambda v: setattr(config.cloud, "password", v),
        "TRACK_CLOUD_TIMEOUT": lambda v: setattr(config.cloud, "timeout_seconds", float(v)),
        "TRACK_SYNC_AUTO_SYNC_ENABLED": lambda v: setattr(config.sync, "auto_sync_enabled", _as_bool(v)),
        "TRACK_SYNC_INTERVAL": lambda v: setattr(config.sync, "interval_seconds", float(v)),
        "TRACK_RECONCILER_TIE_WINDOW": lambda v: setattr(config.reconciler, "tie_window_seconds", float(v)),
        "TRACK_RECONCILER_STALE_AFTER": lambda v: setattr(config.reconciler, "stale_after_seconds", float(v)),
        "TRACK_STORAGE_BACKEND": lambda v: setattr(config.storage, "backend", v),
        "TRACK_STORAGE_BASE_DIR": lambda v: setattr(config.storage, "base_dir", v),
        "TRACK_STORAGE_HEARTBEAT_FLUSH": lambda v: setattr(config.storage, "heartbeat_flush_seconds", float(v)),
        "TRACK_LOG_LEVEL": lambda v: setattr(config.logging, "level", v),
        "TRACK_LOG_FORMAT": lambda v: setattr(config.logging, "format", v),
        "TRACK_LOG_FILE": lambda v: setattr(config.logging, "file", v),
    }
    for env_key, setter in mapping.items():
        val = os.environ.get(env_key)
        if val is not None:
            setter(val)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load configuration from YAML file + environment overrides."""
    config = AppConfig()

    if config_path is None:
        config_path = Path(os.environ.get("TRACK_CONFIG", "config.yaml"))
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

        for name in _SECTIONS:
            section = getattr(config, name)
            for k, v in (raw.get(name) or {}).items():
                if hasattr(section, k):
                    setattr(section, k, v)

    # Environment overrides always win
    _apply_env_overrides(config)
    return config
