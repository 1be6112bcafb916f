"""Tests for configuration loading."""

from __future__ import annotations

import pytest

from tracking.config import AppConfig, load_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in ("TRACK_CONFIG", "TRACK_LISTENER_TCP_PORT", "TRACK_SMS_LOCATION_COMMANDS",
                "TRACK_SYNC_AUTO_SYNC_ENABLED", "TRACK_STORAGE_BACKEND"):
        monkeypatch.delenv(key, raising=False)


def test_defaults():
    config = AppConfig()
    assert config.listener.tcp_port == 8888
    assert config.listener.udp_port == 8889
    assert config.sms.reply_timeout_seconds == 45.0
    assert config.sms.location_commands[0] == "where"
    assert config.sync.auto_sync_enabled is False
    assert config.reconciler.source_quality == {"tcp": 80, "udp": 70, "sms": 50, "http_poll": 40}
    assert config.storage.backend == "memory"
    assert config.storage.heartbeat_flush_seconds == 60.0


def test_missing_file_gives_defaults(tmp_path):
    config = load_config(tmp_path / "absent.yaml")
    assert config.listener.tcp_port == 8888


def test_yaml_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "listener:\n"
        "  tcp_port: 5023\n"
        "  autostart: true\n"
        "cloud:\n"
        "  username: fleet\n"
        "  unknown_key: ignored\n"
        "storage:\n"
        "  backend: file\n"
    )
    config = load_config(path)
    assert config.listener.tcp_port == 5023
    assert config.listener.autostart is True
    assert config.cloud.username == "fleet"
    assert not hasattr(config.cloud, "unknown_key")
    assert config.storage.backend == "file"


def test_env_overrides_win(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("listener:\n  tcp_port: 5023\n")
    monkeypatch.setenv("TRACK_LISTENER_TCP_PORT", "6000")
    monkeypatch.setenv("TRACK_SMS_LOCATION_COMMANDS", "where, pos")
    monkeypatch.setenv("TRACK_SYNC_AUTO_SYNC_ENABLED", "yes")

    config = load_config(path)
    assert config.listener.tcp_port == 6000
    assert config.sms.location_commands == ["where", "pos"]
    assert config.sync.auto_sync_enabled is True


def test_config_path_from_env(tmp_path, monkeypatch):
    path = tmp_path / "other.yaml"
    path.write_text("storage:\n  backend: file\n")
    monkeypatch.setenv("TRACK_CONFIG", str(path))
    assert load_config().storage.backend == "file"
