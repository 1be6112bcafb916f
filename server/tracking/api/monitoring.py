"""Health check and monitoring endpoints."""

from __future__ import annotations

import json
import shutil
from pathlib import Path

from fastapi import APIRouter

router = APIRouter(prefix="/api/v1")

# Load build info once at import time.
_BUILD_INFO_PATH = Path(__file__).parent.parent / "build_info.json"
_BUILD_INFO: dict = {}
if _BUILD_INFO_PATH.exists():
    try:
        _BUILD_INFO = json.loads(_BUILD_INFO_PATH.read_text())
    except (json.JSONDecodeError, OSError):
        pass


@router.get("/health")
async def health() -> dict:
    """Basic health check."""
    from tracking.main import get_config, get_listeners, get_stats

    config = get_config()
    snapshot = get_stats().snapshot()

    result = {
        "status": "ok",
        "version": "0.1.0",
        "uptime_seconds": snapshot["uptime_seconds"],
        "storage_backend": config.storage.backend,
        "listeners": get_listeners().status(),
    }
    if config.storage.backend == "file":
        storage_path = Path(config.storage.base_dir)
        try:
            disk = shutil.disk_usage(storage_path if storage_path.exists() else ".")
            result["disk_free_gb"] = round(disk.free / (1024 ** 3), 1)
            result["storage_writable"] = True
        except OSError:
            result["disk_free_gb"] = -1
            result["storage_writable"] = False
    result.update(_BUILD_INFO)
    return result


@router.get("/stats")
async def stats() -> dict:
    """Ingestion statistics.

    Counters are keyed by transport (tcp, udp, sms, http_poll). The
    ``active_devices`` section counts devices with a sample in the last
    ``window_seconds``, grouped by the transport they last reported through.
    """
    from tracking.main import get_stats

    return get_stats().snapshot()
