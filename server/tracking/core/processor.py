"""Frame processor — decodes, validates and forwards inbound telemetry.

Shared by the TCP and UDP listeners (and by unsolicited SMS reports).
It depends on the DeviceRegistry and LocationReconciler, not on any
socket code, so it can be driven directly from tests.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, TYPE_CHECKING

import structlog

from tracking.core.errors import ParseError
from tracking.core.models import LocationSample, utcnow
from tracking.transport.decoders import DecoderChain

if TYPE_CHECKING:
    from tracking.core.models import DecodedFix
    from tracking.core.reconciler import LocationReconciler
    from tracking.core.registry import DeviceRegistry
    from tracking.core.stats import IngestStats

log = structlog.get_logger()

# Outcomes of process_frame.
FRAME_INGESTED = "ingested"
FRAME_UNKNOWN_DEVICE = "unknown_device"
FRAME_PARSE_ERROR = "parse_error"
FRAME_EMPTY = "empty"


class FrameProcessor:
    """Turns raw frames into LocationSamples and hands them to the reconciler."""

    def __init__(
        self,
        registry: DeviceRegistry,
        reconciler: LocationReconciler,
        stats: IngestStats,
        *,
        source_quality: dict[str, int] | None = None,
        decoders: DecoderChain | None = None,
        max_frame_bytes: int = 4096,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._reconciler = reconciler
        self._stats = stats
        self._quality = dict(source_quality or {})
        self._decoders = decoders or DecoderChain()
        self._max_frame_bytes = max_frame_bytes
        self._clock = clock

    def quality_for(self, source: str) -> int:
        return self._quality.get(source, 0)

    async def process_frame(self, data: bytes, source: str, peer: str = "") -> str:
        """Process one wire frame. Never raises; returns a FRAME_* outcome."""
        received_at = self._clock()
        frame = data.strip()
        if not frame:
            return FRAME_EMPTY

        self._stats.record_frame(source)

        try:
            if len(frame) > self._max_frame_bytes:
                raise ParseError(f"frame exceeds {self._max_frame_bytes} bytes")
            try:
                text = frame.decode("ascii")
            except UnicodeDecodeError:
                raise ParseError("frame is not ASCII") from None
            decoder_name, fix = self._decoders.decode(text)
        except ParseError as e:
            self._stats.record_parse_error(source)
            log.warning("frame_parse_error", source=source, peer=peer,
                        error=str(e), frame=frame[:120].decode("ascii", "replace"))
            return FRAME_PARSE_ERROR

        return await self.forward_fix(fix, source, received_at=received_at,
                                      raw=text, decoder=decoder_name, peer=peer)

    async def forward_fix(
        self,
        fix: DecodedFix,
        source: str,
        *,
        received_at: datetime | None = None,
        raw: str = "",
        decoder: str = "",
        peer: str = "",
    ) -> str:
        """Resolve the fix's device and forward it. Unknown devices are dropped."""
        received_at = received_at or self._clock()
        device = await self._registry.resolve(fix.device_id)
        if device is None:
            self._stats.record_unknown_device(source)
            log.warning("frame_unknown_device", source=source, peer=peer,
                        device_id=fix.device_id, decoder=decoder)
            return FRAME_UNKNOWN_DEVICE

        sample = LocationSample(
            device_id=device.device_id,
            latitude=fix.latitude,
            longitude=fix.longitude,
            source=source,
            observed_at=fix.observed_at or received_at,
            received_at=received_at,
            accuracy=fix.accuracy,
            speed=fix.speed,
            heading=fix.heading,
            quality=self.quality_for(source),
            raw=raw,
        )
        await self._reconciler.ingest(sample)
        log.debug("frame_ingested", source=source, device_id=device.device_id, decoder=decoder)
        return FRAME_INGESTED
