"""Deterministic canonical-location replacement policy.

No I/O and no locking here; the reconciler owns both.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from tracking.core.models import TRACKING_ACTIVE, TRACKING_STALE

if TYPE_CHECKING:
    from tracking.core.models import CanonicalLocation, LocationSample


def confidence(quality: int, accuracy: float | None) -> tuple:
    """Sortable confidence key. Higher is better.

    An unset accuracy ranks below every fix that reports one. Otherwise the
    source quality decides, and a smaller accuracy radius breaks ties.
    """
    if accuracy is None:
        return (0, quality, 0.0)
    return (1, quality, -accuracy)


def effective_observed_at(sample: LocationSample, max_future_skew: timedelta) -> datetime:
    """Observation time used for comparison.

    A device clock running ahead of the server by more than the allowance
    would otherwise pin the canonical fix forever, so such samples compete
    with their receive time instead.
    """
    if sample.observed_at > sample.received_at + max_future_skew:
        return sample.received_at
    return sample.observed_at


def should_replace(
    current: CanonicalLocation | None,
    sample: LocationSample,
    *,
    tie_window: timedelta,
    max_future_skew: timedelta = timedelta(minutes=2),
) -> bool:
    """Decide whether ``sample`` supersedes ``current``.

    Policy:
    - No current fix: accept.
    - Strictly newer observation: accept.
    - Within the tie window of the current observation: accept only if
      strictly more confident.
    - Otherwise reject.
    """
    if current is None:
        return True

    observed = effective_observed_at(sample, max_future_skew)
    if observed > current.observed_at:
        return True

    if abs(observed - current.observed_at) <= tie_window:
        return confidence(sample.quality, sample.accuracy) > confidence(current.quality, current.accuracy)

    return False


def tracking_status_at(location: CanonicalLocation, now: datetime, stale_after: timedelta) -> str:
    """Freshness evaluated on read; no timer flips the stored status."""
    if location.tracking_status != TRACKING_ACTIVE:
        return location.tracking_status
    if now - location.last_update > stale_after:
        return TRACKING_STALE
    return TRACKING_ACTIVE
