"""Position health analysis.

Pure functions only: given a position's bin range and the pool's active bin,
classify how far out of range the position is. No I/O happens here so the
classification can be exercised exhaustively in tests.
"""

from typing import Optional

from config import settings
from models.reposition import HealthAnalysis, HealthStatus, Urgency

_STATUS_BY_URGENCY = {
    Urgency.LOW: HealthStatus.WARNING,
    Urgency.MEDIUM: HealthStatus.OUT_OF_RANGE,
    Urgency.HIGH: HealthStatus.CRITICAL,
}


def signed_distance_from_range(min_bin: int, max_bin: int, active_bin: int) -> int:
    """Bins between ``active_bin`` and the nearest edge of [min_bin, max_bin]."""
    if active_bin < min_bin:
        return active_bin - min_bin
    if active_bin > max_bin:
        return active_bin - max_bin
    return 0


def classify_urgency(bins_out: int, medium_threshold: int, high_threshold: int) -> Urgency:
    if bins_out <= 0:
        return Urgency.NONE
    if bins_out >= high_threshold:
        return Urgency.HIGH
    if bins_out >= medium_threshold:
        return Urgency.MEDIUM
    return Urgency.LOW


def health_status_for(urgency: Urgency) -> HealthStatus:
    return _STATUS_BY_URGENCY.get(urgency, HealthStatus.HEALTHY)


def analyze_position_health(
    min_bin: int,
    max_bin: int,
    active_bin: int,
    buffer_bins: Optional[int] = None,
    *,
    estimated_fee_sol: Optional[float] = None,
    medium_threshold: Optional[int] = None,
    high_threshold: Optional[int] = None,
) -> HealthAnalysis:
    """Classify a position against the active bin.

    The effective range is ``[min_bin - buffer, max_bin + buffer]``. Inside the
    exact range the position is healthy; inside the padding it is in the
    buffer zone and only monitored; outside the padding it should be
    repositioned, with urgency growing with the distance beyond the exact range.
    """
    buffer = settings.REPOSITION_BUFFER_BINS if buffer_bins is None else int(buffer_bins)
    if buffer < 0:
        raise ValueError("buffer_bins must be >= 0")
    medium = settings.URGENCY_MEDIUM_DISTANCE_BINS if medium_threshold is None else medium_threshold
    high = settings.URGENCY_HIGH_DISTANCE_BINS if high_threshold is None else high_threshold
    fee = settings.ESTIMATED_REPOSITION_FEE_SOL if estimated_fee_sol is None else estimated_fee_sol

    lower, upper = (min_bin, max_bin) if min_bin <= max_bin else (max_bin, min_bin)
    distance = signed_distance_from_range(lower, upper, active_bin)
    bins_out = abs(distance)

    base = dict(
        active_bin=active_bin,
        min_bin=lower,
        max_bin=upper,
        buffer_bins=buffer,
        distance_from_range=distance,
        estimated_fee_sol=fee,
    )

    if bins_out == 0:
        return HealthAnalysis(
            status=HealthStatus.HEALTHY,
            reason=f"Active bin {active_bin} is inside range [{lower}, {upper}]",
            **base,
        )

    side = "below" if distance < 0 else "above"
    if bins_out <= buffer:
        return HealthAnalysis(
            status=HealthStatus.BUFFER_ZONE,
            reason=(
                f"Active bin {active_bin} is {bins_out} bin(s) {side} range "
                f"[{lower}, {upper}], within the {buffer}-bin buffer"
            ),
            **base,
        )

    urgency = classify_urgency(bins_out, medium, high)
    return HealthAnalysis(
        status=health_status_for(urgency),
        urgency=urgency,
        should_reposition=True,
        reason=(
            f"Active bin {active_bin} is {bins_out} bin(s) {side} range "
            f"[{lower}, {upper}] (urgency: {urgency.value})"
        ),
        **base,
    )
